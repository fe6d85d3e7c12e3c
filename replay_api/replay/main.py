from contextlib import asynccontextmanager
import asyncio
import logging
import sys
from typing import Any, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, settings as default_settings
from .api.v1.router import api_router
from .core.exceptions import RangeNotSatisfiable, ReplayError
from .core.storage import StorageService
from .database import create_engine, create_session_factory, init_models
from .services.integrity import IntegrityReconciler
from .services.playback import PlaybackService
from .services.speech_to_text import SpeechToText, build_speech_to_text
from .services.transcription import Dispatcher, TranscriptionPipeline, build_dispatcher
from .services.upload_sessions import UploadSessionManager


def setup_logging():
    log_format = "%(asctime)s | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d | %(message)s"

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(log_format))

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)
    root_logger.addHandler(handler)

    logging.getLogger("replay").setLevel(logging.DEBUG)
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("uvicorn.access").setLevel(logging.INFO)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


setup_logging()
logger = logging.getLogger(__name__)


async def _maintenance_loop(app: FastAPI) -> None:
    """Reap expired upload sessions and settle hung transcriptions on a fixed period."""
    interval = app.state.settings.upload_sweep_interval_seconds
    while True:
        await asyncio.sleep(interval)
        try:
            app.state.upload_sessions.sweep_expired()
            await app.state.pipeline.settle_stale()
        except Exception:
            logger.exception("Maintenance tick failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup (dev mode). Use migrations in prod."""
    state = app.state
    logger.info(f"Starting {state.settings.app_name}...")

    await init_models(state.engine)
    logger.info("Database initialized")

    # With the in-process pool nothing can still be running after a restart.
    if state.settings.transcription_backend == "local":
        await state.pipeline.settle_stale(older_than_seconds=0)
    await state.dispatcher.start()
    maintenance = asyncio.create_task(_maintenance_loop(app), name="replay-maintenance")

    yield

    logger.info(f"Shutting down {state.settings.app_name}...")
    maintenance.cancel()
    await asyncio.gather(maintenance, return_exceptions=True)
    await state.dispatcher.stop()
    await state.engine.dispose()


def create_app(
    settings: Optional[Settings] = None,
    *,
    storage: Optional[StorageService] = None,
    speech_to_text: Optional[SpeechToText] = None,
    dispatcher: Optional[Dispatcher] = None,
    clock: Optional[Callable[[], float]] = None,
) -> FastAPI:
    settings = settings or default_settings

    app = FastAPI(
        title=settings.app_name,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    state = app.state
    state.settings = settings
    state.engine = create_engine(settings.database_url, echo=False)
    state.session_factory = create_session_factory(state.engine)
    state.storage = storage or StorageService(settings)

    session_kwargs: dict[str, Any] = {}
    if clock is not None:
        session_kwargs["clock"] = clock
    state.upload_sessions = UploadSessionManager(
        ttl_seconds=settings.upload_session_ttl_seconds,
        max_chunk_bytes=settings.max_chunk_bytes,
        max_total_chunks=settings.max_total_chunks,
        **session_kwargs,
    )

    state.pipeline = TranscriptionPipeline(
        state.session_factory,
        state.storage,
        speech_to_text if speech_to_text is not None else build_speech_to_text(settings),
        settings,
    )
    state.dispatcher = dispatcher or build_dispatcher(settings, state.pipeline)
    state.playback = PlaybackService(state.storage, settings)
    state.reconciler = IntegrityReconciler(state.storage)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Range", "Accept-Ranges", "Content-Length"],
    )

    # Global error handler
    @app.exception_handler(Exception)
    async def global_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error: {exc}")
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": "Internal server error",
                "code": "internal_error",
                "detail": str(exc) if settings.debug else None,
            },
        )

    # Replay error handler
    @app.exception_handler(ReplayError)
    async def replay_error_handler(request: Request, exc: ReplayError):
        if exc.status_code >= 500:
            logger.error(f"{exc.code} on {request.url.path}: {exc!r}")
        headers = {}
        if exc.status_code == 401:
            headers["WWW-Authenticate"] = "Bearer"
        if isinstance(exc, RangeNotSatisfiable) and exc.size is not None:
            headers["Content-Range"] = f"bytes */{exc.size}"
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.message, "code": exc.code, **exc.extra},
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg', 'invalid value')}" if location else "Invalid request"
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": message, "code": "invalid_request"},
        )

    # Routes
    app.include_router(api_router)

    @app.get("/health")
    async def health_check():
        return {
            "status": "ok",
            "app": settings.app_name,
            "cloud_storage": state.storage.cloud_available,
            "transcription": state.dispatcher.available,
            "upload_sessions": len(state.upload_sessions),
        }

    return app


app = create_app()
