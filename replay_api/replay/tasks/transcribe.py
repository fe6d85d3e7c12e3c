"""Transcription tasks executed by the Celery worker."""
import asyncio

from ..worker import celery_app


def build_pipeline():
    """Build a pipeline with its own engine; each task runs on a fresh event loop."""
    from ..config import settings
    from ..core.storage import StorageService
    from ..database import create_engine, create_session_factory
    from ..services.speech_to_text import build_speech_to_text
    from ..services.transcription import TranscriptionPipeline

    engine = create_engine(settings.database_url)
    pipeline = TranscriptionPipeline(
        session_factory=create_session_factory(engine),
        storage=StorageService(settings),
        speech_to_text=build_speech_to_text(settings),
        settings=settings,
    )
    return pipeline, engine


async def _run(job):
    pipeline, engine = build_pipeline()
    try:
        return await job(pipeline)
    finally:
        await engine.dispose()


@celery_app.task(name="transcribe_track")
def transcribe_track(track_id: str, force: bool = False):
    """Transcribe one track; the outcome is recorded on the track row."""
    status = asyncio.run(_run(lambda p: p.transcribe_track(track_id, force=force)))
    return {"track_id": track_id, "status": status.value if status else None}


@celery_app.task(name="transcribe_batch")
def transcribe_batch(track_ids: list[str]):
    """Sequential, paced transcription of several tracks."""
    return asyncio.run(_run(lambda p: p.transcribe_many(track_ids)))
