"""Request-scoped access to the services built in create_app()."""
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings
from ..core.storage import StorageService
from ..database import get_db
from ..services.integrity import IntegrityReconciler
from ..services.playback import PlaybackService
from ..services.tracks import TrackService
from ..services.transcription import Dispatcher, TranscriptionPipeline
from ..services.upload_sessions import UploadSessionManager


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_storage(request: Request) -> StorageService:
    return request.app.state.storage


def get_upload_sessions(request: Request) -> UploadSessionManager:
    return request.app.state.upload_sessions


def get_dispatcher(request: Request) -> Dispatcher:
    return request.app.state.dispatcher


def get_pipeline(request: Request) -> TranscriptionPipeline:
    return request.app.state.pipeline


def get_playback(request: Request) -> PlaybackService:
    return request.app.state.playback


def get_reconciler(request: Request) -> IntegrityReconciler:
    return request.app.state.reconciler


def get_track_service(
    db: AsyncSession = Depends(get_db),
    storage: StorageService = Depends(get_storage),
    sessions: UploadSessionManager = Depends(get_upload_sessions),
    dispatcher: Dispatcher = Depends(get_dispatcher),
    settings: Settings = Depends(get_settings),
) -> TrackService:
    return TrackService(db, storage, sessions, dispatcher, settings)
