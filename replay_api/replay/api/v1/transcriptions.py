"""Lyrics transcription endpoints. Jobs run in the background; clients poll the transcript."""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ...core.auth import Principal, get_current_principal
from ...core.exceptions import InvalidTransition, TranscriptionUnavailable, ValidationFailed
from ...database import get_db
from ...models.track import TranscriptionStatus
from ...schemas.common import ApiResponse
from ...schemas.transcription import TranscribeAllQueued, TranscribeQueued, TranscriptResponse
from ...services.tracks import TrackService
from ...services.transcription import Dispatcher, select_pending_track_ids
from ..deps import get_dispatcher, get_track_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["transcriptions"])


@router.post("/transcribe/{track_id}", response_model=ApiResponse[TranscribeQueued], status_code=202)
async def transcribe_track(
    track_id: str,
    principal: Principal = Depends(get_current_principal),
    service: TrackService = Depends(get_track_service),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    """Queue (re-)transcription of one track. A completed transcript is replaced."""
    if not dispatcher.available:
        raise TranscriptionUnavailable()

    track = await service.get_track(principal.owner_id, track_id)
    if not track.has_audio:
        raise ValidationFailed("Track has no audio data")

    force = track.status is TranscriptionStatus.COMPLETED
    if not track.status.can_transition(TranscriptionStatus.PROCESSING, force=force):
        raise InvalidTransition(track.lyrics_status, TranscriptionStatus.PROCESSING.value)

    if not dispatcher.dispatch(track.id, force=force):
        raise TranscriptionUnavailable("Transcription queue is unreachable")
    logger.info(f"Manual transcription queued for track {track.id}")
    return ApiResponse(
        success=True,
        data=TranscribeQueued(
            track_id=track.id, status="queued", message="Transcription started"
        ),
    )


@router.post("/transcribe-all", response_model=ApiResponse[TranscribeAllQueued], status_code=202)
async def transcribe_all(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    """Queue every untranscribed track; they are processed one at a time with pacing."""
    if not dispatcher.available:
        raise TranscriptionUnavailable()

    track_ids = await select_pending_track_ids(db, principal.owner_id)
    queued = dispatcher.dispatch_batch(track_ids)
    if track_ids and not queued:
        raise TranscriptionUnavailable("Transcription queue is unreachable")
    logger.info(f"Batch transcription queued for {queued} tracks of user {principal.owner_id}")
    message = (
        f"Transcribing {queued} tracks in background" if queued else "All tracks already have lyrics"
    )
    return ApiResponse(success=True, data=TranscribeAllQueued(queued=queued, message=message))


@router.get("/tracks/{track_id}/transcript", response_model=ApiResponse[TranscriptResponse])
async def get_transcript(
    track_id: str,
    principal: Principal = Depends(get_current_principal),
    service: TrackService = Depends(get_track_service),
):
    track = await service.get_track(principal.owner_id, track_id)
    segments = track.lyrics_segments or {}
    return ApiResponse(
        success=True,
        data=TranscriptResponse(
            track_id=track.id,
            status=track.lyrics_status,
            text=track.lyrics_text,
            segments=segments.get("segments") or [],
            words=segments.get("words") or [],
            language=track.lyrics_language,
            error=track.lyrics_error,
            transcribed_at=track.transcribed_at,
        ),
    )
