"""Playback endpoints. `<audio>` elements cannot set headers, so `?token=` is accepted too."""
from typing import Optional

from fastapi import APIRouter, Depends, Header

from ...core.auth import Principal, get_stream_principal
from ...services.playback import PlaybackService
from ...services.tracks import TrackService
from ..deps import get_playback, get_track_service

router = APIRouter(prefix="/tracks", tags=["stream"])


@router.get("/{track_id}/stream")
async def stream_track(
    track_id: str,
    principal: Principal = Depends(get_stream_principal),
    service: TrackService = Depends(get_track_service),
    playback: PlaybackService = Depends(get_playback),
    range: Optional[str] = Header(default=None),
):
    """Inline audio is served with Range support; cloud audio per `stream_mode`."""
    track = await service.get_track(principal.owner_id, track_id)
    return await playback.stream(track, range)


@router.get("/{track_id}/proxy-stream")
async def proxy_stream_track(
    track_id: str,
    principal: Principal = Depends(get_stream_principal),
    service: TrackService = Depends(get_track_service),
    playback: PlaybackService = Depends(get_playback),
    range: Optional[str] = Header(default=None),
):
    """Always pipe the bytes through this API, for clients that cannot follow a bucket redirect."""
    track = await service.get_track(principal.owner_id, track_id)
    return await playback.stream(track, range, mode="proxy")


@router.get("/{track_id}/stream-url")
async def get_stream_url(
    track_id: str,
    principal: Principal = Depends(get_stream_principal),
    service: TrackService = Depends(get_track_service),
    playback: PlaybackService = Depends(get_playback),
):
    track = await service.get_track(principal.owner_id, track_id)
    return await playback.stream_url(track, principal.token)
