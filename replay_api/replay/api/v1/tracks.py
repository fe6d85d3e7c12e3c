"""Track ingestion, listing and metadata endpoints."""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ...core.auth import Principal, get_current_principal
from ...core.storage import decode_data_uri
from ...database import get_db
from ...schemas.common import ApiResponse, CleanupResponse
from ...schemas.track import (
    AnalysisUpdate,
    BatchCreateResponse,
    BatchFromCloud,
    FileKeyUpdate,
    ReconcileResponse,
    TrackCreate,
    TrackFromCloud,
    TrackResponse,
    TrackUpdate,
)
from ...services.integrity import IntegrityReconciler
from ...services.tracks import TrackService
from ..deps import get_reconciler, get_track_service

router = APIRouter(prefix="/tracks", tags=["tracks"])

_METADATA = {"title", "artist", "album", "duration", "cover_url"}


@router.get("", response_model=ApiResponse[list[TrackResponse]])
async def list_tracks(
    principal: Principal = Depends(get_current_principal),
    service: TrackService = Depends(get_track_service),
):
    tracks = await service.list_tracks(principal.owner_id)
    return ApiResponse(success=True, data=[TrackResponse.model_validate(t) for t in tracks])


@router.post("", response_model=ApiResponse[TrackResponse], status_code=201)
async def create_track(
    body: TrackCreate,
    principal: Principal = Depends(get_current_principal),
    service: TrackService = Depends(get_track_service),
):
    """Create a track from an inline payload (data URI in the JSON body)."""
    mime_type, data = decode_data_uri(body.file_data)
    track = await service.create_inline(
        principal.owner_id,
        body.model_dump(include=_METADATA),
        data,
        body.mime_type or mime_type,
    )
    return ApiResponse(success=True, data=TrackResponse.model_validate(track))


@router.post("/from-cloud", response_model=ApiResponse[TrackResponse], status_code=201)
async def create_track_from_cloud(
    body: TrackFromCloud,
    principal: Principal = Depends(get_current_principal),
    service: TrackService = Depends(get_track_service),
):
    """Register a track whose bytes the client already PUT to the bucket."""
    track = await service.create_from_cloud_key(
        principal.owner_id, body.model_dump(include=_METADATA), body.file_key
    )
    return ApiResponse(success=True, data=TrackResponse.model_validate(track))


@router.post("/from-cloud/batch", response_model=ApiResponse[BatchCreateResponse], status_code=201)
async def create_tracks_from_cloud(
    body: BatchFromCloud,
    principal: Principal = Depends(get_current_principal),
    service: TrackService = Depends(get_track_service),
):
    result = await service.create_batch_from_cloud(
        principal.owner_id, [item.model_dump() for item in body.tracks]
    )
    return ApiResponse(
        success=True,
        data=BatchCreateResponse(
            inserted=result.inserted,
            failed=result.failed,
            tracks=[TrackResponse.model_validate(t) for t in result.tracks],
            errors=result.errors,
        ),
    )


# Cleanup routes are declared before /{track_id} so the literal paths win.


@router.delete("/cleanup/no-audio", response_model=ApiResponse[CleanupResponse])
async def cleanup_tracks_without_audio(
    principal: Principal = Depends(get_current_principal),
    service: TrackService = Depends(get_track_service),
):
    deleted = await service.delete_tracks_without_audio(principal.owner_id)
    return ApiResponse(success=True, data=CleanupResponse(deleted=len(deleted), tracks=deleted))


@router.delete("/cleanup/verify-cloud", response_model=ApiResponse[ReconcileResponse])
async def verify_cloud_files(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    reconciler: IntegrityReconciler = Depends(get_reconciler),
):
    """Delete tracks whose cloud object can no longer be read."""
    report = await reconciler.verify_cloud_objects(db, principal.owner_id)
    return ApiResponse(
        success=True,
        data=ReconcileResponse(
            checked=report.checked,
            deleted=report.deleted,
            tracks=report.tracks,
            repointed=report.repointed,
            note=report.note,
        ),
    )


@router.get("/{track_id}", response_model=ApiResponse[TrackResponse])
async def get_track(
    track_id: str,
    principal: Principal = Depends(get_current_principal),
    service: TrackService = Depends(get_track_service),
):
    track = await service.get_track(principal.owner_id, track_id)
    return ApiResponse(success=True, data=TrackResponse.model_validate(track))


@router.put("/{track_id}", response_model=ApiResponse[TrackResponse])
async def update_track(
    track_id: str,
    body: TrackUpdate,
    principal: Principal = Depends(get_current_principal),
    service: TrackService = Depends(get_track_service),
):
    track = await service.update_track(
        principal.owner_id, track_id, body.model_dump(exclude_unset=True)
    )
    return ApiResponse(success=True, data=TrackResponse.model_validate(track))


@router.put("/{track_id}/analysis", response_model=ApiResponse[TrackResponse])
async def save_analysis(
    track_id: str,
    body: AnalysisUpdate,
    principal: Principal = Depends(get_current_principal),
    service: TrackService = Depends(get_track_service),
):
    track = await service.update_analysis(
        principal.owner_id, track_id, body.bpm, body.musical_key, body.energy
    )
    return ApiResponse(success=True, data=TrackResponse.model_validate(track))


@router.put("/{track_id}/file-key", response_model=ApiResponse[TrackResponse])
async def set_file_key(
    track_id: str,
    body: FileKeyUpdate,
    principal: Principal = Depends(get_current_principal),
    service: TrackService = Depends(get_track_service),
):
    """Point an inline track at its migrated cloud object."""
    track = await service.attach_file_key(principal.owner_id, track_id, body.file_key)
    return ApiResponse(success=True, data=TrackResponse.model_validate(track))


@router.delete("/{track_id}", response_model=ApiResponse[dict])
async def delete_track(
    track_id: str,
    principal: Principal = Depends(get_current_principal),
    service: TrackService = Depends(get_track_service),
):
    await service.delete_track(principal.owner_id, track_id)
    return ApiResponse(success=True, data={"id": track_id})
