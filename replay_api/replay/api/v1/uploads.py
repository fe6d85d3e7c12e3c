"""Upload endpoints: presigned direct-to-bucket PUTs, server-mediated proxy upload, chunked ingestion."""
import base64
import binascii
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from starlette.concurrency import run_in_threadpool

from ...config import Settings
from ...core.auth import Principal, get_current_principal
from ...core.exceptions import PayloadTooLarge, ValidationFailed
from ...core.storage import DEFAULT_MIME_TYPE, StorageService
from ...schemas.common import ApiResponse
from ...schemas.upload import (
    ChunkedUploadInit,
    ChunkedUploadSession,
    ChunkReceived,
    ChunkUpload,
    FinalizeRequest,
    FinalizeResponse,
    PresignBatchRequest,
    PresignBatchResponse,
    PresignedFile,
    PresignRequest,
    PresignResponse,
    ProxyUploadResponse,
)
from ...services.tracks import TrackService
from ...services.upload_sessions import UploadSessionManager
from ..deps import get_settings, get_storage, get_track_service, get_upload_sessions

logger = logging.getLogger(__name__)

router = APIRouter(tags=["upload"])

_METADATA = {"title", "artist", "album", "duration", "cover_url"}


def _decode_chunk(chunk_data: str) -> bytes:
    try:
        return base64.b64decode(chunk_data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationFailed("chunk_data is not valid base64") from exc


# ── Direct-to-bucket ──────────────────────────────────────────


@router.post("/upload/presign", response_model=ApiResponse[PresignResponse])
async def presign_upload(
    body: PresignRequest,
    principal: Principal = Depends(get_current_principal),
    storage: StorageService = Depends(get_storage),
):
    """Presigned PUT URL. 503 with `fallback: inline` when no bucket is configured."""
    upload = await run_in_threadpool(
        storage.put_cloud, principal.owner_id, body.filename, body.content_type
    )
    size_mb = round((body.file_size or 0) / 1024 / 1024)
    logger.info(f"Presigned URL generated for: {body.filename} ({size_mb}MB)")
    return ApiResponse(
        success=True,
        data=PresignResponse(
            upload_url=upload.upload_url,
            file_key=upload.file_key,
            expires_in=upload.expires_in,
            bucket=upload.bucket,
        ),
    )


@router.post("/upload/presign-batch", response_model=ApiResponse[PresignBatchResponse])
async def presign_upload_batch(
    body: PresignBatchRequest,
    principal: Principal = Depends(get_current_principal),
    storage: StorageService = Depends(get_storage),
    settings: Settings = Depends(get_settings),
):
    if not body.files:
        raise ValidationFailed("Files array required")
    if len(body.files) > settings.presign_batch_max:
        raise ValidationFailed(f"Maximum {settings.presign_batch_max} files per batch")

    def presign_all() -> list[PresignedFile]:
        uploads = []
        for index, file in enumerate(body.files):
            upload = storage.put_cloud(principal.owner_id, file.filename, file.content_type, index=index)
            uploads.append(
                PresignedFile(
                    original_filename=file.filename,
                    upload_url=upload.upload_url,
                    file_key=upload.file_key,
                    file_size=file.file_size,
                )
            )
        return uploads

    uploads = await run_in_threadpool(presign_all)
    logger.info(f"Generated {len(uploads)} presigned URLs for bulk upload")
    return ApiResponse(
        success=True,
        data=PresignBatchResponse(
            uploads=uploads,
            expires_in=settings.presign_expires_seconds,
            bucket=storage.bucket,
        ),
    )


@router.post("/upload/proxy", response_model=ApiResponse[ProxyUploadResponse])
async def proxy_upload(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    storage: StorageService = Depends(get_storage),
    settings: Settings = Depends(get_settings),
    x_filename: Optional[str] = Header(default=None),
    content_type: Optional[str] = Header(default=None),
    content_length: Optional[int] = Header(default=None),
):
    """Upload raw bytes through the API, for clients the bucket's CORS policy rejects."""
    limit = settings.max_proxy_upload_bytes
    if content_length is not None and content_length > limit:
        raise PayloadTooLarge(content_length, limit)

    data = await request.body()
    if not data:
        raise ValidationFailed("Request body is empty")

    mime_type = (content_type or DEFAULT_MIME_TYPE).split(";")[0].strip()
    key = await run_in_threadpool(
        storage.proxy_put, principal.owner_id, x_filename, mime_type, data
    )
    return ApiResponse(success=True, data=ProxyUploadResponse(file_key=key, size=len(data)))


# ── Chunked ingestion ─────────────────────────────────────────


@router.post("/tracks/upload/init", response_model=ApiResponse[ChunkedUploadSession])
async def init_chunked_upload(
    body: ChunkedUploadInit,
    principal: Principal = Depends(get_current_principal),
    service: TrackService = Depends(get_track_service),
):
    session, track = await service.init_chunked(
        principal.owner_id,
        body.model_dump(include=_METADATA),
        body.total_chunks,
        body.file_size,
        body.mime_type,
    )
    return ApiResponse(
        success=True,
        data=ChunkedUploadSession(
            session_id=session.session_id,
            track_id=track.id,
            total_chunks=session.total_chunks,
            message=f"Ready to receive {session.total_chunks} chunks",
        ),
    )


@router.post("/tracks/upload/chunk", response_model=ApiResponse[ChunkReceived])
async def upload_chunk(
    body: ChunkUpload,
    principal: Principal = Depends(get_current_principal),
    sessions: UploadSessionManager = Depends(get_upload_sessions),
):
    """Store one chunk. Re-sending an index overwrites it."""
    receipt = sessions.put_chunk(
        body.session_id, principal.owner_id, body.chunk_index, _decode_chunk(body.chunk_data)
    )
    return ApiResponse(
        success=True,
        data=ChunkReceived(received=receipt.received, total=receipt.total, complete=receipt.complete),
    )


@router.post("/tracks/upload/finalize", response_model=ApiResponse[FinalizeResponse])
async def finalize_chunked_upload(
    body: FinalizeRequest,
    principal: Principal = Depends(get_current_principal),
    service: TrackService = Depends(get_track_service),
):
    track, queued = await service.finalize_chunked(principal.owner_id, body.session_id)
    return ApiResponse(
        success=True,
        data=FinalizeResponse(
            track_id=track.id,
            transcription_queued=queued,
        ),
    )
