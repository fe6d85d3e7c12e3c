from typing import Optional

from pydantic import BaseModel, Field

from .track import TrackMetadata


class PresignRequest(BaseModel):
    filename: str
    content_type: Optional[str] = None
    file_size: Optional[int] = None


class PresignBatchRequest(BaseModel):
    files: list[PresignRequest]


class PresignResponse(BaseModel):
    upload_url: str
    file_key: str
    expires_in: int
    bucket: str


class PresignedFile(BaseModel):
    original_filename: str
    upload_url: str
    file_key: str
    file_size: Optional[int] = None


class PresignBatchResponse(BaseModel):
    uploads: list[PresignedFile]
    expires_in: int
    bucket: str


class ProxyUploadResponse(BaseModel):
    file_key: str
    size: int


class ChunkedUploadInit(TrackMetadata):
    total_chunks: int = Field(ge=1)
    file_size: Optional[int] = Field(default=None, ge=0)
    mime_type: str = "audio/mpeg"


class ChunkedUploadSession(BaseModel):
    session_id: str
    track_id: str
    total_chunks: int
    message: str


class ChunkUpload(BaseModel):
    session_id: str
    chunk_index: int
    chunk_data: str  # base64 of this chunk's raw bytes


class ChunkReceived(BaseModel):
    received: int
    total: int
    complete: bool


class FinalizeRequest(BaseModel):
    session_id: str


class FinalizeResponse(BaseModel):
    track_id: str
    transcription_queued: bool
    message: str = "Upload complete"
