from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class TrackMetadata(BaseModel):
    title: Optional[str] = None
    artist: Optional[str] = None
    album: Optional[str] = None
    duration: Optional[float] = 0
    cover_url: Optional[str] = None


class TrackCreate(TrackMetadata):
    """Inline create: `file_data` is a data URI (or bare base64)."""

    file_data: str
    mime_type: Optional[str] = None


class TrackFromCloud(TrackMetadata):
    file_key: Optional[str] = None


class BatchFromCloud(BaseModel):
    tracks: list[TrackFromCloud]


class TrackUpdate(BaseModel):
    title: Optional[str] = None
    artist: Optional[str] = None
    album: Optional[str] = None
    duration: Optional[float] = None
    cover_url: Optional[str] = None
    bpm: Optional[float] = None
    musical_key: Optional[str] = None
    energy: Optional[float] = None


class AnalysisUpdate(BaseModel):
    bpm: Optional[float] = None
    musical_key: Optional[str] = None
    energy: Optional[float] = Field(default=None, ge=0, le=1)


class FileKeyUpdate(BaseModel):
    file_key: Optional[str] = None


class TrackResponse(BaseModel):
    id: str
    title: Optional[str] = None
    artist: Optional[str] = None
    album: Optional[str] = None
    duration: float = 0
    cover_url: Optional[str] = None
    mime_type: Optional[str] = None
    file_key: Optional[str] = None
    storage: Optional[str] = None  # "cloud", "inline", or None while a chunked upload is in flight
    has_audio: bool = False
    lyrics_status: str
    lyrics_language: Optional[str] = None
    lyrics_error: Optional[str] = None
    has_lyrics: bool = False
    bpm: Optional[float] = None
    musical_key: Optional[str] = None
    energy: Optional[float] = None
    analyzed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class BatchError(BaseModel):
    index: int
    title: Optional[str] = None
    error: str


class BatchCreateResponse(BaseModel):
    inserted: int
    failed: int
    tracks: list[TrackResponse]
    errors: list[BatchError] = []


class ReconcileResponse(BaseModel):
    checked: int
    deleted: int
    tracks: list[dict] = []
    repointed: int = 0
    note: Optional[str] = None
