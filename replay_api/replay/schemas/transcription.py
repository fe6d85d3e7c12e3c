from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel


class TranscribeQueued(BaseModel):
    track_id: str
    status: str  # "queued"; progress is polled via the transcript endpoint
    message: str


class TranscribeAllQueued(BaseModel):
    queued: int
    message: str


class TranscriptResponse(BaseModel):
    track_id: str
    status: str  # "pending", "processing", "completed", "failed"
    text: Optional[str] = None
    segments: list[dict[str, Any]] = []
    words: list[dict[str, Any]] = []
    language: Optional[str] = None
    error: Optional[str] = None
    transcribed_at: Optional[datetime] = None
