import enum
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, DateTime, Float, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ..database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TranscriptionStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    def can_transition(self, target: "TranscriptionStatus", force: bool = False) -> bool:
        if target is TranscriptionStatus.PROCESSING:
            if self is TranscriptionStatus.COMPLETED:
                return force
            return self in (TranscriptionStatus.PENDING, TranscriptionStatus.FAILED)
        if target in (TranscriptionStatus.COMPLETED, TranscriptionStatus.FAILED):
            return self is TranscriptionStatus.PROCESSING
        return False


class Track(Base):
    __tablename__ = "tracks"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)

    title: Mapped[str | None] = mapped_column(String(300), nullable=True)
    artist: Mapped[str | None] = mapped_column(String(300), nullable=True)
    album: Mapped[str | None] = mapped_column(String(300), nullable=True)
    duration: Mapped[float] = mapped_column(Float, default=0)
    cover_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Storage pointer: exactly one of file_data (inline data URI) / file_key (bucket key)
    mime_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    file_data: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_key: Mapped[str | None] = mapped_column(String(500), nullable=True)

    lyrics_status: Mapped[str] = mapped_column(
        String(20), default=TranscriptionStatus.PENDING.value
    )
    lyrics_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    lyrics_segments: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    lyrics_language: Mapped[str | None] = mapped_column(String(20), nullable=True)
    lyrics_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    transcription_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    transcribed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    bpm: Mapped[float | None] = mapped_column(Float, nullable=True)
    musical_key: Mapped[str | None] = mapped_column(String(20), nullable=True)
    energy: Mapped[float | None] = mapped_column(Float, nullable=True)
    analyzed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    @property
    def status(self) -> TranscriptionStatus:
        return TranscriptionStatus(self.lyrics_status)

    @property
    def storage(self) -> str | None:
        """Which backend holds the audio: "cloud", "inline" or None while ingesting."""
        if self.file_key:
            return "cloud"
        if self.file_data:
            return "inline"
        return None

    @property
    def has_audio(self) -> bool:
        return self.storage is not None

    @property
    def has_lyrics(self) -> bool:
        return bool(self.lyrics_text)
