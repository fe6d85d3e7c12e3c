"""Track ingestion and owner-scoped track operations."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import and_, delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings
from ..core.exceptions import (
    PayloadTooLarge,
    ReplayError,
    StorageUnavailable,
    TrackNotFound,
    ValidationFailed,
)
from ..core.storage import StorageService
from ..models.track import Track, TranscriptionStatus
from .transcription import Dispatcher
from .upload_sessions import UploadSession, UploadSessionManager

logger = logging.getLogger(__name__)

METADATA_FIELDS = ("title", "artist", "album", "duration", "cover_url")
ANALYSIS_FIELDS = ("bpm", "musical_key", "energy")
MAX_TEXT_LENGTH = 300


@dataclass
class BatchCreateResult:
    tracks: list[Track] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def inserted(self) -> int:
        return len(self.tracks)

    @property
    def failed(self) -> int:
        return len(self.errors)


def _validated_metadata(meta: dict[str, Any]) -> dict[str, Any]:
    clean = {name: meta.get(name) for name in METADATA_FIELDS}
    for name in ("title", "artist", "album"):
        value = clean[name]
        if value is not None and len(value) > MAX_TEXT_LENGTH:
            raise ValidationFailed(f"{name} longer than {MAX_TEXT_LENGTH} characters")
    duration = clean["duration"] or 0
    if duration < 0:
        raise ValidationFailed("duration must not be negative")
    clean["duration"] = duration
    return clean


class TrackService:
    def __init__(
        self,
        db: AsyncSession,
        storage: StorageService,
        sessions: UploadSessionManager,
        dispatcher: Dispatcher,
        settings: Settings,
    ):
        self._db = db
        self._storage = storage
        self._sessions = sessions
        self._dispatcher = dispatcher
        self._settings = settings

    def _new_track(self, owner_id: str, meta: dict[str, Any]) -> Track:
        return Track(
            user_id=owner_id,
            lyrics_status=TranscriptionStatus.PENDING.value,
            **_validated_metadata(meta),
        )

    def _dispatch(self, track_id: str) -> bool:
        # The track is already saved; a queue fault must not fail the request.
        if not self._dispatcher.available:
            return False
        try:
            queued = self._dispatcher.dispatch(track_id)
        except Exception:
            logger.exception(f"Auto-transcription dispatch failed for track {track_id}")
            return False
        if queued:
            logger.info(f"Auto-transcription dispatched for track {track_id}")
        else:
            logger.warning(f"Auto-transcription not queued for track {track_id}")
        return queued

    async def _commit_and_dispatch(self, track: Track) -> None:
        # The row must be durable before a worker can pick it up.
        await self._db.commit()
        self._dispatch(track.id)

    # ── Creation ──────────────────────────────────────────────

    async def create_inline(
        self, owner_id: str, meta: dict[str, Any], data: bytes, mime_type: str
    ) -> Track:
        track = self._new_track(owner_id, meta)

        if self._settings.prefer_cloud_for_inline and self._storage.cloud_available:
            try:
                key = await asyncio.to_thread(
                    self._storage.proxy_put, owner_id, None, mime_type, data
                )
                self._storage.attach_cloud_key(track, key)
            except StorageUnavailable as exc:
                logger.warning(f"Cloud upload failed, storing inline: {exc.message}")
                self._storage.put_inline(track, data, mime_type)
        else:
            self._storage.put_inline(track, data, mime_type)

        self._db.add(track)
        await self._commit_and_dispatch(track)
        logger.info(f"Track created: {track.id} ({track.storage}, {len(data)} bytes)")
        return track

    async def create_from_cloud_key(
        self, owner_id: str, meta: dict[str, Any], file_key: Optional[str]
    ) -> Track:
        track = self._new_track(owner_id, meta)
        self._storage.attach_cloud_key(track, file_key or "")
        self._db.add(track)
        await self._commit_and_dispatch(track)
        logger.info(f"Track created from cloud upload: {track.title} ({track.file_key})")
        return track

    async def create_batch_from_cloud(
        self, owner_id: str, items: list[dict[str, Any]]
    ) -> BatchCreateResult:
        """Insert every valid item; malformed items are reported, not fatal."""
        result = BatchCreateResult()
        for position, item in enumerate(items):
            try:
                track = self._new_track(owner_id, item)
                self._storage.attach_cloud_key(track, item.get("file_key") or "")
            except ReplayError as exc:
                result.errors.append(
                    {"index": position, "title": item.get("title"), "error": exc.message}
                )
                continue
            self._db.add(track)
            result.tracks.append(track)

        await self._db.commit()
        logger.info(
            f"Bulk created {result.inserted} tracks from cloud keys, {result.failed} failed"
        )
        return result

    async def init_chunked(
        self,
        owner_id: str,
        meta: dict[str, Any],
        total_chunks: int,
        file_size: Optional[int],
        mime_type: str,
    ) -> tuple[UploadSession, Track]:
        """Pre-create a pointerless track so it is listed while chunks arrive."""
        limit = self._settings.max_inline_payload_bytes
        if file_size and file_size > limit:
            raise PayloadTooLarge(file_size, limit)

        track = self._new_track(owner_id, meta)
        track.mime_type = mime_type
        self._db.add(track)
        await self._db.flush()

        session = self._sessions.create(
            owner_id=owner_id,
            track_id=track.id,
            total_chunks=total_chunks,
            declared_size=file_size,
            mime_type=mime_type,
        )
        try:
            await self._db.commit()
        except Exception:
            self._sessions.discard(session.session_id)
            raise
        return session, track

    async def finalize_chunked(self, owner_id: str, session_id: str) -> tuple[Track, bool]:
        session, data = self._sessions.assemble(session_id, owner_id)
        if session.declared_size and session.declared_size != len(data):
            logger.warning(
                f"Session {session_id} assembled {len(data)} bytes, declared {session.declared_size}"
            )

        try:
            track = await self.get_track(owner_id, session.track_id)
        except TrackNotFound:
            self._sessions.discard(session_id)
            raise

        self._storage.put_inline(track, data, session.mime_type)
        await self._db.commit()
        self._sessions.discard(session_id)
        logger.info(f"Chunked upload complete for track {track.id} ({len(data)} bytes)")

        queued = self._dispatch(track.id)
        return track, queued

    # ── Owner-scoped CRUD ─────────────────────────────────────

    async def list_tracks(self, owner_id: str) -> list[Track]:
        result = await self._db.execute(
            select(Track).where(Track.user_id == owner_id).order_by(Track.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_track(self, owner_id: str, track_id: str) -> Track:
        result = await self._db.execute(
            select(Track).where(and_(Track.id == track_id, Track.user_id == owner_id))
        )
        track = result.scalar_one_or_none()
        if track is None:
            raise TrackNotFound(track_id)
        return track

    async def update_track(self, owner_id: str, track_id: str, changes: dict[str, Any]) -> Track:
        track = await self.get_track(owner_id, track_id)
        descriptive = {k: v for k, v in changes.items() if k in METADATA_FIELDS and v is not None}
        if descriptive:
            merged = {name: getattr(track, name) for name in METADATA_FIELDS}
            merged.update(descriptive)
            for name, value in _validated_metadata(merged).items():
                setattr(track, name, value)

        analysis = {k: v for k, v in changes.items() if k in ANALYSIS_FIELDS and v is not None}
        for name, value in analysis.items():
            setattr(track, name, value)
        if "bpm" in analysis or "musical_key" in analysis:
            track.analyzed_at = datetime.now(timezone.utc)

        await self._db.commit()
        return track

    async def update_analysis(
        self,
        owner_id: str,
        track_id: str,
        bpm: Optional[float],
        musical_key: Optional[str],
        energy: Optional[float],
    ) -> Track:
        track = await self.get_track(owner_id, track_id)
        track.bpm = bpm
        track.musical_key = musical_key
        track.energy = energy
        track.analyzed_at = datetime.now(timezone.utc)
        await self._db.commit()
        logger.info(f"Analysis saved for track {track_id}: BPM={bpm}, Key={musical_key}")
        return track

    async def attach_file_key(self, owner_id: str, track_id: str, file_key: Optional[str]) -> Track:
        """Point a track at a cloud object; the inline copy is dropped."""
        track = await self.get_track(owner_id, track_id)
        self._storage.attach_cloud_key(track, file_key or "")
        await self._db.commit()
        logger.info(f"Track {track_id} synced to cloud with file key: {track.file_key}")
        return track

    async def delete_track(self, owner_id: str, track_id: str) -> None:
        await self.get_track(owner_id, track_id)
        await self._db.execute(
            delete(Track).where(and_(Track.id == track_id, Track.user_id == owner_id))
        )
        await self._db.commit()

    async def delete_tracks_without_audio(self, owner_id: str) -> list[dict[str, Any]]:
        result = await self._db.execute(
            select(Track.id, Track.title).where(
                Track.user_id == owner_id,
                Track.file_data.is_(None),
                Track.file_key.is_(None),
            )
        )
        uploading = self._sessions.active_track_ids(owner_id)
        rows = [
            {"id": row.id, "title": row.title}
            for row in result.all()
            if row.id not in uploading
        ]
        if rows:
            await self._db.execute(
                delete(Track).where(Track.id.in_([r["id"] for r in rows]))
            )
            await self._db.commit()
        logger.info(f"Cleaned up {len(rows)} tracks without audio for user {owner_id}")
        return rows
