"""In-memory chunked upload sessions.

Sessions are process-local and not durable: a restart, or a session older
than the TTL, drops every chunk received so far and the client restarts the
upload. Multi-instance deployments must pin a session's traffic to one
instance.
"""
from __future__ import annotations

import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from ..core.exceptions import (
    Forbidden,
    IncompleteUpload,
    PayloadTooLarge,
    SessionNotFound,
    ValidationFailed,
)

logger = logging.getLogger(__name__)


@dataclass
class UploadSession:
    session_id: str
    owner_id: str
    track_id: str
    total_chunks: int
    declared_size: int | None
    mime_type: str
    created_at: float
    chunks: dict[int, bytes] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def received(self) -> int:
        return len(self.chunks)

    def first_missing(self) -> int | None:
        for index in range(self.total_chunks):
            if index not in self.chunks:
                return index
        return None

    @property
    def complete(self) -> bool:
        return self.received == self.total_chunks and self.first_missing() is None


@dataclass
class ChunkReceipt:
    received: int
    total: int
    complete: bool


class UploadSessionManager:
    def __init__(
        self,
        ttl_seconds: float,
        max_chunk_bytes: int,
        max_total_chunks: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl = ttl_seconds
        self._max_chunk_bytes = max_chunk_bytes
        self._max_total_chunks = max_total_chunks
        self._clock = clock
        self._sessions: dict[str, UploadSession] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def _expired(self, session: UploadSession) -> bool:
        return self._clock() - session.created_at > self._ttl

    def create(
        self,
        owner_id: str,
        track_id: str,
        total_chunks: int,
        declared_size: int | None = None,
        mime_type: str = "audio/mpeg",
    ) -> UploadSession:
        if total_chunks < 1 or total_chunks > self._max_total_chunks:
            raise ValidationFailed(
                f"total_chunks must be between 1 and {self._max_total_chunks}"
            )
        session = UploadSession(
            session_id=f"upload-{secrets.token_urlsafe(24)}",
            owner_id=owner_id,
            track_id=track_id,
            total_chunks=total_chunks,
            declared_size=declared_size,
            mime_type=mime_type,
            created_at=self._clock(),
        )
        with self._lock:
            self._sessions[session.session_id] = session
        logger.info(
            f"Chunked upload initialized: {session.session_id}, track: {track_id}, chunks: {total_chunks}"
        )
        return session

    def get(self, session_id: str, owner_id: str) -> UploadSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None or self._expired(session):
            raise SessionNotFound(session_id)
        if session.owner_id != owner_id:
            raise Forbidden("Upload session belongs to another user")
        return session

    def put_chunk(self, session_id: str, owner_id: str, index: int, payload: bytes) -> ChunkReceipt:
        session = self.get(session_id, owner_id)
        if index < 0 or index >= session.total_chunks:
            raise ValidationFailed(
                f"chunk_index {index} out of range [0, {session.total_chunks})"
            )
        if len(payload) > self._max_chunk_bytes:
            raise PayloadTooLarge(len(payload), self._max_chunk_bytes)

        with session.lock:
            session.chunks[index] = payload
            receipt = ChunkReceipt(
                received=session.received,
                total=session.total_chunks,
                complete=session.complete,
            )
        logger.debug(f"Chunk {index + 1}/{session.total_chunks} received for session {session_id}")
        return receipt

    def assemble(self, session_id: str, owner_id: str) -> tuple[UploadSession, bytes]:
        """Join chunks in index order. The session stays alive until discard()."""
        session = self.get(session_id, owner_id)
        with session.lock:
            missing = session.first_missing()
            if missing is not None:
                raise IncompleteUpload(missing, session.received, session.total_chunks)
            data = b"".join(session.chunks[i] for i in range(session.total_chunks))
        return session, data

    def discard(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def sweep_expired(self) -> int:
        with self._lock:
            expired = [sid for sid, s in self._sessions.items() if self._expired(s)]
            for sid in expired:
                del self._sessions[sid]
        for sid in expired:
            logger.info(f"Cleaning up expired upload session: {sid}")
        return len(expired)

    def active_track_ids(self, owner_id: str) -> set[str]:
        with self._lock:
            return {
                s.track_id
                for s in self._sessions.values()
                if s.owner_id == owner_id and not self._expired(s)
            }
