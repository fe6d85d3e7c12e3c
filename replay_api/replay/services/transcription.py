"""Background transcription: per-track jobs, paced batches, and the dispatchers that run them."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Iterable, Optional, Protocol

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..core.storage import StoragePointer, StorageService, mime_for_key
from ..models.track import Track, TranscriptionStatus
from .speech_to_text import SpeechToText, TranscriptResult

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def select_pending_track_ids(db: AsyncSession, owner_id: str) -> list[str]:
    """Tracks with audio, not currently processing, and without a transcript."""
    result = await db.execute(
        select(Track.id)
        .where(
            Track.user_id == owner_id,
            or_(Track.file_data.is_not(None), Track.file_key.is_not(None)),
            Track.lyrics_status != TranscriptionStatus.PROCESSING.value,
            or_(Track.lyrics_text.is_(None), Track.lyrics_text == ""),
        )
        .order_by(Track.created_at.desc())
    )
    return list(result.scalars().all())


class TranscriptionPipeline:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        storage: StorageService,
        speech_to_text: Optional[SpeechToText],
        settings: Settings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._session_factory = session_factory
        self._storage = storage
        self._stt = speech_to_text
        self._settings = settings
        self._sleep = sleep

    @property
    def available(self) -> bool:
        return self._stt is not None

    @property
    def _provider_timeout(self) -> float:
        bound = getattr(self._stt, "worst_case_seconds", None)
        return bound or self._settings.transcription_timeout_seconds

    async def transcribe_track(self, track_id: str, force: bool = False) -> Optional[TranscriptionStatus]:
        """Run one job. Never raises: every failure is recorded on the track."""
        try:
            return await self._run(track_id, force)
        except Exception as exc:
            logger.exception(f"Transcription job crashed for track {track_id}")
            try:
                await self._finish(track_id, error=f"internal error: {exc}")
            except Exception:
                logger.exception(f"Could not record failure for track {track_id}")
            return TranscriptionStatus.FAILED

    async def _run(self, track_id: str, force: bool) -> Optional[TranscriptionStatus]:
        if self._stt is None:
            logger.info(f"Speech-to-text not configured, skipping track {track_id}")
            return None

        async with self._session_factory() as db:
            track = await db.get(Track, track_id)
            if track is None:
                logger.warning(f"Track {track_id} vanished before transcription")
                return None
            if not track.status.can_transition(TranscriptionStatus.PROCESSING, force=force):
                logger.info(f"Track {track_id} is {track.lyrics_status}; not transcribing")
                return track.status

            track.lyrics_status = TranscriptionStatus.PROCESSING.value
            track.transcription_started_at = _now()
            track.lyrics_error = None
            pointer = StoragePointer.for_track(track)
            mime_type = track.mime_type or mime_for_key(track.file_key or "")
            await db.commit()

        logger.info(f"Starting transcription for track {track_id}")
        try:
            audio = await asyncio.wait_for(
                asyncio.to_thread(self._storage.get_bytes, pointer),
                timeout=self._settings.s3_read_timeout * 4,
            )
            result = await asyncio.wait_for(
                self._stt.transcribe(audio, mime_type), timeout=self._provider_timeout
            )
            if not result.text:
                raise ValueError("provider returned an empty transcript")
        except Exception as exc:
            reason = str(exc) or type(exc).__name__
            logger.error(f"Transcription failed for track {track_id}: {reason}")
            await self._finish(track_id, error=reason)
            return TranscriptionStatus.FAILED

        await self._finish(track_id, result=result)
        logger.info(f"Transcription completed for track {track_id} ({len(result.text)} chars)")
        return TranscriptionStatus.COMPLETED

    async def _finish(
        self,
        track_id: str,
        result: Optional[TranscriptResult] = None,
        error: Optional[str] = None,
    ) -> None:
        async with self._session_factory() as db:
            track = await db.get(Track, track_id)
            if track is None:
                return
            if result is not None:
                track.lyrics_status = TranscriptionStatus.COMPLETED.value
                track.lyrics_text = result.text
                track.lyrics_segments = {"segments": result.segments, "words": result.words}
                track.lyrics_language = result.language
                track.lyrics_error = None
                track.transcribed_at = _now()
            else:
                track.lyrics_status = TranscriptionStatus.FAILED.value
                track.lyrics_error = (error or "unknown error")[:1000]
                track.lyrics_text = None
                track.lyrics_segments = None
                track.lyrics_language = None
                track.transcribed_at = None
            await db.commit()

    async def transcribe_many(self, track_ids: Iterable[str]) -> dict[str, int]:
        """Sequential, paced batch. One track's failure never stops the rest."""
        ids = list(track_ids)
        summary = {"completed": 0, "failed": 0, "skipped": 0}
        for position, track_id in enumerate(ids):
            status = await self.transcribe_track(track_id)
            if status is TranscriptionStatus.COMPLETED:
                summary["completed"] += 1
            elif status is TranscriptionStatus.FAILED:
                summary["failed"] += 1
            else:
                summary["skipped"] += 1
            if position < len(ids) - 1:
                await self._sleep(self._settings.batch_transcription_delay_seconds)
        logger.info(f"Batch transcription complete: {summary}")
        return summary

    async def settle_stale(self, older_than_seconds: Optional[float] = None) -> int:
        """Move `processing` rows whose job died or hung to `failed` so they can be retried."""
        if older_than_seconds is None:
            older_than_seconds = self._settings.transcription_stale_after_seconds
        cutoff = _now() - timedelta(seconds=older_than_seconds)
        async with self._session_factory() as db:
            result = await db.execute(
                update(Track)
                .where(
                    Track.lyrics_status == TranscriptionStatus.PROCESSING.value,
                    or_(
                        Track.transcription_started_at.is_(None),
                        Track.transcription_started_at <= cutoff,
                    ),
                )
                .values(
                    lyrics_status=TranscriptionStatus.FAILED.value,
                    lyrics_error="transcription timed out",
                    lyrics_text=None,
                    lyrics_segments=None,
                    lyrics_language=None,
                    transcribed_at=None,
                )
            )
            await db.commit()
        if result.rowcount:
            logger.warning(f"Settled {result.rowcount} stale transcription(s) to failed")
        return result.rowcount or 0


# ── Dispatchers ───────────────────────────────────────────────


class Dispatcher(Protocol):
    available: bool

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    def dispatch(self, track_id: str, force: bool = False) -> bool: ...

    def dispatch_batch(self, track_ids: list[str]) -> int: ...


class TranscriptionDispatcher:
    """In-process worker pool on the application's event loop.

    dispatch() enqueues and returns immediately; callers observe progress only
    through the track's lyrics_status. A batch is one queue item, so its tracks
    are processed sequentially by a single worker.
    """

    def __init__(self, pipeline: TranscriptionPipeline, workers: int = 2):
        self._pipeline = pipeline
        self._worker_count = max(1, workers)
        self._queue: Optional[asyncio.Queue] = None
        self._workers: list[asyncio.Task] = []
        self.failures = 0

    @property
    def available(self) -> bool:
        return self._pipeline.available

    async def start(self) -> None:
        self._queue = asyncio.Queue()
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"transcription-worker-{n}")
            for n in range(self._worker_count)
        ]
        logger.info(f"Transcription dispatcher started with {self._worker_count} worker(s)")

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._queue = None

    async def join(self) -> None:
        if self._queue is not None:
            await self._queue.join()

    def _enqueue(self, item: tuple) -> None:
        if self._queue is None:
            raise RuntimeError("Transcription dispatcher is not running")
        self._queue.put_nowait(item)

    def dispatch(self, track_id: str, force: bool = False) -> bool:
        if not self.available:
            return False
        self._enqueue(("track", track_id, force))
        return True

    def dispatch_batch(self, track_ids: list[str]) -> int:
        if not self.available or not track_ids:
            return 0
        self._enqueue(("batch", list(track_ids), False))
        return len(track_ids)

    async def _worker(self, number: int) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            kind, payload, force = await queue.get()
            try:
                if kind == "track":
                    await self._pipeline.transcribe_track(payload, force=force)
                else:
                    await self._pipeline.transcribe_many(payload)
            except Exception:
                self.failures += 1
                logger.exception(f"Transcription worker {number} failed on {kind} job")
            finally:
                queue.task_done()


class CeleryDispatcher:
    """Hands jobs to the Celery worker (see replay.tasks.transcribe)."""

    def __init__(self, available: bool):
        self.available = available

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    def dispatch(self, track_id: str, force: bool = False) -> bool:
        if not self.available:
            return False
        from ..tasks.transcribe import transcribe_track

        try:
            transcribe_track.delay(track_id, force)
        except Exception:
            logger.exception(f"Could not enqueue transcription for track {track_id}")
            return False
        return True

    def dispatch_batch(self, track_ids: list[str]) -> int:
        if not self.available or not track_ids:
            return 0
        from ..tasks.transcribe import transcribe_batch

        try:
            transcribe_batch.delay(list(track_ids))
        except Exception:
            logger.exception(f"Could not enqueue batch transcription of {len(track_ids)} tracks")
            return 0
        return len(track_ids)


def build_dispatcher(settings: Settings, pipeline: TranscriptionPipeline):
    if settings.transcription_backend == "celery":
        return CeleryDispatcher(available=pipeline.available)
    return TranscriptionDispatcher(pipeline, workers=settings.transcription_workers)
