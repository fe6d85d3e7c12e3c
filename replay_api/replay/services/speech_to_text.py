"""Speech-to-text capability backed by the OpenAI audio transcription API."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence

import httpx

from ..config import Settings
from ..core.exceptions import TranscriptionFailed
from ..core.storage import extension_for

logger = logging.getLogger(__name__)


@dataclass
class TranscriptResult:
    text: str
    segments: list[dict[str, Any]] = field(default_factory=list)
    words: list[dict[str, Any]] = field(default_factory=list)
    language: str = "en"


class SpeechToText(Protocol):
    async def transcribe(self, audio: bytes, mime_type: str) -> TranscriptResult: ...


def _is_retryable(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class WhisperClient:
    """Word- and segment-timestamped transcription with retry on 429/5xx/network errors."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        model: str = "whisper-1",
        timeout: float = 120.0,
        max_attempts: int = 5,
        retry_delays: Sequence[float] = (2.0, 4.0, 8.0, 15.0, 30.0),
        max_bytes: int = 25 * 1024 * 1024,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._api_key = api_key
        self._base_url = base_url
        self._model = model
        self._timeout = timeout
        self._max_attempts = max(1, max_attempts)
        self._retry_delays = list(retry_delays) or [0.0]
        self._max_bytes = max_bytes
        self._transport = transport
        self._sleep = sleep

    @property
    def worst_case_seconds(self) -> float:
        """Upper bound for one transcribe() call including every retry."""
        delays = sum(self._retry_delay(n) for n in range(1, self._max_attempts))
        return self._timeout * self._max_attempts + delays

    def _retry_delay(self, attempt: int) -> float:
        return self._retry_delays[min(attempt, len(self._retry_delays)) - 1]

    async def transcribe(self, audio: bytes, mime_type: str) -> TranscriptResult:
        if not audio:
            raise TranscriptionFailed("No audio data to transcribe")
        if len(audio) > self._max_bytes:
            raise TranscriptionFailed(
                f"Audio too large for transcription ({len(audio) / 1024 / 1024:.1f}MB)"
            )

        files = {"file": (f"audio.{extension_for(None, mime_type)}", audio, mime_type)}
        data = {
            "model": self._model,
            "response_format": "verbose_json",
            "timestamp_granularities[]": ["segment", "word"],
        }

        async with httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
            headers={"Authorization": f"Bearer {self._api_key}"},
        ) as client:
            for attempt in range(1, self._max_attempts + 1):
                try:
                    response = await client.post("/audio/transcriptions", data=data, files=files)
                except httpx.TransportError as exc:
                    last_error: Exception = exc
                    retryable = True
                    logger.warning(f"Transcription network error (attempt {attempt}): {exc!r}")
                else:
                    if response.status_code == 200:
                        return self._parse(response.json())
                    last_error = TranscriptionFailed(f"Provider returned HTTP {response.status_code}")
                    retryable = _is_retryable(response.status_code)
                    logger.warning(
                        f"Transcription error (attempt {attempt}): {response.status_code} {response.text[:200]}"
                    )

                if not retryable or attempt == self._max_attempts:
                    break
                delay = self._retry_delay(attempt)
                logger.info(f"Retrying transcription in {delay}s")
                await self._sleep(delay)

        raise TranscriptionFailed(f"Transcription failed: {last_error}") from last_error

    @staticmethod
    def _parse(payload: dict[str, Any]) -> TranscriptResult:
        segments = [
            {
                "id": seg.get("id"),
                "start": seg.get("start"),
                "end": seg.get("end"),
                "text": (seg.get("text") or "").strip(),
            }
            for seg in payload.get("segments") or []
        ]
        words = [
            {"word": w.get("word"), "start": w.get("start"), "end": w.get("end")}
            for w in payload.get("words") or []
        ]
        return TranscriptResult(
            text=(payload.get("text") or "").strip(),
            segments=segments,
            words=words,
            language=payload.get("language") or "en",
        )


def build_speech_to_text(settings: Settings) -> Optional[WhisperClient]:
    if not settings.transcription_configured:
        logger.info("Speech-to-text not configured; transcription disabled")
        return None
    return WhisperClient(
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
        model=settings.transcription_model,
        timeout=settings.transcription_timeout_seconds,
        max_attempts=settings.transcription_max_attempts,
        retry_delays=settings.transcription_retry_delays,
        max_bytes=settings.transcription_max_bytes,
    )
