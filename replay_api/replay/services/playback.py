"""Resolve a track's audio to a playable HTTP response, whichever backend holds it."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional

from fastapi.responses import JSONResponse, RedirectResponse, Response, StreamingResponse
from starlette.concurrency import run_in_threadpool

from ..config import Settings
from ..core.exceptions import NotFound, ObjectUnreadable, RangeNotSatisfiable, StorageUnavailable
from ..core.storage import StorageService, decode_data_uri
from ..models.track import Track

logger = logging.getLogger(__name__)

_RANGE_RE = re.compile(r"^\s*bytes=(\d*)-(\d*)\s*$")

PLAYBACK_HEADERS = {
    "Accept-Ranges": "bytes",
    "Cache-Control": "private, max-age=86400",
    "Access-Control-Expose-Headers": "Content-Range, Accept-Ranges, Content-Length",
}


@dataclass(frozen=True)
class ByteRange:
    start: int
    end: int  # inclusive

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def content_range(self, size: int) -> str:
        return f"bytes {self.start}-{self.end}/{size}"


def parse_range(header: Optional[str], size: int) -> Optional[ByteRange]:
    """Parse a single-range ``Range`` header against a body of ``size`` bytes.

    Returns None when the header is absent or not understood (the full body is
    served), raises RangeNotSatisfiable when it cannot be honoured.
    """
    if not header:
        return None
    match = _RANGE_RE.match(header)
    if not match:
        return None
    first, last = match.groups()
    if not first and not last:
        return None

    if not first:
        suffix = int(last)
        if suffix == 0 or size == 0:
            raise RangeNotSatisfiable(size)
        return ByteRange(max(size - suffix, 0), size - 1)

    start = int(first)
    end = min(int(last), size - 1) if last else size - 1
    if start >= size or start > end:
        raise RangeNotSatisfiable(size)
    return ByteRange(start, end)


def inline_response(file_data: str, range_header: Optional[str]) -> Response:
    mime_type, data = decode_data_uri(file_data)
    byte_range = parse_range(range_header, len(data))
    if byte_range is None:
        return Response(content=data, media_type=mime_type, headers=dict(PLAYBACK_HEADERS))

    headers = dict(PLAYBACK_HEADERS)
    headers["Content-Range"] = byte_range.content_range(len(data))
    return Response(
        content=data[byte_range.start:byte_range.end + 1],
        status_code=206,
        media_type=mime_type,
        headers=headers,
    )


class PlaybackService:
    def __init__(self, storage: StorageService, settings: Settings):
        self._storage = storage
        self._settings = settings

    async def proxy(self, file_key: str, range_header: Optional[str]) -> StreamingResponse:
        """Pass the bucket's byte stream through without buffering it."""
        stream = await run_in_threadpool(self._storage.get_stream, file_key, range_header)
        headers = dict(PLAYBACK_HEADERS)
        if stream.content_length is not None:
            headers["Content-Length"] = str(stream.content_length)
        if stream.content_range:
            headers["Content-Range"] = stream.content_range
        return StreamingResponse(
            stream.body,
            status_code=stream.status_code,
            media_type=stream.content_type,
            headers=headers,
        )

    async def stream(self, track: Track, range_header: Optional[str], mode: Optional[str] = None) -> Response:
        mode = mode or self._settings.stream_mode
        if track.file_key:
            try:
                if mode == "redirect":
                    url = await run_in_threadpool(self._storage.signed_read_url, track.file_key)
                    return RedirectResponse(url, status_code=302)
                return await self.proxy(track.file_key, range_header)
            except (StorageUnavailable, ObjectUnreadable) as exc:
                if not track.file_data:
                    logger.error(f"Cloud playback failed for track {track.id}: {exc!r}")
                    if isinstance(exc, StorageUnavailable):
                        raise ObjectUnreadable(track.file_key, "cloud unavailable") from exc
                    raise
                logger.warning(f"Cloud playback failed for track {track.id}, serving inline copy")

        if track.file_data:
            return inline_response(track.file_data, range_header)

        raise NotFound("No audio data available")

    async def stream_url(self, track: Track, token: str) -> JSONResponse:
        if track.file_key and self._storage.cloud_available:
            expires_in = self._settings.presign_expires_seconds
            url = await run_in_threadpool(self._storage.signed_read_url, track.file_key, expires_in)
            return JSONResponse(
                {"success": True, "data": {"url": url, "expires_in": expires_in, "source": "cloud"}}
            )
        if track.file_data:
            return JSONResponse(
                {
                    "success": True,
                    "data": {
                        "url": f"/api/v1/tracks/{track.id}/stream?token={token}",
                        "expires_in": None,
                        "source": "inline",
                    },
                }
            )
        if track.file_key:
            raise ObjectUnreadable(track.file_key, "cloud unavailable")
        raise NotFound("No audio data available")
