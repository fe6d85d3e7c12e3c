"""Storage facade: inline data URIs in the track row, or an S3-compatible bucket."""
from __future__ import annotations

import base64
import binascii
import logging
import re
import secrets
import time
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any, Iterator, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ..config import Settings
from .exceptions import (
    ObjectUnreadable,
    PayloadTooLarge,
    RangeNotSatisfiable,
    StorageUnavailable,
    ValidationFailed,
)

if TYPE_CHECKING:
    from ..models.track import Track

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "audio/mpeg"
STREAM_CHUNK_SIZE = 64 * 1024

MIME_BY_EXT = {
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "flac": "audio/flac",
    "m4a": "audio/mp4",
    "mp4": "audio/mp4",
    "aac": "audio/aac",
    "ogg": "audio/ogg",
    "webm": "audio/webm",
}

EXT_BY_MIME = {
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/wav": "wav",
    "audio/wave": "wav",
    "audio/x-wav": "wav",
    "audio/flac": "flac",
    "audio/x-flac": "flac",
    "audio/mp4": "m4a",
    "audio/x-m4a": "m4a",
    "audio/aac": "aac",
    "audio/ogg": "ogg",
    "audio/webm": "webm",
}

_DATA_URI_RE = re.compile(r"^data:([^;,]+);base64,(.*)$", re.DOTALL)

_NOT_FOUND_CODES = {"NoSuchKey", "NotFound", "404"}
_AUTH_ERROR_CODES = {
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
    "ExpiredToken",
    "InvalidToken",
    "Unauthorized",
    "401",
}
# Returned for absent keys when the credential cannot list the bucket.
ACCESS_DENIED_CODES = {"AccessDenied", "403"}


# ── Inline encoding ───────────────────────────────────────────


def encode_data_uri(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def decode_data_uri(value: str) -> tuple[str, bytes]:
    """Return (mime_type, raw bytes) for a stored inline payload.

    Bare base64 without a ``data:`` prefix is accepted and assumed to be MP3.
    """
    match = _DATA_URI_RE.match(value)
    mime_type, encoded = (match.group(1), match.group(2)) if match else (DEFAULT_MIME_TYPE, value)
    try:
        return mime_type, base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationFailed("Invalid audio payload encoding") from exc


def mime_for_key(key: str) -> str:
    suffix = PurePosixPath(key).suffix.lstrip(".").lower()
    return MIME_BY_EXT.get(suffix, DEFAULT_MIME_TYPE)


def extension_for(filename: Optional[str], content_type: Optional[str] = None) -> str:
    suffix = PurePosixPath(filename or "").suffix.lstrip(".").lower()
    if suffix and suffix.isalnum():
        return suffix
    return EXT_BY_MIME.get((content_type or "").lower(), "mp3")


def _error_code(exc: Exception) -> str:
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = str(error.get("Code") or "")
        if not code:
            code = str(exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", ""))
        return code
    return type(exc).__name__


# ── Value types ───────────────────────────────────────────────


@dataclass(frozen=True)
class StoragePointer:
    file_key: Optional[str] = None
    file_data: Optional[str] = None

    @classmethod
    def for_track(cls, track: "Track") -> "StoragePointer":
        return cls(file_key=track.file_key, file_data=track.file_data)


@dataclass
class PresignedUpload:
    upload_url: str
    file_key: str
    expires_in: int
    bucket: str


@dataclass
class CloudStream:
    body: Iterator[bytes]
    content_type: str
    content_length: Optional[int]
    content_range: Optional[str]
    status_code: int


def _iter_body(body: Any, chunk_size: int) -> Iterator[bytes]:
    try:
        for chunk in body.iter_chunks(chunk_size):
            if chunk:
                yield chunk
    finally:
        body.close()


class StorageService:
    """Unified storage interface. Cloud calls raise StorageUnavailable when no bucket is usable."""

    def __init__(self, settings: Settings, client: Any = None):
        self._settings = settings
        self._bucket = settings.s3_bucket
        self._client = client
        self._auth_failures = 0
        self._disabled = False

        if self._client is None and settings.cloud_configured:
            self._client = boto3.client(
                "s3",
                region_name=settings.s3_region,
                endpoint_url=settings.s3_endpoint_url or None,
                aws_access_key_id=settings.s3_access_key_id,
                aws_secret_access_key=settings.s3_secret_access_key,
                config=Config(
                    signature_version="s3v4",
                    connect_timeout=settings.s3_connect_timeout,
                    read_timeout=settings.s3_read_timeout,
                    retries={"max_attempts": 3, "mode": "standard"},
                ),
            )

        logger.info(f"Cloud storage configured: {self.cloud_available}")

    @property
    def cloud_available(self) -> bool:
        return self._client is not None and bool(self._bucket) and not self._disabled

    @property
    def bucket(self) -> str:
        return self._bucket

    def _require_client(self) -> Any:
        if not self.cloud_available:
            raise StorageUnavailable()
        return self._client

    def _record_success(self) -> None:
        self._auth_failures = 0

    def _record_failure(self, exc: Exception) -> bool:
        """Track credential faults; returns True if the error was an auth failure."""
        if _error_code(exc) not in _AUTH_ERROR_CODES:
            return False
        self._auth_failures += 1
        if self._auth_failures >= self._settings.cloud_auth_failure_threshold and not self._disabled:
            self._disabled = True
            logger.error(
                f"Cloud storage disabled after {self._auth_failures} consecutive "
                f"authentication failures ({_error_code(exc)})"
            )
        return True

    def new_key(self, owner_id: str, filename: Optional[str], content_type: Optional[str] = None,
                index: Optional[int] = None) -> str:
        ext = extension_for(filename, content_type)
        stamp = int(time.time() * 1000)
        middle = f"{stamp}-{index}" if index is not None else str(stamp)
        return f"{owner_id}/{middle}-{secrets.token_hex(4)}.{ext}"

    # ── Inline ────────────────────────────────────────────────

    def put_inline(self, track: "Track", data: bytes, mime_type: str) -> None:
        limit = self._settings.max_inline_payload_bytes
        if len(data) > limit:
            raise PayloadTooLarge(len(data), limit)
        track.file_data = encode_data_uri(data, mime_type)
        track.file_key = None
        track.mime_type = mime_type

    def attach_cloud_key(self, track: "Track", file_key: str) -> None:
        if not file_key or not file_key.strip():
            raise ValidationFailed("fileKey required")
        track.file_key = file_key.strip()
        track.file_data = None
        track.mime_type = mime_for_key(track.file_key)

    # ── Upload ────────────────────────────────────────────────

    def put_cloud(self, owner_id: str, filename: str, content_type: Optional[str] = None,
                  index: Optional[int] = None) -> PresignedUpload:
        """Presign a direct client → bucket PUT."""
        client = self._require_client()
        key = self.new_key(owner_id, filename, content_type, index=index)
        expires_in = self._settings.presign_expires_seconds
        try:
            url = client.generate_presigned_url(
                "put_object",
                Params={
                    "Bucket": self._bucket,
                    "Key": key,
                    "ContentType": content_type or mime_for_key(key),
                },
                ExpiresIn=expires_in,
            )
        except (ClientError, BotoCoreError) as exc:
            self._record_failure(exc)
            logger.error(f"Presign failed for {key}: {exc}")
            raise StorageUnavailable("Could not create upload URL") from exc
        return PresignedUpload(upload_url=url, file_key=key, expires_in=expires_in, bucket=self._bucket)

    def proxy_put(self, owner_id: str, filename: Optional[str], content_type: str, data: bytes) -> str:
        """Server-mediated upload for clients that cannot PUT to the bucket directly."""
        client = self._require_client()
        limit = self._settings.max_proxy_upload_bytes
        if len(data) > limit:
            raise PayloadTooLarge(len(data), limit)

        key = self.new_key(owner_id, filename, content_type)
        try:
            client.put_object(Bucket=self._bucket, Key=key, Body=data, ContentType=content_type)
        except (ClientError, BotoCoreError) as exc:
            self._record_failure(exc)
            logger.error(f"Proxy upload failed for {key}: {exc}")
            raise StorageUnavailable("Upload to cloud storage failed") from exc

        self._record_success()
        logger.info(f"Proxy upload complete: {key} ({len(data)} bytes)")
        return key

    # ── Read ──────────────────────────────────────────────────

    def _read_object(self, key: str) -> bytes:
        client = self._require_client()
        try:
            response = client.get_object(Bucket=self._bucket, Key=key)
            body = response["Body"]
            try:
                data = body.read()
            finally:
                body.close()
        except (ClientError, BotoCoreError) as exc:
            self._record_failure(exc)
            raise ObjectUnreadable(key, _error_code(exc)) from exc
        self._record_success()
        return data

    def get_bytes(self, pointer: StoragePointer) -> bytes:
        """Fully buffer a track's audio, preferring the cloud copy.

        Tracks migrated to the bucket may still carry a stale inline payload;
        it is used when the cloud read fails.
        """
        if pointer.file_key:
            if self.cloud_available:
                try:
                    return self._read_object(pointer.file_key)
                except ObjectUnreadable:
                    if not pointer.file_data:
                        raise
                    logger.warning(f"Cloud read failed for {pointer.file_key}, using inline copy")
            elif not pointer.file_data:
                raise StorageUnavailable()

        if pointer.file_data:
            return decode_data_uri(pointer.file_data)[1]

        raise ObjectUnreadable(pointer.file_key or "", "no audio stored")

    def get_stream(self, key: str, range_header: Optional[str] = None,
                   chunk_size: int = STREAM_CHUNK_SIZE) -> CloudStream:
        client = self._require_client()
        params = {"Bucket": self._bucket, "Key": key}
        if range_header:
            params["Range"] = range_header
        try:
            response = client.get_object(**params)
        except (ClientError, BotoCoreError) as exc:
            self._record_failure(exc)
            if _error_code(exc) == "InvalidRange":
                raise RangeNotSatisfiable(None) from exc
            logger.error(f"Cloud stream failed for {key}: {_error_code(exc)}")
            raise ObjectUnreadable(key, _error_code(exc)) from exc

        self._record_success()
        content_range = response.get("ContentRange")
        return CloudStream(
            body=_iter_body(response["Body"], chunk_size),
            content_type=response.get("ContentType") or mime_for_key(key),
            content_length=response.get("ContentLength"),
            content_range=content_range,
            status_code=206 if content_range else 200,
        )

    def signed_read_url(self, key: str, expires_in: Optional[int] = None) -> str:
        client = self._require_client()
        expires_in = expires_in or self._settings.presign_expires_seconds
        try:
            return client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self._bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except (ClientError, BotoCoreError) as exc:
            self._record_failure(exc)
            raise ObjectUnreadable(key, _error_code(exc)) from exc

    def probe_object(self, key: str) -> Optional[str]:
        """Read the first bytes of an object; returns None if readable, else why not.

        A HEAD request is not enough: the bucket can report metadata for a
        truncated or inaccessible body. Credential faults raise
        StorageUnavailable instead of marking the object unreadable.
        """
        client = self._require_client()
        size = self._settings.probe_bytes
        try:
            response = client.get_object(Bucket=self._bucket, Key=key, Range=f"bytes=0-{size - 1}")
            body = response["Body"]
            try:
                data = body.read(size)
            finally:
                body.close()
        except (ClientError, BotoCoreError) as exc:
            if self._record_failure(exc):
                raise StorageUnavailable("Cloud storage rejected our credentials") from exc
            code = _error_code(exc)
            logger.info(f"Probe failed for {key}: {code}")
            return code or "unreadable"

        self._record_success()
        return None if data else "empty"

    def probe_readable(self, key: str) -> bool:
        return self.probe_object(key) is None
