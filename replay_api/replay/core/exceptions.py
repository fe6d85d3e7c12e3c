from typing import Any, Optional


class ReplayError(Exception):
    code = "error"

    def __init__(
        self,
        message: str,
        status_code: int = 400,
        extra: Optional[dict[str, Any]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.extra = extra or {}
        super().__init__(self.message)


class Unauthorized(ReplayError):
    code = "unauthorized"

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message, status_code=401)


class Forbidden(ReplayError):
    code = "forbidden"

    def __init__(self, message: str = "Not allowed"):
        super().__init__(message, status_code=403)


class NotFound(ReplayError):
    code = "not_found"

    def __init__(self, message: str = "Not found"):
        super().__init__(message, status_code=404)


class TrackNotFound(NotFound):
    def __init__(self, track_id: str):
        super().__init__(f"Track not found: {track_id}")


class SessionNotFound(NotFound):
    code = "session_not_found"

    def __init__(self, session_id: str):
        super().__init__(f"Upload session not found or expired: {session_id}")


class ValidationFailed(ReplayError):
    code = "invalid_request"

    def __init__(self, message: str):
        super().__init__(message, status_code=400)


class StorageUnavailable(ReplayError):
    """Cloud storage is not configured or was disabled; callers fall back to inline."""

    code = "storage_unavailable"

    def __init__(self, message: str = "Cloud storage not configured"):
        super().__init__(message, status_code=503, extra={"fallback": "inline"})


class ObjectUnreadable(ReplayError):
    """A cloud object is missing or could not be read."""

    code = "object_unreadable"

    def __init__(self, key: str, reason: str = ""):
        self.key = key
        self.reason = reason
        super().__init__("Audio could not be read from storage", status_code=500)


class IncompleteUpload(ReplayError):
    code = "incomplete_upload"

    def __init__(self, missing_index: int, received: int, total: int):
        self.missing_index = missing_index
        super().__init__(
            f"Missing chunk {missing_index}: received {received}/{total}",
            status_code=400,
            extra={"missing_index": missing_index, "received": received, "total": total},
        )


class PayloadTooLarge(ReplayError):
    code = "payload_too_large"

    def __init__(self, size: int, limit: int):
        super().__init__(
            f"Payload too large: {size} bytes (limit {limit})", status_code=413
        )


class RangeNotSatisfiable(ReplayError):
    code = "range_not_satisfiable"

    def __init__(self, size: Optional[int]):
        self.size = size
        super().__init__("Requested range not satisfiable", status_code=416)


class TranscriptionUnavailable(ReplayError):
    code = "transcription_unavailable"

    def __init__(self, message: str = "Transcription is not configured"):
        super().__init__(message, status_code=503)


class TranscriptionFailed(ReplayError):
    code = "transcription_failed"

    def __init__(self, message: str = "Transcription failed"):
        super().__init__(message, status_code=500)


class InvalidTransition(ReplayError):
    code = "invalid_transition"

    def __init__(self, current: str, target: str):
        super().__init__(
            f"Cannot move transcription from {current} to {target}", status_code=409
        )
