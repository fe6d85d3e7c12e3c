from .track import Track, TranscriptionStatus

__all__ = ["Track", "TranscriptionStatus"]
