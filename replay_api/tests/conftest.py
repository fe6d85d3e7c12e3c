import asyncio
import os
import re
from pathlib import Path
from typing import Iterator, Optional

os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("OPENAI_API_KEY", "")

import pytest
from botocore.exceptions import ClientError
from fastapi.testclient import TestClient

from replay.config import Settings
from replay.core.auth import create_access_token
from replay.core.storage import StorageService
from replay.database import create_engine, create_session_factory, init_models
from replay.main import create_app
from replay.models.track import Track, TranscriptionStatus
from replay.services.speech_to_text import TranscriptResult

TEST_SECRET = "test-secret"
OWNER = "user-1"
OTHER_OWNER = "user-2"

_RANGE_RE = re.compile(r"bytes=(\d*)-(\d*)")


def _client_error(code: str, operation: str = "GetObject", status: int = 400) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


class FakeBody:
    """Mimics botocore's StreamingBody closely enough for the storage layer."""

    def __init__(self, data: bytes):
        self._data = data
        self._pos = 0
        self.closed = False

    def read(self, amt: Optional[int] = None) -> bytes:
        end = len(self._data) if amt is None else self._pos + amt
        chunk = self._data[self._pos:end]
        self._pos += len(chunk)
        return chunk

    def iter_chunks(self, chunk_size: int = 1024) -> Iterator[bytes]:
        while True:
            chunk = self.read(chunk_size)
            if not chunk:
                return
            yield chunk

    def close(self) -> None:
        self.closed = True


class FakeS3Client:
    """In-memory stand-in for a boto3 S3 client."""

    def __init__(self):
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.failing_keys: set[str] = set()
        self.auth_error: Optional[str] = None
        # Without s3:ListBucket, S3 answers 403 AccessDenied for absent keys.
        self.list_denied = False
        self.calls: list[tuple[str, dict]] = []
        self.bodies: list[FakeBody] = []

    def _check_auth(self, operation: str) -> None:
        if self.auth_error:
            raise _client_error(self.auth_error, operation, status=403)

    def put_object(self, Bucket, Key, Body, ContentType=None):
        self.calls.append(("put_object", {"Bucket": Bucket, "Key": Key, "ContentType": ContentType}))
        self._check_auth("PutObject")
        self.objects[Key] = (bytes(Body), ContentType or "application/octet-stream")
        return {"ETag": '"fake"'}

    def get_object(self, Bucket, Key, Range=None):
        self.calls.append(("get_object", {"Bucket": Bucket, "Key": Key, "Range": Range}))
        self._check_auth("GetObject")
        if Key in self.failing_keys:
            raise _client_error("InternalError", status=500)
        if Key not in self.objects:
            if self.list_denied:
                raise _client_error("AccessDenied", status=403)
            raise _client_error("NoSuchKey", status=404)

        data, content_type = self.objects[Key]
        response = {"ContentType": content_type}
        if Range:
            match = _RANGE_RE.match(Range)
            start = int(match.group(1) or 0)
            end = int(match.group(2)) if match.group(2) else len(data) - 1
            end = min(end, len(data) - 1)
            if start >= len(data):
                raise _client_error("InvalidRange", status=416)
            response["ContentRange"] = f"bytes {start}-{end}/{len(data)}"
            data = data[start:end + 1]
        response["ContentLength"] = len(data)
        body = FakeBody(data)
        self.bodies.append(body)
        response["Body"] = body
        return response

    def generate_presigned_url(self, ClientMethod, Params, ExpiresIn):
        self.calls.append(("generate_presigned_url", {"method": ClientMethod, **Params}))
        return f"https://test-bucket.s3.example.com/{Params['Key']}?X-Amz-Expires={ExpiresIn}&op={ClientMethod}"


class FakeSpeechToText:
    def __init__(self, text: str = "la la la", fail_with: Optional[Exception] = None):
        self.text = text
        self.fail_with = fail_with
        self.calls: list[tuple[bytes, str]] = []

    async def transcribe(self, audio: bytes, mime_type: str) -> TranscriptResult:
        self.calls.append((audio, mime_type))
        if self.fail_with is not None:
            raise self.fail_with
        return TranscriptResult(
            text=self.text,
            segments=[{"id": 0, "start": 0.0, "end": 1.5, "text": self.text}],
            words=[{"word": w, "start": float(i), "end": float(i) + 0.5} for i, w in enumerate(self.text.split())],
            language="en",
        )


class RecordingDispatcher:
    """Records dispatches instead of running them."""

    def __init__(self, available: bool = True):
        self.available = available
        self.fail_with: Optional[Exception] = None
        self.dispatched: list[tuple[str, bool]] = []
        self.batches: list[list[str]] = []

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    def dispatch(self, track_id: str, force: bool = False) -> bool:
        if not self.available:
            return False
        if self.fail_with is not None:
            raise self.fail_with
        self.dispatched.append((track_id, force))
        return True

    def dispatch_batch(self, track_ids: list[str]) -> int:
        if not self.available or not track_ids:
            return 0
        self.batches.append(list(track_ids))
        return len(track_ids)


def make_token(owner_id: str = OWNER) -> str:
    return create_access_token(owner_id, TEST_SECRET)


def auth(owner_id: str = OWNER) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(owner_id)}"}


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{(tmp_path / 'test.db').as_posix()}",
        jwt_secret=TEST_SECRET,
        s3_bucket="test-bucket",
        s3_access_key_id="test-key",
        s3_secret_access_key="test-secret-key",
        openai_api_key="",
        batch_transcription_delay_seconds=0,
        max_inline_payload_bytes=1024 * 1024,
        max_chunk_bytes=64 * 1024,
    )


@pytest.fixture
def fake_s3() -> FakeS3Client:
    return FakeS3Client()


@pytest.fixture
def storage(settings, fake_s3) -> StorageService:
    return StorageService(settings, client=fake_s3)


@pytest.fixture
def stt() -> FakeSpeechToText:
    return FakeSpeechToText()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def app(settings, storage, stt, dispatcher):
    return create_app(settings, storage=storage, speech_to_text=stt, dispatcher=dispatcher)


@pytest.fixture
def client(app) -> Iterator[TestClient]:
    with TestClient(app) as c:
        yield c


@pytest.fixture
def session_factory(settings):
    """Session factory on the test database, with tables created."""
    engine = create_engine(settings.database_url)
    asyncio.run(init_models(engine))
    yield create_session_factory(engine)
    asyncio.run(engine.dispose())


@pytest.fixture
def add_track(session_factory):
    """Insert a track row directly and return its id."""

    def _add(owner_id: str = OWNER, **fields) -> str:
        fields.setdefault("title", "Song")
        fields.setdefault("lyrics_status", TranscriptionStatus.PENDING.value)

        async def _insert() -> str:
            async with session_factory() as db:
                track = Track(user_id=owner_id, **fields)
                db.add(track)
                await db.commit()
                return track.id

        return asyncio.run(_insert())

    return _add


@pytest.fixture
def load_track(session_factory):
    def _load(track_id: str) -> Optional[Track]:
        async def _get():
            async with session_factory() as db:
                return await db.get(Track, track_id)

        return asyncio.run(_get())

    return _load
