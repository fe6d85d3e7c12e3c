import re

import pytest

from replay.core.exceptions import (
    ObjectUnreadable,
    PayloadTooLarge,
    RangeNotSatisfiable,
    StorageUnavailable,
    ValidationFailed,
)
from replay.core.storage import (
    StoragePointer,
    StorageService,
    decode_data_uri,
    encode_data_uri,
    mime_for_key,
)
from replay.models.track import Track


def test_data_uri_helpers():
    uri = encode_data_uri(b"\x00\x01audio", "audio/wav")
    assert uri.startswith("data:audio/wav;base64,")
    assert decode_data_uri(uri) == ("audio/wav", b"\x00\x01audio")
    assert decode_data_uri("QUJD") == ("audio/mpeg", b"ABC")
    with pytest.raises(ValidationFailed):
        decode_data_uri("data:audio/mpeg;base64,not base64!!")


def test_mime_for_key():
    assert mime_for_key("u/1-abc.flac") == "audio/flac"
    assert mime_for_key("u/1-abc.unknown") == "audio/mpeg"


def test_cloud_unavailable_without_bucket(settings):
    settings.s3_bucket = ""
    storage = StorageService(settings)
    assert not storage.cloud_available
    with pytest.raises(StorageUnavailable) as excinfo:
        storage.put_cloud("user-1", "song.mp3")
    assert excinfo.value.extra == {"fallback": "inline"}


def test_put_inline_clears_cloud_key(storage):
    track = Track(user_id="user-1", file_key="user-1/old.mp3")
    storage.put_inline(track, b"ABC", "audio/mpeg")
    assert track.file_key is None
    assert track.file_data == "data:audio/mpeg;base64,QUJD"
    assert track.storage == "inline"


def test_put_inline_enforces_ceiling(storage, settings):
    track = Track(user_id="user-1")
    with pytest.raises(PayloadTooLarge):
        storage.put_inline(track, b"x" * (settings.max_inline_payload_bytes + 1), "audio/mpeg")
    assert track.file_data is None


def test_attach_cloud_key_clears_inline(storage):
    track = Track(user_id="user-1", file_data="data:audio/mpeg;base64,QUJD")
    storage.attach_cloud_key(track, "user-1/123-abc.m4a")
    assert track.file_data is None
    assert track.file_key == "user-1/123-abc.m4a"
    assert track.mime_type == "audio/mp4"
    with pytest.raises(ValidationFailed):
        storage.attach_cloud_key(track, "  ")


def test_put_cloud_presigns_owner_scoped_key(storage, fake_s3):
    upload = storage.put_cloud("user-1", "My Song.FLAC", "audio/flac")
    assert re.fullmatch(r"user-1/\d+-[0-9a-f]{8}\.flac", upload.file_key)
    assert upload.expires_in == 3600
    assert upload.bucket == "test-bucket"
    assert "op=put_object" in upload.upload_url
    assert fake_s3.calls[-1][1]["ContentType"] == "audio/flac"


def test_proxy_put_stores_object(storage, fake_s3):
    key = storage.proxy_put("user-1", "take.wav", "audio/wav", b"RIFF....")
    assert fake_s3.objects[key] == (b"RIFF....", "audio/wav")
    assert key.endswith(".wav")


def test_get_bytes_prefers_cloud_then_falls_back_to_inline(storage, fake_s3):
    fake_s3.objects["user-1/a.mp3"] = (b"cloud", "audio/mpeg")
    both = StoragePointer(file_key="user-1/a.mp3", file_data=encode_data_uri(b"inline", "audio/mpeg"))
    assert storage.get_bytes(both) == b"cloud"

    stale = StoragePointer(file_key="user-1/missing.mp3", file_data=encode_data_uri(b"inline", "audio/mpeg"))
    assert storage.get_bytes(stale) == b"inline"

    with pytest.raises(ObjectUnreadable):
        storage.get_bytes(StoragePointer(file_key="user-1/missing.mp3"))


def test_get_stream_forwards_range_without_buffering(storage, fake_s3):
    fake_s3.objects["user-1/a.mp3"] = (bytes(range(200)), "audio/mpeg")
    stream = storage.get_stream("user-1/a.mp3", "bytes=10-19", chunk_size=4)

    assert stream.status_code == 206
    assert stream.content_range == "bytes 10-19/200"
    assert stream.content_length == 10
    chunks = list(stream.body)
    assert chunks == [bytes(range(10, 14)), bytes(range(14, 18)), bytes(range(18, 20))]
    assert fake_s3.bodies[-1].closed


def test_get_stream_errors(storage, fake_s3):
    fake_s3.objects["user-1/a.mp3"] = (b"abc", "audio/mpeg")
    with pytest.raises(RangeNotSatisfiable):
        storage.get_stream("user-1/a.mp3", "bytes=10-20")
    with pytest.raises(ObjectUnreadable):
        storage.get_stream("user-1/nope.mp3")


def test_probe_does_a_ranged_read(storage, fake_s3, settings):
    fake_s3.objects["user-1/ok.mp3"] = (b"x" * 5000, "audio/mpeg")
    fake_s3.objects["user-1/empty.mp3"] = (b"", "audio/mpeg")
    fake_s3.failing_keys.add("user-1/broken.mp3")
    fake_s3.objects["user-1/broken.mp3"] = (b"x", "audio/mpeg")

    assert storage.probe_readable("user-1/ok.mp3")
    assert fake_s3.calls[-1][1]["Range"] == f"bytes=0-{settings.probe_bytes - 1}"
    assert not storage.probe_readable("user-1/missing.mp3")
    assert not storage.probe_readable("user-1/empty.mp3")
    assert not storage.probe_readable("user-1/broken.mp3")


def test_access_denied_is_an_object_fault(storage, fake_s3, settings):
    fake_s3.list_denied = True
    for _ in range(settings.cloud_auth_failure_threshold + 1):
        assert storage.probe_object("user-1/missing.mp3") == "AccessDenied"
    assert storage.cloud_available


def test_repeated_auth_failures_disable_cloud(storage, fake_s3, settings):
    fake_s3.auth_error = "InvalidAccessKeyId"
    for _ in range(settings.cloud_auth_failure_threshold):
        with pytest.raises(StorageUnavailable):
            storage.probe_readable("user-1/a.mp3")

    assert not storage.cloud_available
    fake_s3.auth_error = None
    with pytest.raises(StorageUnavailable):
        storage.put_cloud("user-1", "song.mp3")
