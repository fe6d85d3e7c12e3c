import pytest

from replay.core.exceptions import RangeNotSatisfiable
from replay.core.storage import encode_data_uri
from replay.services.playback import ByteRange, parse_range

from conftest import OTHER_OWNER, auth, make_token

AUDIO = bytes(i % 256 for i in range(1000))


@pytest.fixture
def inline_track(add_track):
    return add_track(file_data=encode_data_uri(AUDIO, "audio/mpeg"), mime_type="audio/mpeg")


@pytest.fixture
def cloud_track(add_track, fake_s3):
    fake_s3.objects["user-1/1-abc.mp3"] = (AUDIO, "audio/mpeg")
    return add_track(file_key="user-1/1-abc.mp3", mime_type="audio/mpeg")


def test_parse_range_forms():
    assert parse_range(None, 1000) is None
    assert parse_range("items=0-1", 1000) is None
    assert parse_range("bytes=100-199", 1000) == ByteRange(100, 199)
    assert parse_range("bytes=900-", 1000) == ByteRange(900, 999)
    assert parse_range("bytes=-10", 1000) == ByteRange(990, 999)
    assert parse_range("bytes=990-5000", 1000) == ByteRange(990, 999)
    with pytest.raises(RangeNotSatisfiable):
        parse_range("bytes=1000-", 1000)
    with pytest.raises(RangeNotSatisfiable):
        parse_range("bytes=20-10", 1000)


def test_inline_range_request(client, inline_track):
    resp = client.get(
        f"/api/v1/tracks/{inline_track}/stream",
        headers={**auth(), "Range": "bytes=100-199"},
    )
    assert resp.status_code == 206
    assert resp.headers["content-range"] == "bytes 100-199/1000"
    assert resp.headers["accept-ranges"] == "bytes"
    assert resp.headers["content-type"] == "audio/mpeg"
    assert resp.content == AUDIO[100:200]


def test_inline_full_body(client, inline_track):
    resp = client.get(f"/api/v1/tracks/{inline_track}/stream", headers=auth())
    assert resp.status_code == 200
    assert resp.content == AUDIO
    assert resp.headers["accept-ranges"] == "bytes"


def test_unsatisfiable_range(client, inline_track):
    resp = client.get(
        f"/api/v1/tracks/{inline_track}/stream",
        headers={**auth(), "Range": "bytes=5000-"},
    )
    assert resp.status_code == 416
    assert resp.headers["content-range"] == "bytes */1000"
    assert resp.json()["code"] == "range_not_satisfiable"


def test_query_token_is_accepted(client, inline_track):
    resp = client.get(f"/api/v1/tracks/{inline_track}/stream?token={make_token()}")
    assert resp.status_code == 200


def test_credentials_and_ownership(client, inline_track):
    assert client.get(f"/api/v1/tracks/{inline_track}/stream").status_code == 401
    assert client.get(f"/api/v1/tracks/{inline_track}/stream?token=garbage").status_code == 401

    resp = client.get(f"/api/v1/tracks/{inline_track}/stream", headers=auth(OTHER_OWNER))
    assert resp.status_code == 404


def test_cloud_track_redirects_to_signed_url(client, cloud_track):
    resp = client.get(
        f"/api/v1/tracks/{cloud_track}/stream", headers=auth(), follow_redirects=False
    )
    assert resp.status_code == 302
    location = resp.headers["location"]
    assert location.startswith("https://test-bucket.s3.example.com/user-1/1-abc.mp3")
    assert "op=get_object" in location


def test_proxy_stream_forwards_range(client, cloud_track, fake_s3):
    resp = client.get(
        f"/api/v1/tracks/{cloud_track}/proxy-stream",
        headers={**auth(), "Range": "bytes=100-199"},
    )
    assert resp.status_code == 206
    assert resp.headers["content-range"] == "bytes 100-199/1000"
    assert resp.headers["content-length"] == "100"
    assert resp.content == AUDIO[100:200]
    assert fake_s3.calls[-1][1]["Range"] == "bytes=100-199"


def test_proxy_stream_missing_object_is_generic_500(client, add_track):
    track_id = add_track(file_key="user-1/gone.mp3")
    resp = client.get(f"/api/v1/tracks/{track_id}/proxy-stream", headers=auth())
    assert resp.status_code == 500
    body = resp.json()
    assert body["code"] == "object_unreadable"
    assert "gone.mp3" not in body["error"]


def test_proxy_stream_falls_back_to_inline_copy(client, add_track):
    track_id = add_track(
        file_key="user-1/gone.mp3", file_data=encode_data_uri(b"legacy", "audio/mpeg")
    )
    resp = client.get(f"/api/v1/tracks/{track_id}/proxy-stream", headers=auth())
    assert resp.status_code == 200
    assert resp.content == b"legacy"


def test_stream_url(client, cloud_track, inline_track):
    resp = client.get(f"/api/v1/tracks/{cloud_track}/stream-url", headers=auth())
    data = resp.json()["data"]
    assert data["source"] == "cloud"
    assert data["expires_in"] == 3600
    assert "user-1/1-abc.mp3" in data["url"]

    token = make_token()
    resp = client.get(f"/api/v1/tracks/{inline_track}/stream-url?token={token}")
    data = resp.json()["data"]
    assert data["source"] == "inline"
    assert data["url"] == f"/api/v1/tracks/{inline_track}/stream?token={token}"


def test_track_without_audio(client, add_track):
    track_id = add_track()
    resp = client.get(f"/api/v1/tracks/{track_id}/stream", headers=auth())
    assert resp.status_code == 404
