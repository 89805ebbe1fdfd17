import json
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from reelsmith.services.publisher_adapter import (
    FacebookPublisher,
    InstagramPublisher,
    YouTubePublisher,
    _sanitize,
    classify_publish_error,
    get_publisher,
    register_publisher,
)
from reelsmith.services.seo import PlatformMetadata
from reelsmith.timeutils import utcnow

METADATA = PlatformMetadata(title="The lighthouse", description="Wait for the ending...", tags=["horror"], category_id="24")


@pytest.fixture
def video_file(tmp_path):
    path = tmp_path / "video.mp4"
    path.write_bytes(b"mp4-bytes")
    return path


def fresh_creds(**extra):
    return {"access_token": "tok", "expires_at": (utcnow() + timedelta(hours=1)).isoformat(), **extra}


@pytest.mark.parametrize(
    "error, category",
    [
        ("Cooldown: last YOUTUBE post was 3 min ago", "cooldown"),
        ("Unsupported platform: TIKTOK", "unsupported"),
        ("YouTube upload failed: 401 Unauthorized", "reconnect_account"),
        ("Token refresh failed: invalid_grant", "reconnect_account"),
        ("quotaExceeded: uploadLimitExceeded", "rate_limited"),
        ("HTTP 503 service unavailable", "retry_later"),
        ("Video rejected: aspect ratio", "rejected"),
    ],
)
def test_error_classification(error, category):
    assert classify_publish_error(error) == category


def test_sanitize_strips_tokens():
    text = _sanitize("GET ?access_token=EAAB123abc failed, header Bearer ya29.secret")
    assert "EAAB123abc" not in text and "ya29.secret" not in text


def test_registry_is_case_insensitive():
    assert isinstance(get_publisher("youtube"), YouTubePublisher)
    assert get_publisher("tiktok") is None


@pytest.mark.anyio
async def test_youtube_resumable_upload(video_file):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.method, request.url.host))
        if request.method == "POST":
            assert request.headers["Authorization"] == "Bearer tok"
            assert json.loads(request.content)["snippet"]["categoryId"] == "24"
            return httpx.Response(200, headers={"location": "https://upload.example/session/1"})
        assert request.content == b"mp4-bytes"
        return httpx.Response(200, json={"id": "abc123"})

    result = await YouTubePublisher(transport=httpx.MockTransport(handler)).upload(fresh_creds(), video_file, METADATA)
    assert result.success
    assert result.post_id == "abc123"
    assert result.url == "https://youtube.com/shorts/abc123"
    assert calls == [("POST", "www.googleapis.com"), ("PUT", "upload.example")]


@pytest.mark.anyio
async def test_youtube_refreshes_on_401_and_retries_once(video_file):
    tokens = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "oauth2.googleapis.com":
            return httpx.Response(200, json={"access_token": "new-tok", "expires_in": 3600})
        if request.method == "POST":
            tokens.append(request.headers["Authorization"])
            if request.headers["Authorization"] == "Bearer tok":
                return httpx.Response(401, text="invalid credentials")
            return httpx.Response(200, headers={"location": "https://upload.example/s"})
        return httpx.Response(201, json={"id": "v2"})

    creds = fresh_creds(refresh_token="ref", client_id="cid", client_secret="sec")
    result = await YouTubePublisher(transport=httpx.MockTransport(handler)).upload(creds, video_file, METADATA)
    assert result.success
    assert tokens == ["Bearer tok", "Bearer new-tok"]
    assert result.credentials_update["access_token"] == "new-tok"
    assert "expires_at" in result.credentials_update


@pytest.mark.anyio
async def test_youtube_without_credentials_needs_reconnect(video_file):
    result = await YouTubePublisher().upload({}, video_file, METADATA)
    assert not result.success
    assert classify_publish_error(result.error) == "reconnect_account"


@pytest.mark.anyio
async def test_network_errors_are_returned_not_raised(video_file):
    def handler(request):
        raise httpx.ConnectError("connection refused")

    result = await YouTubePublisher(transport=httpx.MockTransport(handler)).upload(fresh_creds(), video_file, METADATA)
    assert not result.success
    assert result.retryable


@pytest.mark.anyio
async def test_missing_file_fails(tmp_path):
    result = await YouTubePublisher().upload(fresh_creds(), tmp_path / "nope.mp4", METADATA)
    assert not result.success and "not found" in result.error


@pytest.mark.anyio
async def test_instagram_container_flow(video_file):
    polls = iter(["IN_PROGRESS", "FINISHED"])

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/ig1/media"):
            body = json.loads(request.content)
            assert body["media_type"] == "REELS" and body["video_url"] == "https://cdn.example/v.mp4"
            return httpx.Response(200, json={"id": "container1"})
        if path.endswith("/container1"):
            return httpx.Response(200, json={"status_code": next(polls)})
        if path.endswith("/ig1/media_publish"):
            return httpx.Response(200, json={"id": "media9"})
        if path.endswith("/media9"):
            return httpx.Response(200, json={"permalink": "https://instagram.com/reel/xyz"})
        return httpx.Response(404)

    result = await InstagramPublisher(transport=httpx.MockTransport(handler)).upload(
        {"access_token": "tok", "platform_user_id": "ig1"}, video_file, METADATA, public_url="https://cdn.example/v.mp4"
    )
    assert result.success
    assert result.post_id == "media9"
    assert result.url == "https://instagram.com/reel/xyz"


@pytest.mark.anyio
async def test_instagram_requires_public_url(video_file):
    result = await InstagramPublisher().upload({"access_token": "t", "platform_user_id": "ig1"}, video_file, METADATA)
    assert not result.success and "public video URL" in result.error


@pytest.mark.anyio
async def test_facebook_reel_flow(video_file):
    phases = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "rupload.example":
            assert request.headers["Authorization"] == "OAuth tok"
            return httpx.Response(200, json={"success": True})
        body = json.loads(request.content)
        phases.append(body["upload_phase"])
        if body["upload_phase"] == "start":
            return httpx.Response(200, json={"video_id": "fb1", "upload_url": "https://rupload.example/fb1"})
        return httpx.Response(200, json={"success": True})

    publisher = FacebookPublisher(transport=httpx.MockTransport(handler))
    with patch.object(FacebookPublisher, "_fetch_permalink", AsyncMock(return_value=None)):
        result = await publisher.upload({"access_token": "tok", "page_id": "p1"}, video_file, METADATA)
    assert result.success
    assert phases == ["start", "finish"]
    assert result.url == "https://www.facebook.com/reel/fb1"


@pytest.mark.anyio
async def test_comment_failure_is_reported(video_file):
    transport = httpx.MockTransport(lambda request: httpx.Response(400, json={"error": {"message": "bad"}}))
    result = await InstagramPublisher(transport=transport).post_comment({"access_token": "t"}, "media9", "hi")
    assert not result.success and "bad" in result.error


def test_registered_adapter_is_looked_up_case_insensitively(monkeypatch):
    from reelsmith.services import publisher_adapter

    monkeypatch.setattr(publisher_adapter, "_ADAPTERS", dict(publisher_adapter._ADAPTERS))

    class ThreadsPublisher(YouTubePublisher):
        platform = "THREADS"

    adapter = ThreadsPublisher()
    register_publisher(adapter)

    assert get_publisher("threads") is adapter
    assert isinstance(get_publisher("youtube"), YouTubePublisher)
