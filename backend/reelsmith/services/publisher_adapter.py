"""
Unified publishing layer for destination platforms.

Each platform adapter implements the `PublisherAdapter` interface:
    upload(credentials, file_path, metadata) -> PublishResult
    post_comment(credentials, post_id, text) -> CommentResult

Adapters never raise to callers: results (including errors) are always
returned explicitly, with secrets stripped from error text.
"""
from __future__ import annotations

import abc
import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

import httpx

from reelsmith.services.seo import PlatformMetadata
from reelsmith.settings import get_settings
from reelsmith.timeutils import parse_iso, utcnow

logger = logging.getLogger(__name__)

GRAPH_API = "https://graph.facebook.com/v21.0"


# ── Error classification ─────────────────────────────────────

RETRYABLE_INDICATORS = (
    "timeout", "timed out", "429", "too many requests",
    "500", "502", "503", "504", "connection", "reset by peer",
    "temporary", "temporarily", "service unavailable", "rate limit",
    "network", "ssl", "eof", "broken pipe", "processing timed out",
)

_RECONNECT_INDICATORS = (
    "401", "invalid credentials", "invalid authentication", "token has been expired",
    "expired or revoked", "invalid_grant", "oauth", "credentials missing",
    "no connected account", "session has expired", "error validating access token",
)
_RATE_LIMIT_INDICATORS = ("429", "too many requests", "rate limit", "quota", "uploadlimitexceeded")

CATEGORY_RECONNECT = "reconnect_account"
CATEGORY_RATE_LIMITED = "rate_limited"
CATEGORY_COOLDOWN = "cooldown"
CATEGORY_RETRY_LATER = "retry_later"
CATEGORY_REJECTED = "rejected"
CATEGORY_UNSUPPORTED = "unsupported"


def _is_retryable_error(error: str | None) -> bool:
    if not error:
        return False
    lower = error.lower()
    return any(ind in lower for ind in RETRYABLE_INDICATORS)


def classify_publish_error(error: str | None) -> str:
    """Map a publish error message onto an actionable category."""
    lower = (error or "").lower()
    if lower.startswith("cooldown"):
        return CATEGORY_COOLDOWN
    if lower.startswith("unsupported platform"):
        return CATEGORY_UNSUPPORTED
    if any(ind in lower for ind in _RECONNECT_INDICATORS):
        return CATEGORY_RECONNECT
    if any(ind in lower for ind in _RATE_LIMIT_INDICATORS):
        return CATEGORY_RATE_LIMITED
    if _is_retryable_error(lower):
        return CATEGORY_RETRY_LATER
    return CATEGORY_REJECTED


# ── Credential sanitization ──────────────────────────────────

_SENSITIVE_PATTERNS = [
    (re.compile(r"Bearer\s+[A-Za-z0-9\-_\.]+", re.IGNORECASE), "Bearer ***"),
    (re.compile(r"OAuth\s+[A-Za-z0-9\-_\.]+"), "OAuth ***"),
    (re.compile(r"access_token=[A-Za-z0-9\-_\.%]+", re.IGNORECASE), "access_token=***"),
    (re.compile(r"refresh_token=[A-Za-z0-9\-_\.%]+", re.IGNORECASE), "refresh_token=***"),
    (re.compile(r"client_secret=[A-Za-z0-9\-_\.%]+", re.IGNORECASE), "client_secret=***"),
    (re.compile(r"/bot\d+:[A-Za-z0-9\-_]+"), "/bot***"),
    # Generic long opaque tokens
    (re.compile(r"[A-Za-z0-9\-_]{40,}"), "***TOKEN***"),
]


def _sanitize(text: str | None) -> str | None:
    """Strip credentials and tokens from error messages / response text."""
    if not text:
        return text
    for pattern, replacement in _SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def _graph_error(resp: httpx.Response, fallback: str) -> str:
    try:
        body = resp.json()
    except ValueError:
        return f"{fallback}: HTTP {resp.status_code} {resp.text[:300]}"
    err = body.get("error") if isinstance(body, dict) else None
    message = err.get("message") if isinstance(err, dict) else None
    return f"{fallback}: HTTP {resp.status_code} {message or str(body)[:300]}"


# ── Results ──────────────────────────────────────────────────

@dataclass
class PublishResult:
    """Unified result of a publish attempt."""
    success: bool
    platform: str | None = None
    post_id: str | None = None
    url: str | None = None
    error: str | None = None
    retryable: bool = False
    # Refreshed credential fields the caller should persist on the account
    credentials_update: dict[str, Any] = field(default_factory=dict)


@dataclass
class CommentResult:
    success: bool
    comment_id: str | None = None
    error: str | None = None


# ── Abstract adapter ─────────────────────────────────────────

class PublisherAdapter(abc.ABC):
    """Base class for platform-specific publishers."""

    platform: str = "UNKNOWN"

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    @abc.abstractmethod
    async def _upload(self, credentials: dict, file_path: Path, metadata: PlatformMetadata, public_url: str | None) -> PublishResult:
        ...

    @abc.abstractmethod
    async def _comment(self, credentials: dict, post_id: str, text: str) -> CommentResult:
        ...

    async def upload(
        self,
        credentials: dict,
        file_path: Path,
        metadata: PlatformMetadata,
        *,
        public_url: str | None = None,
    ) -> PublishResult:
        """Upload and publish one video. Never raises."""
        try:
            if not Path(file_path).is_file():
                return self._fail(f"Video file not found: {file_path}")
            return await self._upload(credentials, Path(file_path), metadata, public_url)
        except Exception as exc:
            return self._fail(f"{self.platform} publish error: {exc}", retryable=None)

    async def post_comment(self, credentials: dict, post_id: str, text: str) -> CommentResult:
        try:
            return await self._comment(credentials, post_id, text)
        except Exception as exc:
            msg = _sanitize(f"{self.platform} comment error: {exc}")
            logger.warning(f"[{self.platform}] {msg}")
            return CommentResult(success=False, error=msg)

    def _fail(self, msg: str, *, retryable: bool | None = False, **extra: Any) -> PublishResult:
        msg = _sanitize(msg)
        logger.error(f"[{self.platform}] {msg}")
        return PublishResult(
            success=False,
            platform=self.platform,
            error=msg,
            retryable=_is_retryable_error(msg) if retryable is None else retryable,
            **extra,
        )

    def _log(self, msg: str) -> None:
        logger.info(f"[{self.platform}] {msg}")


# ── YouTube Shorts ────────────────────────────────────────────

class YouTubePublisher(PublisherAdapter):
    """Upload via YouTube Data API v3 resumable upload.

    credentials: access_token, refresh_token, expires_at (ISO). The OAuth
    client comes from the credentials or YOUTUBE_CLIENT_ID / _SECRET.
    """

    platform = "YOUTUBE"

    UPLOAD_URL = "https://www.googleapis.com/upload/youtube/v3/videos"
    TOKEN_URL = "https://oauth2.googleapis.com/token"
    COMMENT_URL = "https://www.googleapis.com/youtube/v3/commentThreads"
    REFRESH_MARGIN = timedelta(minutes=5)

    def _client_creds(self, creds: dict) -> tuple[str | None, str | None]:
        settings = get_settings()
        return (
            creds.get("client_id") or settings.youtube_client_id,
            creds.get("client_secret") or settings.youtube_client_secret,
        )

    async def _refresh_access_token(self, creds: dict) -> dict[str, Any]:
        client_id, client_secret = self._client_creds(creds)
        if not creds.get("refresh_token") or not client_id or not client_secret:
            raise RuntimeError("YouTube OAuth credentials missing (refresh_token / client)")
        async with self._client(15) as client:
            resp = await client.post(
                self.TOKEN_URL,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": creds["refresh_token"],
                    "client_id": client_id,
                    "client_secret": client_secret,
                },
            )
        if resp.status_code != 200:
            raise RuntimeError(_sanitize(f"Token refresh HTTP {resp.status_code}: {resp.text[:300]}"))
        data = resp.json()
        update = {"access_token": data["access_token"]}
        if data.get("expires_in"):
            update["expires_at"] = (utcnow() + timedelta(seconds=int(data["expires_in"]))).isoformat()
        self._log("Access token refreshed")
        return update

    def _needs_refresh(self, creds: dict) -> bool:
        if not creds.get("access_token"):
            return True
        expires_at = parse_iso(creds.get("expires_at"))
        return expires_at is not None and expires_at - utcnow() < self.REFRESH_MARGIN

    async def _upload_once(self, access_token: str, file_path: Path, metadata: PlatformMetadata) -> httpx.Response:
        body = {
            "snippet": {
                "title": metadata.title[:100],
                "description": metadata.description[:5000],
                "tags": metadata.tags[:30],
                "categoryId": metadata.category_id or "22",
            },
            "status": {"privacyStatus": "public", "selfDeclaredMadeForKids": False},
        }
        size = file_path.stat().st_size
        async with self._client(300) as client:
            init_resp = await client.post(
                self.UPLOAD_URL,
                params={"uploadType": "resumable", "part": "snippet,status"},
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Content-Type": "application/json; charset=UTF-8",
                    "X-Upload-Content-Type": "video/mp4",
                    "X-Upload-Content-Length": str(size),
                },
                content=json.dumps(body),
            )
            if init_resp.status_code not in (200, 308) or not init_resp.headers.get("location"):
                return init_resp
            self._log(f"Uploading {file_path.name} ({size} bytes)")
            return await client.put(
                init_resp.headers["location"],
                headers={"Content-Type": "video/mp4"},
                content=file_path.read_bytes(),
            )

    async def _upload(self, credentials, file_path, metadata, public_url) -> PublishResult:
        creds = dict(credentials)
        update: dict[str, Any] = {}
        if not creds.get("access_token") and not creds.get("refresh_token"):
            return self._fail("YouTube OAuth credentials missing (access_token / refresh_token)")

        if self._needs_refresh(creds):
            try:
                update = await self._refresh_access_token(creds)
            except Exception as exc:
                return self._fail(f"Token refresh failed: {exc}", retryable=None)
            creds.update(update)

        resp = await self._upload_once(creds["access_token"], file_path, metadata)
        if resp.status_code == 401 and creds.get("refresh_token"):
            self._log("Auth rejected on upload, refreshing token and retrying once")
            try:
                update = await self._refresh_access_token(creds)
            except Exception as exc:
                return self._fail(f"Token refresh failed: {exc}", retryable=None)
            creds.update(update)
            resp = await self._upload_once(creds["access_token"], file_path, metadata)

        if resp.status_code not in (200, 201):
            return self._fail(
                f"YouTube upload failed: {resp.status_code} {resp.text[:500]}",
                retryable=None,
                credentials_update=update,
            )
        video_id = resp.json().get("id")
        if not video_id:
            return self._fail("YouTube upload returned no video id", credentials_update=update)
        url = f"https://youtube.com/shorts/{video_id}"
        self._log(f"Published: {url}")
        return PublishResult(success=True, platform=self.platform, post_id=video_id, url=url, credentials_update=update)

    async def _comment(self, credentials, post_id, text) -> CommentResult:
        async with self._client(30) as client:
            resp = await client.post(
                self.COMMENT_URL,
                params={"part": "snippet"},
                headers={"Authorization": f"Bearer {credentials.get('access_token')}"},
                json={"snippet": {"videoId": post_id, "topLevelComment": {"snippet": {"textOriginal": text}}}},
            )
        if resp.status_code not in (200, 201):
            return CommentResult(success=False, error=_sanitize(f"HTTP {resp.status_code}: {resp.text[:300]}"))
        return CommentResult(success=True, comment_id=resp.json().get("id"))


# ── Instagram Reels (Graph API) ──────────────────────────────

class InstagramPublisher(PublisherAdapter):
    """Reels via the Instagram Graph API: container -> poll -> media_publish.

    Instagram pulls the file itself, so a public URL for the video is required.
    """

    platform = "INSTAGRAM"

    async def _poll_container(self, client: httpx.AsyncClient, container_id: str, token: str) -> str:
        settings = get_settings()
        for _ in range(settings.instagram_poll_attempts):
            await asyncio.sleep(settings.instagram_poll_interval_sec)
            resp = await client.get(
                f"{GRAPH_API}/{container_id}",
                params={"fields": "status_code", "access_token": token},
            )
            status_code = resp.json().get("status_code") if resp.status_code == 200 else None
            if status_code in ("FINISHED", "ERROR", "EXPIRED"):
                return status_code
        return "TIMEOUT"

    async def _upload(self, credentials, file_path, metadata, public_url) -> PublishResult:
        token = credentials.get("access_token")
        ig_user_id = credentials.get("ig_user_id") or credentials.get("platform_user_id")
        if not token or not ig_user_id:
            return self._fail("Instagram credentials missing (access_token / ig user id)")
        if not public_url:
            return self._fail("Instagram requires a public video URL")

        async with self._client(120) as client:
            create = await client.post(
                f"{GRAPH_API}/{ig_user_id}/media",
                json={"media_type": "REELS", "video_url": public_url, "caption": metadata.description, "access_token": token},
            )
            if create.status_code != 200:
                return self._fail(_graph_error(create, "Failed to create media container"), retryable=None)
            container_id = create.json().get("id")
            self._log(f"Container {container_id} created, waiting for processing")

            status_code = await self._poll_container(client, container_id, token)
            if status_code != "FINISHED":
                return self._fail(f"Media container processing {status_code.lower()}", retryable=status_code == "TIMEOUT")

            publish = await client.post(
                f"{GRAPH_API}/{ig_user_id}/media_publish",
                json={"creation_id": container_id, "access_token": token},
            )
            if publish.status_code != 200:
                return self._fail(_graph_error(publish, "Failed to publish reel"), retryable=None)
            media_id = publish.json().get("id")

            url = None
            link = await client.get(f"{GRAPH_API}/{media_id}", params={"fields": "permalink", "access_token": token})
            if link.status_code == 200:
                url = link.json().get("permalink")

        self._log(f"Published: {media_id} {url or ''}")
        return PublishResult(success=True, platform=self.platform, post_id=media_id, url=url)

    async def _comment(self, credentials, post_id, text) -> CommentResult:
        async with self._client(30) as client:
            resp = await client.post(
                f"{GRAPH_API}/{post_id}/comments",
                json={"message": text, "access_token": credentials.get("access_token")},
            )
        if resp.status_code != 200:
            return CommentResult(success=False, error=_sanitize(_graph_error(resp, "Comment failed")))
        return CommentResult(success=True, comment_id=resp.json().get("id"))


# ── Facebook Reels (Pages API) ───────────────────────────────

class FacebookPublisher(PublisherAdapter):
    """Reels via /{page-id}/video_reels: start -> binary upload -> finish -> permalink."""

    platform = "FACEBOOK"
    PERMALINK_ATTEMPTS = 3

    async def _fetch_permalink(self, client: httpx.AsyncClient, video_id: str, token: str) -> str | None:
        for attempt in range(self.PERMALINK_ATTEMPTS):
            await asyncio.sleep(3 if attempt == 0 else 5)
            try:
                resp = await client.get(f"{GRAPH_API}/{video_id}", params={"fields": "permalink_url", "access_token": token})
            except httpx.HTTPError:
                continue
            if resp.status_code != 200:
                continue
            permalink = resp.json().get("permalink_url")
            if permalink:
                return permalink if permalink.startswith("http") else f"https://www.facebook.com{permalink}"
        return None

    async def _upload(self, credentials, file_path, metadata, public_url) -> PublishResult:
        token = credentials.get("access_token")
        page_id = credentials.get("page_id") or credentials.get("platform_user_id")
        if not token or not page_id:
            return self._fail("Facebook credentials missing (page access token / page id)")

        async with self._client(300) as client:
            start = await client.post(
                f"{GRAPH_API}/{page_id}/video_reels",
                json={"upload_phase": "start", "access_token": token},
            )
            if start.status_code != 200:
                return self._fail(_graph_error(start, "Failed to start upload"), retryable=None)
            started = start.json()
            video_id, upload_url = started.get("video_id"), started.get("upload_url")

            content = file_path.read_bytes()
            self._log(f"Uploading {file_path.name} ({len(content)} bytes)")
            upload = await client.post(
                upload_url,
                headers={
                    "Authorization": f"OAuth {token}",
                    "offset": "0",
                    "file_size": str(len(content)),
                    "Content-Type": "application/octet-stream",
                },
                content=content,
            )
            if upload.status_code != 200:
                return self._fail(f"Upload failed: HTTP {upload.status_code} {upload.text[:300]}", retryable=None)

            finish = await client.post(
                f"{GRAPH_API}/{page_id}/video_reels",
                json={
                    "upload_phase": "finish",
                    "video_id": video_id,
                    "video_state": "PUBLISHED",
                    "description": metadata.description,
                    "access_token": token,
                },
            )
            if finish.status_code != 200:
                return self._fail(_graph_error(finish, "Failed to finish upload"), retryable=None)
            final_id = finish.json().get("video_id") or video_id
            url = await self._fetch_permalink(client, final_id, token)

        url = url or f"https://www.facebook.com/reel/{final_id}"
        self._log(f"Published: {url}")
        return PublishResult(success=True, platform=self.platform, post_id=final_id, url=url)

    async def _comment(self, credentials, post_id, text) -> CommentResult:
        async with self._client(30) as client:
            resp = await client.post(
                f"{GRAPH_API}/{post_id}/comments",
                json={"message": text, "access_token": credentials.get("access_token")},
            )
        if resp.status_code != 200:
            return CommentResult(success=False, error=_sanitize(_graph_error(resp, "Comment failed")))
        return CommentResult(success=True, comment_id=resp.json().get("id"))


# ── Registry ──────────────────────────────────────────────────

_ADAPTERS: dict[str, PublisherAdapter] = {
    "YOUTUBE": YouTubePublisher(),
    "INSTAGRAM": InstagramPublisher(),
    "FACEBOOK": FacebookPublisher(),
}


def get_publisher(platform: str) -> PublisherAdapter | None:
    """Get publisher adapter for a given platform (case-insensitive)."""
    return _ADAPTERS.get(platform.upper())


def register_publisher(adapter: PublisherAdapter) -> None:
    _ADAPTERS[adapter.platform.upper()] = adapter
