"""
Operator alerts over Telegram.

Env: TELEGRAM_BOT_TOKEN, TELEGRAM_CHAT_ID. Alerts with the same key are sent
at most once per THROTTLE_SEC. Nothing here ever raises to the caller.
"""
from __future__ import annotations

import html
import logging
import time

import httpx

from reelsmith.settings import get_settings

logger = logging.getLogger(__name__)

THROTTLE_SEC = 15 * 60

_last_sent: dict[str, float] = {}


def _should_send(key: str) -> bool:
    now = time.monotonic()
    if now - _last_sent.get(key, float("-inf")) < THROTTLE_SEC:
        return False
    _last_sent[key] = now
    return True


async def send_telegram(text: str) -> bool:
    settings = get_settings()
    if not settings.telegram_bot_token or not settings.telegram_chat_id:
        logger.debug("[notify] Telegram not configured, skipping")
        return False
    url = f"https://api.telegram.org/bot{settings.telegram_bot_token}/sendMessage"
    try:
        async with httpx.AsyncClient(timeout=10) as client:
            r = await client.post(url, json={
                "chat_id": settings.telegram_chat_id,
                "text": text[:4000],
                "parse_mode": "HTML",
                "disable_web_page_preview": True,
            })
        if r.status_code == 200:
            return True
        logger.warning(f"[notify] Telegram API {r.status_code}: {r.text[:200]}")
    except httpx.HTTPError as e:
        logger.warning(f"[notify] Telegram send failed: {e}")
    return False


async def _alert(level: str, key: str, title: str, detail: str | None) -> bool:
    if not _should_send(f"{level}:{key}"):
        logger.debug(f"[notify] throttled {level}: {title}")
        return False
    icon = "🔴" if level == "error" else "🟡"
    body = f"{icon} <b>{html.escape(title)}</b>"
    if detail:
        body += f"\n<pre>{html.escape(detail[:500])}</pre>"
    return await send_telegram(body)


async def notify_video_failed(video_id: int, error: str) -> bool:
    return await _alert("error", f"video:{video_id}", f"Video #{video_id} generation failed", error)


async def notify_schedule_failed(automation_id: int, error: str) -> bool:
    return await _alert("error", f"automation:{automation_id}", f"Automation #{automation_id} fire failed", error)


async def notify_publish_failed(video_id: int, platform: str, error: str) -> bool:
    return await _alert(
        "warn", f"publish:{video_id}:{platform}", f"Video #{video_id} publish to {platform} failed", error
    )


async def notify_watchdog(count: int, summary: str) -> bool:
    return await _alert("warn", "watchdog", f"Watchdog: {count} stuck videos", summary)
