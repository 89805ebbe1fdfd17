"""
Per-platform publish entries stored in ``Video.posted_platforms``.

Each element is one of:
  - a bare platform name (older rows): an implicit, permanent success
  - an object ``{platform, success, postId?, url?, error?, category?,
    startedAt?, finishedAt?}`` where ``success`` is ``true``, ``false`` or
    ``"uploading"``

There is exactly one entry per platform; writes replace, never append.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable

from reelsmith.timeutils import parse_iso

UPLOADING = "uploading"


@dataclass
class PlatformEntry:
    platform: str
    success: bool | str
    post_id: str | None = None
    url: str | None = None
    error: str | None = None
    category: str | None = None
    started_at: str | None = None
    finished_at: str | None = None
    legacy: bool = False

    @property
    def is_success(self) -> bool:
        return self.success is True

    @property
    def is_uploading(self) -> bool:
        return self.success == UPLOADING

    @property
    def is_failed(self) -> bool:
        return self.success is False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"platform": self.platform, "success": self.success}
        for key, value in (
            ("postId", self.post_id),
            ("url", self.url),
            ("error", self.error),
            ("category", self.category),
            ("startedAt", self.started_at),
            ("finishedAt", self.finished_at),
        ):
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_raw(cls, raw: Any) -> "PlatformEntry | None":
        if isinstance(raw, str):
            return cls(platform=raw.upper(), success=True, legacy=True) if raw.strip() else None
        if not isinstance(raw, dict) or not raw.get("platform"):
            return None
        success = raw.get("success", True)
        if success != UPLOADING:
            success = success is True or success == "true"
        return cls(
            platform=str(raw["platform"]).upper(),
            success=success,
            post_id=raw.get("postId"),
            url=raw.get("url"),
            error=raw.get("error"),
            category=raw.get("category"),
            started_at=raw.get("startedAt"),
            finished_at=raw.get("finishedAt"),
        )


def normalize_entries(raw: Iterable[Any] | None) -> list[PlatformEntry]:
    """Parse a stored list, collapsing duplicates so each platform appears once.

    A success entry always wins over a later non-success one.
    """
    entries: list[PlatformEntry] = []
    for item in raw or []:
        entry = PlatformEntry.from_raw(item)
        if entry is None:
            continue
        existing = find_entry(entries, entry.platform)
        if existing is None:
            entries.append(entry)
        elif not existing.is_success:
            entries[entries.index(existing)] = entry
    return entries


def find_entry(entries: Iterable[PlatformEntry], platform: str) -> PlatformEntry | None:
    platform = platform.upper()
    return next((e for e in entries if e.platform == platform), None)


def replace_entry(entries: list[PlatformEntry], entry: PlatformEntry) -> list[PlatformEntry]:
    """Return a new list with ``entry`` in its platform's slot (appended if new)."""
    result = list(entries)
    for idx, existing in enumerate(result):
        if existing.platform == entry.platform:
            result[idx] = entry
            return result
    result.append(entry)
    return result


def remove_entries(entries: list[PlatformEntry], platform: str | None = None) -> list[PlatformEntry]:
    if platform is None:
        return []
    return [e for e in entries if e.platform != platform.upper()]


def serialize(entries: Iterable[PlatformEntry]) -> list[dict[str, Any]]:
    return [e.to_dict() for e in entries]


def can_claim(entry: PlatformEntry | None, now: datetime, stale_after: timedelta) -> tuple[bool, str]:
    """Whether a new publish attempt may take this platform slot."""
    if entry is None:
        return True, "no entry"
    if entry.is_success:
        return False, "already posted"
    if entry.is_uploading:
        started = parse_iso(entry.started_at)
        if started is None or now - started > stale_after:
            return True, "stale upload reclaimed"
        return False, "upload in progress"
    return True, "retrying failed entry"
