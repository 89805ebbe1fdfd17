"""
Fire-time arithmetic for automations.

All inputs are wall-clock "HH:MM" strings in the automation's own IANA
timezone; all outputs are timezone-aware UTC datetimes.
"""
from __future__ import annotations

import logging
import re
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from reelsmith.models import Frequency
from reelsmith.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)

SEARCH_DAYS = 8
FALLBACK_DELAY = timedelta(hours=24)

# Slightly under the nominal interval so a little drift never skips a day.
MIN_GAP_HOURS: dict[str, int] = {
    Frequency.daily.value: 20,
    Frequency.every_other_day.value: 44,
    Frequency.weekly.value: 164,
}

_HHMM_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


def min_gap(frequency: str | None) -> timedelta:
    hours = MIN_GAP_HOURS.get((frequency or "").strip(), MIN_GAP_HOURS[Frequency.daily.value])
    return timedelta(hours=hours)


def resolve_timezone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"[scheduling] Unknown timezone {name!r}, falling back to UTC")
        return ZoneInfo("UTC")


def parse_fire_times(post_time: str | None) -> list[time]:
    """Parse a comma-joined "HH:MM" list into sorted unique local times."""
    slots: set[time] = set()
    for raw in (post_time or "").split(","):
        raw = raw.strip()
        if not raw:
            continue
        m = _HHMM_RE.match(raw)
        if not m or int(m.group(1)) > 23 or int(m.group(2)) > 59:
            logger.warning(f"[scheduling] Ignoring invalid fire time {raw!r}")
            continue
        slots.add(time(int(m.group(1)), int(m.group(2))))
    return sorted(slots)


def compute_next_fire_time(
    post_time: str | None,
    tz_name: str | None,
    frequency: str | None,
    last_run_at: datetime | None,
    now: datetime | None = None,
) -> datetime:
    """Next UTC instant at which an automation should fire.

    Walks today plus the next seven local calendar days and returns the first
    configured slot that is strictly after ``now`` and at least
    ``min_gap(frequency)`` after ``last_run_at``. When nothing qualifies the
    result is ``now + 24h`` (never earlier than the gap allows).
    """
    now = as_utc(now) or utcnow()
    last_run_at = as_utc(last_run_at)
    tz = resolve_timezone(tz_name)
    gap = min_gap(frequency)
    earliest = last_run_at + gap if last_run_at else None

    slots = parse_fire_times(post_time)
    local_today = now.astimezone(tz).date()

    for day_offset in range(SEARCH_DAYS):
        day = local_today + timedelta(days=day_offset)
        for slot in slots:
            # Going through the wall clock keeps DST transitions correct.
            candidate = datetime.combine(day, slot, tzinfo=tz).astimezone(timezone.utc)
            if candidate <= now:
                continue
            if earliest is not None and candidate < earliest:
                continue
            return candidate

    fallback = now + FALLBACK_DELAY
    if earliest is not None and earliest > fallback:
        fallback = earliest
    logger.warning(
        f"[scheduling] No slot within {SEARCH_DAYS} days for post_time={post_time!r} "
        f"tz={tz_name!r}, falling back to {fallback.isoformat()}"
    )
    return fallback
