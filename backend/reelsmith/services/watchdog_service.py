"""
Watchdog service: finds videos stuck in GENERATING and marks them FAILED.

Stuck criteria:
- status == GENERATING and updated_at < now - STUCK_GENERATING_MINUTES
- and the video's job is no longer in flight in the queue

With WATCHDOG_AUTO_REQUEUE the stored job payload is enqueued again.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

import redis.asyncio as aioredis
from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from reelsmith.models import Video, VideoStatus
from reelsmith.schemas import VideoJob
from reelsmith.services import job_queue
from reelsmith.services.notify import notify_watchdog
from reelsmith.settings import get_settings
from reelsmith.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)


async def run_watchdog(
    session: AsyncSession,
    *,
    dry_run: bool = False,
    redis: aioredis.Redis | None = None,
    enqueue_job=None,
) -> dict[str, Any]:
    """Find stuck generations and fail them. Returns a report dict."""
    settings = get_settings()
    now = utcnow()
    cutoff = now - timedelta(minutes=settings.stuck_generating_minutes)
    enqueue_job = enqueue_job or job_queue.enqueue

    stuck_q = await session.execute(
        select(Video).where(and_(
            Video.status == VideoStatus.generating.value,
            Video.updated_at < cutoff,
        ))
    )
    stuck = list(stuck_q.scalars().all())

    report_items: list[dict] = []
    requeue: list[Video] = []
    for video in stuck:
        if await job_queue.is_in_flight(video.id, redis=redis):
            logger.info(f"[watchdog][video={video.id}] job still in flight, leaving it alone")
            continue
        age_minutes = (now - as_utc(video.updated_at)).total_seconds() / 60
        error_msg = (
            f"watchdog: stuck in {video.generation_stage or 'GENERATING'} "
            f"> {settings.stuck_generating_minutes}m (age={age_minutes:.0f}m)"
        )
        item = {
            "video_id": video.id,
            "series_id": video.series_id,
            "stage": video.generation_stage,
            "age_minutes": round(age_minutes),
            "error_message": error_msg,
        }
        if dry_run:
            item["action"] = "would_mark_failed"
        elif settings.watchdog_auto_requeue and video.job_payload:
            video.status = VideoStatus.queued.value
            video.generation_stage = None
            video.error_message = None
            requeue.append(video)
            item["action"] = "requeued"
        else:
            video.status = VideoStatus.failed.value
            video.generation_stage = None
            video.error_message = error_msg
            item["action"] = "marked_failed"
        report_items.append(item)

    if not dry_run and report_items:
        await session.commit()
        for video in requeue:
            try:
                await job_queue.remove_job(video.id, redis=redis)
                await enqueue_job(VideoJob.model_validate(video.job_payload), redis=redis)
            except Exception as exc:
                video.status = VideoStatus.failed.value
                video.error_message = f"watchdog: requeue failed: {exc}"[: settings.error_message_max_len]
                await session.commit()
                logger.error(f"[watchdog][video={video.id}] {video.error_message}")
        summary = ", ".join(
            f"#{it['video_id']}({it['stage'] or '-'} {it['age_minutes']}m)" for it in report_items[:10]
        )
        await notify_watchdog(len(report_items), summary)

    logger.info(f"[watchdog] Found {len(report_items)} stuck videos (dry_run={dry_run})")
    return {
        "stuck_count": len(report_items),
        "items": report_items,
        "dry_run": dry_run,
        "run_at": now.isoformat(),
        "settings": {
            "stuck_generating_minutes": settings.stuck_generating_minutes,
            "auto_requeue": settings.watchdog_auto_requeue,
        },
    }


async def get_health(session: AsyncSession, *, redis: aioredis.Redis | None = None) -> dict[str, Any]:
    """Video counts by status, stuck count and recent job failures."""
    settings = get_settings()
    cutoff = utcnow() - timedelta(minutes=settings.stuck_generating_minutes)

    counts_q = await session.execute(select(Video.status, func.count(Video.id)).group_by(Video.status))
    counts = {row[0]: row[1] for row in counts_q.all()}

    stuck = await session.scalar(
        select(func.count(Video.id)).where(and_(
            Video.status == VideoStatus.generating.value,
            Video.updated_at < cutoff,
        ))
    )
    return {
        "counts": counts,
        "stuck_generating": stuck or 0,
        "recent_failed_jobs": await job_queue.recent_jobs(job_queue.STATE_FAILED, redis=redis),
    }
