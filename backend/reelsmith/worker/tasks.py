"""
Celery tasks for video generation.

Main task: generation.process_video, runs GenerationWorker inside
asyncio.run() with its own DB engine and Redis client, since every task
invocation gets a fresh event loop.
"""
from __future__ import annotations

import asyncio
import logging

from reelsmith.worker.celery_app import celery_app

logger = logging.getLogger(__name__)


async def _process_video_async(payload: dict, attempt: int, max_attempts: int) -> dict:
    from reelsmith.db import create_session_factory
    from reelsmith.errors import truncate_error
    from reelsmith.schemas import VideoJob
    from reelsmith.services import job_queue
    from reelsmith.services.generation_worker import GenerationWorker
    from reelsmith.services.notify import notify_video_failed

    job = VideoJob.model_validate(payload)
    engine, session_factory = create_session_factory()
    redis = job_queue.new_redis()

    try:
        await job_queue.mark_state(job.video_id, job_queue.STATE_ACTIVE, redis=redis, attempts=attempt)
        try:
            status = await GenerationWorker(session_factory).run(job)
        except Exception as exc:
            message = truncate_error(exc)
            final = attempt >= max_attempts
            await job_queue.mark_state(
                job.video_id,
                job_queue.STATE_FAILED if final else job_queue.STATE_DELAYED,
                redis=redis,
                error=message,
            )
            if final:
                await notify_video_failed(job.video_id, message)
            raise
        await job_queue.mark_state(job.video_id, job_queue.STATE_COMPLETED, redis=redis)
        return {"video_id": job.video_id, "status": status}
    finally:
        await redis.aclose()
        await engine.dispose()


@celery_app.task(bind=True, name="generation.process_video", queue="generation")
def process_video(self, payload: dict) -> dict:
    """Celery task: generate one video from a self-contained job payload.

    Retries with exponential backoff (base * 2**retries) until
    JOB_MAX_ATTEMPTS attempts have been made.
    """
    from reelsmith.settings import get_settings

    settings = get_settings()
    attempt = self.request.retries + 1
    max_attempts = settings.job_max_attempts
    video_id = payload.get("videoId")

    logger.info(f"[worker][video={video_id}] Starting (celery_id={self.request.id}, attempt={attempt}/{max_attempts})")
    try:
        return asyncio.run(_process_video_async(payload, attempt, max_attempts))
    except Exception as exc:
        if attempt >= max_attempts:
            logger.error(f"[worker][video={video_id}] Giving up after {attempt} attempts: {exc}")
            raise
        countdown = settings.job_backoff_base_sec * (2 ** self.request.retries)
        logger.warning(f"[worker][video={video_id}] Attempt {attempt} failed, retrying in {countdown}s: {exc}")
        raise self.retry(exc=exc, countdown=countdown, max_retries=max_attempts - 1)
