"""
Video generation job queue.

Celery (Redis broker) carries the work; a Redis hash per video carries the
job's identity and state so that enqueue can be deduplicated:

    videojob:{video_id}  ->  state, attempts, celery_task_id, payload, ...

States: waiting / active / delayed are in flight; completed / failed are
terminal. At most one in-flight job exists per video id. Enqueueing a video
whose job is terminal (or unknown) drops the old record and starts fresh.
"""
from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Callable

import redis.asyncio as aioredis
from redis.exceptions import WatchError

from reelsmith.errors import EnqueueError
from reelsmith.schemas import VideoJob
from reelsmith.settings import get_settings
from reelsmith.timeutils import utcnow

logger = logging.getLogger(__name__)

STATE_WAITING = "waiting"
STATE_ACTIVE = "active"
STATE_DELAYED = "delayed"
STATE_COMPLETED = "completed"
STATE_FAILED = "failed"

IN_FLIGHT_STATES = frozenset({STATE_WAITING, STATE_ACTIVE, STATE_DELAYED})
TERMINAL_STATES = frozenset({STATE_COMPLETED, STATE_FAILED})

# Matches the Celery hard time limit; a key that outlives it belongs to a dead worker.
IN_FLIGHT_TTL_SEC = 7 * 3600

COMPLETED_HISTORY_KEY = "videojobs:completed"
FAILED_HISTORY_KEY = "videojobs:failed"

Dispatcher = Callable[[str, dict], str]

_redis_client: aioredis.Redis | None = None


def get_redis() -> aioredis.Redis:
    """Shared client for the API process (one event loop)."""
    global _redis_client
    if _redis_client is None:
        _redis_client = aioredis.from_url(get_settings().redis_url, decode_responses=True)
    return _redis_client


def new_redis() -> aioredis.Redis:
    """Private client for code that runs in its own event loop (Celery tasks)."""
    return aioredis.from_url(get_settings().redis_url, decode_responses=True)


def job_key(job_id: str | int) -> str:
    return f"videojob:{job_id}"


def _dispatch_celery(job_id: str, payload: dict) -> str:
    from reelsmith.worker.tasks import process_video

    task_id = f"video-{job_id}-{uuid.uuid4().hex[:8]}"
    process_video.apply_async(args=[payload], task_id=task_id)
    return task_id


async def enqueue(
    job: VideoJob,
    *,
    redis: aioredis.Redis | None = None,
    dispatch: Dispatcher | None = None,
) -> str:
    """Enqueue a generation job keyed by video id.

    Returns the job id. If a job for the same video is already in flight
    nothing is dispatched and the existing id is returned.
    """
    r = redis or get_redis()
    job_id = str(job.video_id)
    key = job_key(job_id)
    payload = job.to_payload()
    now = utcnow().isoformat()

    async with r.pipeline(transaction=True) as pipe:
        while True:
            try:
                await pipe.watch(key)
                state = await pipe.hget(key, "state")
                if state in IN_FLIGHT_STATES:
                    logger.info(f"[queue][video={job_id}] Job already {state}, not re-enqueued")
                    return job_id
                if state is not None:
                    logger.info(f"[queue][video={job_id}] Removing {state} job before re-enqueue")
                pipe.multi()
                pipe.delete(key)
                pipe.hset(key, mapping={
                    "state": STATE_WAITING,
                    "attempts": 0,
                    "enqueued_at": now,
                    "updated_at": now,
                    "payload": json.dumps(payload),
                })
                pipe.expire(key, IN_FLIGHT_TTL_SEC)
                await pipe.execute()
                break
            except WatchError:
                continue

    try:
        task_id = (dispatch or _dispatch_celery)(job_id, payload)
    except Exception as exc:
        await r.delete(key)
        raise EnqueueError(f"Failed to dispatch job for video {job_id}: {exc}") from exc

    await r.hset(key, "celery_task_id", task_id)
    logger.info(f"[queue][video={job_id}] Enqueued (task={task_id})")
    return job_id


async def mark_state(
    job_id: str | int,
    state: str,
    *,
    redis: aioredis.Redis | None = None,
    attempts: int | None = None,
    error: str | None = None,
) -> None:
    """Record a state transition; terminal states enter the bounded history."""
    r = redis or get_redis()
    settings = get_settings()
    key = job_key(job_id)
    fields: dict[str, Any] = {"state": state, "updated_at": utcnow().isoformat()}
    if attempts is not None:
        fields["attempts"] = attempts
    if error is not None:
        fields["error"] = error

    async with r.pipeline(transaction=True) as pipe:
        pipe.hset(key, mapping=fields)
        if state == STATE_COMPLETED:
            pipe.expire(key, settings.job_terminal_ttl_sec)
            pipe.lpush(COMPLETED_HISTORY_KEY, str(job_id))
            pipe.ltrim(COMPLETED_HISTORY_KEY, 0, settings.job_history_completed - 1)
        elif state == STATE_FAILED:
            pipe.expire(key, settings.job_terminal_ttl_sec)
            pipe.lpush(FAILED_HISTORY_KEY, str(job_id))
            pipe.ltrim(FAILED_HISTORY_KEY, 0, settings.job_history_failed - 1)
        else:
            pipe.expire(key, IN_FLIGHT_TTL_SEC)
        await pipe.execute()


async def get_job_state(job_id: str | int, *, redis: aioredis.Redis | None = None) -> dict[str, Any] | None:
    r = redis or get_redis()
    data = await r.hgetall(job_key(job_id))
    if not data:
        return None
    data.pop("payload", None)
    data["attempts"] = int(data.get("attempts") or 0)
    return data


async def is_in_flight(job_id: str | int, *, redis: aioredis.Redis | None = None) -> bool:
    r = redis or get_redis()
    return (await r.hget(job_key(job_id), "state")) in IN_FLIGHT_STATES


async def remove_job(job_id: str | int, *, redis: aioredis.Redis | None = None) -> bool:
    """Drop a terminal job record. Refuses (returns False) while in flight."""
    r = redis or get_redis()
    key = job_key(job_id)
    state = await r.hget(key, "state")
    if state in IN_FLIGHT_STATES:
        logger.warning(f"[queue][video={job_id}] Refusing to remove {state} job")
        return False
    await r.delete(key)
    return True


async def recent_jobs(kind: str = STATE_FAILED, *, redis: aioredis.Redis | None = None) -> list[str]:
    r = redis or get_redis()
    key = FAILED_HISTORY_KEY if kind == STATE_FAILED else COMPLETED_HISTORY_KEY
    return list(await r.lrange(key, 0, -1))
