from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from reelsmith.db import get_session
from reelsmith.errors import EnqueueError, truncate_error
from reelsmith.models import PUBLISHABLE_STATUSES, Video, VideoStatus
from reelsmith.schemas import (
    JobStateRead,
    PlatformOutcome,
    PublishRequest,
    ResetPostedRequest,
    VideoJob,
    VideoRead,
)
from reelsmith.services import job_queue
from reelsmith.services.scheduler import automation_scheduler
from reelsmith.settings import get_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/videos", tags=["videos"])

SessionDep = Depends(get_session)


async def _get_video(session: AsyncSession, video_id: int) -> Video:
    video = await session.get(Video, video_id)
    if video is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Video not found")
    return video


@router.get("/{video_id}", response_model=VideoRead)
async def get_video(video_id: int, session: AsyncSession = SessionDep):
    return await _get_video(session, video_id)


@router.get("/{video_id}/job", response_model=JobStateRead)
async def get_video_job(video_id: int, session: AsyncSession = SessionDep):
    await _get_video(session, video_id)
    state = await job_queue.get_job_state(video_id)
    if state is None:
        return JobStateRead(video_id=video_id)
    return JobStateRead(
        video_id=video_id,
        state=state.get("state"),
        attempts=state.get("attempts", 0),
        updated_at=state.get("updated_at"),
        error=state.get("error"),
    )


@router.post("/{video_id}/retry", response_model=VideoRead)
async def retry_video(video_id: int, session: AsyncSession = SessionDep):
    """Re-enqueue the stored job of a FAILED (or stuck QUEUED) video."""
    video = await _get_video(session, video_id)
    if video.status not in (VideoStatus.failed.value, VideoStatus.queued.value):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Only FAILED or QUEUED videos can be retried (status is {video.status})",
        )
    if not video.job_payload:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Video has no stored job payload")
    if not await job_queue.remove_job(video_id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="A job for this video is still in flight")

    job = VideoJob.model_validate(video.job_payload)
    video.status = VideoStatus.queued.value
    video.generation_stage = None
    video.error_message = None
    await session.commit()

    try:
        await job_queue.enqueue(job)
    except EnqueueError as exc:
        video.status = VideoStatus.failed.value
        video.error_message = truncate_error(exc, get_settings().error_message_max_len)
        await session.commit()
        logger.error(f"[videos][video={video_id}] retry enqueue failed: {video.error_message}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=video.error_message)

    logger.info(f"[videos][video={video_id}] re-enqueued by manual retry")
    await session.refresh(video)
    return video


@router.post("/{video_id}/publish", response_model=list[PlatformOutcome])
async def publish_video(video_id: int, request: PublishRequest | None = None, session: AsyncSession = SessionDep):
    video = await _get_video(session, video_id)
    if video.status not in PUBLISHABLE_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Video is not ready for publishing (status is {video.status})",
        )
    platforms = [p.value for p in request.platforms] if request and request.platforms else None
    return await automation_scheduler.poster.post_video(video_id, platforms)


@router.post("/{video_id}/reset-posted", response_model=VideoRead)
async def reset_posted(video_id: int, request: ResetPostedRequest | None = None, session: AsyncSession = SessionDep):
    """Drop platform entries (all, or one platform) so the video can be published again."""
    await _get_video(session, video_id)
    platform = request.platform.value if request and request.platform else None
    await automation_scheduler.poster.reset_posted(video_id, platform)
    return await session.get(Video, video_id, populate_existing=True)
