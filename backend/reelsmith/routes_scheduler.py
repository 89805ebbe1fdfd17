"""
Scheduler API Routes

Introspection of the automation timers and a manual resync.
"""
from __future__ import annotations

from fastapi import APIRouter

from reelsmith.schemas import ArmedTimer, SchedulerStatus
from reelsmith.services.scheduler import automation_scheduler

router = APIRouter(prefix="/api/scheduler", tags=["scheduler"])


@router.get("/status", response_model=SchedulerStatus)
async def get_scheduler_status():
    """Armed automation timers and registered jobs."""
    armed = [
        ArmedTimer(automation_id=automation_id, fire_at=fire_at)
        for automation_id, fire_at in sorted(automation_scheduler.get_armed().items(), key=lambda kv: kv[1])
    ]
    return SchedulerStatus(
        running=automation_scheduler.is_running(),
        armed=armed,
        jobs=automation_scheduler.get_jobs(),
    )


@router.post("/sync", response_model=dict)
async def sync_scheduler():
    """Re-arm timers from the database now instead of waiting for the next sync."""
    return await automation_scheduler.sync_schedules()
