from __future__ import annotations

from fastapi import APIRouter, HTTPException, status

from reelsmith.schemas import FireResult
from reelsmith.services.scheduler import automation_scheduler

router = APIRouter(prefix="/api/automations", tags=["automations"])


@router.post("/{automation_id}/trigger", response_model=FireResult)
async def trigger_automation(automation_id: int):
    """Run the fire handler immediately. The in-progress guard still applies."""
    result = await automation_scheduler.trigger_now(automation_id)
    if not result.fired and result.reason == "not found":
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Automation not found")
    return result


@router.post("/{automation_id}/stop", response_model=dict)
async def stop_automation(automation_id: int):
    if not await automation_scheduler.stop_automation(automation_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Automation not found")
    return {"ok": True, "automation_id": automation_id, "enabled": False}
