from fastapi import APIRouter, HTTPException

from ticobot.runtime import get_runtime
from ticobot.schemas.reminder import RunSummary

router = APIRouter()


@router.post("/reminders/run", response_model=RunSummary)
async def run_reminders():
    """Run one scheduler cycle now; skipped when a cycle is already running."""
    return await get_runtime().scheduler.run_batch()


@router.get("/reminders/last", response_model=RunSummary)
async def last_run():
    summary = get_runtime().scheduler.last_summary
    if summary is None:
        raise HTTPException(status_code=404, detail="no scheduler run yet")
    return summary
