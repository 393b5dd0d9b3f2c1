"""
Task API endpoints.
"""
from datetime import date
from typing import Optional

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

from crmsync.routes._utils import to_http_error
from crmsync.services.derived_state import task_stats
from crmsync.services.entities import KIND_TASK
from crmsync.services.errors import SyncError
from crmsync.services.sync_coordinator import get_sync_coordinator

router = APIRouter(prefix="/api", tags=["tasks"])


@router.post("/tasks/{task_id}/complete")
async def complete_task(task_id: str):
    """
    Mark a task completed.

    For a recurring task the response also carries the next occurrence
    (`successor`), or null when the recurrence has ended.
    """
    try:
        completion = await get_sync_coordinator().complete_task(task_id)
    except SyncError as e:
        raise to_http_error(e)

    queued = completion.completed.queued or (
        completion.successor is not None and completion.successor.queued
    )
    return JSONResponse(
        status_code=202 if queued else 200,
        content={
            "completed": completion.completed.to_dict(),
            "successor": completion.successor.to_dict() if completion.successor else None,
        },
    )


@router.get("/tasks/stats")
async def get_task_stats(
    today: Optional[date] = Query(default=None, description="Reference date (default: today)")
) -> dict:
    """Task counters computed from local state."""
    return task_stats(get_sync_coordinator().entities(KIND_TASK), today=today)
