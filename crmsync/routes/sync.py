"""
Sync status and replay API endpoints.
"""
from fastapi import APIRouter
from pydantic import BaseModel
from typing import Optional

from crmsync.services.sync_coordinator import get_sync_coordinator

router = APIRouter(prefix="/api/sync", tags=["sync"])


class SyncStatusResponse(BaseModel):
    """Offline indicator state."""
    online: Optional[bool] = None
    pending_count: int
    last_replay_at: Optional[str] = None
    last_error: Optional[str] = None


class ReplayResponse(BaseModel):
    """Result of one replay pass."""
    replayed: int
    remaining: int
    halted: bool
    blocked: list[str] = []
    errors: list[str] = []


class PendingOperationResponse(BaseModel):
    """One queued mutation."""
    seq: Optional[int] = None
    op_kind: str
    entity_kind: str
    entity_id: str
    payload: dict = {}
    enqueued_at: str


@router.get("/status", response_model=SyncStatusResponse)
async def sync_status() -> SyncStatusResponse:
    """Whether the CRM API is reachable and how much work is queued."""
    return SyncStatusResponse(**get_sync_coordinator().status())


@router.post("/replay", response_model=ReplayResponse)
async def replay() -> ReplayResponse:
    """
    Replay queued operations now.

    Stops at the first network failure; rejected entities are reported in
    `blocked` and stay queued.
    """
    report = await get_sync_coordinator().replay_pending()
    return ReplayResponse(**report.to_dict())


@router.get("/pending", response_model=list[PendingOperationResponse])
async def pending_operations() -> list[PendingOperationResponse]:
    """List queued operations oldest first."""
    return [PendingOperationResponse(**op.to_dict()) for op in get_sync_coordinator().pending()]
