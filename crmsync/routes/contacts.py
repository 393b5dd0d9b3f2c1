"""
Contact API endpoints backed by the sync coordinator.

Reads come from local state so they work offline; mutations are optimistic
and answer 202 when the change was queued instead of confirmed.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Body, HTTPException, Query
from pydantic import BaseModel, Field

from crmsync.routes._utils import mutation_response, to_http_error
from crmsync.services.derived_state import filter_contacts, find_duplicates, profile_completeness
from crmsync.services.entities import KIND_CONTACT
from crmsync.services.errors import RequestRejected, SyncError
from crmsync.services.sync_coordinator import get_sync_coordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["contacts"])


class BulkTagRequest(BaseModel):
    """Tags to add to several contacts."""
    ids: list[str] = Field(min_length=1)
    tags: list[str] = Field(min_length=1)


class CompletenessResponse(BaseModel):
    """Profile completeness of one contact."""
    percentage: int
    filled_fields: list[str]
    missing_fields: list[str]


@router.get("/contacts")
async def list_contacts(
    q: Optional[str] = Query(default=None, description="Name, company, email or phone substring"),
    tags: Optional[list[str]] = Query(default=None, description="Required tags (all must match)"),
    refresh: bool = Query(default=False, description="Reload from the CRM API first"),
) -> list[dict]:
    """List contacts from local state, optionally filtered."""
    coordinator = get_sync_coordinator()
    if refresh:
        try:
            contacts = await coordinator.load(KIND_CONTACT)
        except SyncError as e:
            raise to_http_error(e)
    else:
        contacts = coordinator.entities(KIND_CONTACT)

    if q or tags:
        contacts = filter_contacts(contacts, query=q or "", tags=tags)
    return [c.to_dict() for c in contacts]


@router.get("/contacts/duplicates")
async def duplicate_suggestions(
    name: str = Query(default=""),
    email: str = Query(default=""),
    phone: str = Query(default=""),
    exclude_id: Optional[str] = Query(default=None),
) -> list[dict]:
    """Existing contacts that may be the person being entered (at most 3)."""
    coordinator = get_sync_coordinator()
    matches = find_duplicates(
        coordinator.entities(KIND_CONTACT),
        name=name,
        email=email,
        phone=phone,
        exclude_id=coordinator.resolve_id(KIND_CONTACT, exclude_id) if exclude_id else None,
    )
    return [c.to_dict() for c in matches]


@router.get("/contacts/recent")
async def recently_viewed_contacts() -> list[dict]:
    """Contacts most recently opened, newest first (at most 10)."""
    return [c.to_dict() for c in get_sync_coordinator().recently_viewed(KIND_CONTACT)]


@router.get("/contacts/{contact_id}")
async def get_contact(contact_id: str) -> dict:
    """Fetch one contact, falling back to the local copy offline."""
    try:
        contact = await get_sync_coordinator().get_entity(KIND_CONTACT, contact_id)
    except RequestRejected as e:
        if e.is_not_found:
            raise HTTPException(status_code=404, detail=f"contact {contact_id} not found")
        raise to_http_error(e)
    except SyncError as e:
        raise to_http_error(e)
    if contact is None:
        raise HTTPException(status_code=404, detail=f"contact {contact_id} not found")
    return contact.to_dict()


@router.post("/contacts/bulk/tags")
async def bulk_add_tags(request: BulkTagRequest) -> list[dict]:
    """Add tags to many contacts; existing tags are kept, duplicates skipped."""
    try:
        updated = await get_sync_coordinator().bulk_add_tags(request.ids, request.tags)
    except SyncError as e:
        raise to_http_error(e)
    return [c.to_dict() for c in updated]


@router.post("/contacts")
async def create_contact(payload: dict = Body(...)):
    """Create a contact (201 when confirmed, 202 when queued)."""
    try:
        result = await get_sync_coordinator().create_entity(KIND_CONTACT, payload)
    except SyncError as e:
        raise to_http_error(e)
    return mutation_response(result, confirmed_status=201)


@router.get("/contacts/{contact_id}/completeness", response_model=CompletenessResponse)
async def contact_completeness(contact_id: str) -> CompletenessResponse:
    """Weighted profile completeness of a contact."""
    contact = get_sync_coordinator().get_cached(KIND_CONTACT, contact_id)
    if contact is None:
        raise HTTPException(status_code=404, detail=f"contact {contact_id} not found")
    return CompletenessResponse(**profile_completeness(contact).to_dict())


@router.put("/contacts/{contact_id}")
async def update_contact(contact_id: str, changes: dict = Body(...)):
    """Apply a partial update to a contact."""
    try:
        result = await get_sync_coordinator().update_entity(KIND_CONTACT, contact_id, changes)
    except SyncError as e:
        raise to_http_error(e)
    return mutation_response(result)


@router.delete("/contacts/{contact_id}")
async def delete_contact(contact_id: str):
    """Delete a contact; it can be restored during the undo window."""
    try:
        result = await get_sync_coordinator().delete_entity(KIND_CONTACT, contact_id)
    except SyncError as e:
        raise to_http_error(e)
    return mutation_response(result)


@router.post("/contacts/{contact_id}/restore")
async def restore_contact(contact_id: str):
    """Undo a recent delete. The restored contact gets a new id."""
    try:
        result = await get_sync_coordinator().restore_entity(KIND_CONTACT, contact_id)
    except SyncError as e:
        raise to_http_error(e)
    return mutation_response(result, confirmed_status=201)
