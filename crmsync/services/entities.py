"""
Entity snapshots and typed mutation payloads for the CRM sync layer.

An EntitySnapshot is the client's copy of one server record (contact, task,
meeting, ...). Its kind-specific fields are kept as the server's camelCase
JSON dict so snapshots round-trip to the API unchanged. Mutation payloads
coming from the UI are validated through the pydantic model for their kind
before they reach the sync coordinator.
"""
import copy
import json
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from config.sync_config import ENTITY_PATHS, SyncConfig
from crmsync.services.errors import PayloadInvalid

# Entity kinds
KIND_CONTACT = "contact"
KIND_MEETING = "meeting"
KIND_TASK = "task"
KIND_CALENDAR_EVENT = "calendar_event"
KIND_TAG = "tag"
KIND_GROUP = "group"

ENTITY_KINDS = tuple(ENTITY_PATHS.keys())

# Keys the server owns; never part of a snapshot's mutable field set
_ENVELOPE_KEYS = ("id", "userId", "createdAt", "updatedAt")


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def new_tentative_id() -> str:
    """Generate a client-side identifier for an unconfirmed creation."""
    return f"{SyncConfig.TENTATIVE_ID_PREFIX}{uuid.uuid4()}"


def is_tentative_id(entity_id: str) -> bool:
    """Check if an identifier was generated client-side."""
    return bool(entity_id) and entity_id.startswith(SyncConfig.TENTATIVE_ID_PREFIX)


@dataclass
class EntitySnapshot:
    """
    The client's current copy of one domain record.

    Exactly one snapshot exists per (kind, id) in the local cache. Fields hold
    the kind-specific data in the server's JSON shape (camelCase keys).
    """

    id: str
    kind: str
    fields: dict = field(default_factory=dict)
    user_id: Optional[str] = None

    # ISO-8601 strings as received from the server
    created_at: str = ""
    updated_at: str = ""

    @property
    def tentative(self) -> bool:
        """True until the server has assigned an authoritative id."""
        return is_tentative_id(self.id)

    def get(self, key: str, default=None):
        """Read a field value."""
        return self.fields.get(key, default)

    def with_fields(self, changes: dict) -> "EntitySnapshot":
        """Return a copy with fields merged over this snapshot and a fresh updatedAt."""
        merged = copy.deepcopy(self.fields)
        merged.update(copy.deepcopy(changes))
        return EntitySnapshot(
            id=self.id,
            kind=self.kind,
            fields=merged,
            user_id=self.user_id,
            created_at=self.created_at,
            updated_at=utc_now_iso(),
        )

    def with_id(self, entity_id: str) -> "EntitySnapshot":
        """Return a copy under another identifier."""
        return EntitySnapshot(
            id=entity_id,
            kind=self.kind,
            fields=copy.deepcopy(self.fields),
            user_id=self.user_id,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def to_dict(self) -> dict:
        """Convert to the server's flat JSON shape."""
        data = copy.deepcopy(self.fields)
        data["id"] = self.id
        if self.user_id is not None:
            data["userId"] = self.user_id
        data["createdAt"] = self.created_at
        data["updatedAt"] = self.updated_at
        return data

    @classmethod
    def from_dict(cls, kind: str, data: dict) -> "EntitySnapshot":
        """Create EntitySnapshot from a server JSON object."""
        fields = {k: copy.deepcopy(v) for k, v in data.items() if k not in _ENVELOPE_KEYS}
        return cls(
            id=str(data["id"]),
            kind=kind,
            fields=fields,
            user_id=data.get("userId"),
            created_at=data.get("createdAt") or "",
            updated_at=data.get("updatedAt") or "",
        )

    @classmethod
    def from_row(cls, row: tuple) -> "EntitySnapshot":
        """Create EntitySnapshot from SQLite row."""
        # Row order: kind, id, data, updated_at
        return cls.from_dict(row[0], json.loads(row[2]))

    @classmethod
    def tentative_from_fields(
        cls, kind: str, fields: dict, user_id: Optional[str] = None
    ) -> "EntitySnapshot":
        """Build the optimistic snapshot for a creation that has no server id yet."""
        now = utc_now_iso()
        return cls(
            id=new_tentative_id(),
            kind=kind,
            fields=copy.deepcopy(fields),
            user_id=user_id,
            created_at=now,
            updated_at=now,
        )


# ---------------------------------------------------------------------------
# Typed partial updates
# ---------------------------------------------------------------------------


class _EntityFields(BaseModel):
    """Base for per-kind payload models (camelCase on the wire, unknown keys rejected)."""

    model_config = ConfigDict(
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class ContactFields(_EntityFields):
    name: Optional[str] = None
    emails: Optional[list[str]] = None
    phones: Optional[list[str]] = None
    whatsapp_number: Optional[str] = None
    instagram_handle: Optional[str] = None
    company: Optional[str] = None
    tags: Optional[list[str]] = None
    address: Optional[str] = None
    notes: Optional[str] = None
    birthday: Optional[date] = None
    anniversary: Optional[date] = None
    profile_picture: Optional[str] = None
    last_contacted_at: Optional[datetime] = None


class MeetingFields(_EntityFields):
    contact_id: Optional[str] = None
    meeting_date: Optional[datetime] = None
    medium: Optional[Literal[
        "phone_call", "whatsapp", "email", "sms", "in_person",
        "video_call", "instagram_dm", "other",
    ]] = None
    notes: Optional[str] = None
    outcome: Optional[str] = None
    followup_date: Optional[date] = None


class TaskFields(_EntityFields):
    title: Optional[str] = None
    description: Optional[str] = None
    contact_id: Optional[str] = None
    contact_name: Optional[str] = None
    status: Optional[Literal["PENDING", "IN_PROGRESS", "COMPLETED", "CANCELLED"]] = None
    priority: Optional[Literal["LOW", "MEDIUM", "HIGH", "URGENT"]] = None
    due_date: Optional[date] = None
    completed_at: Optional[datetime] = None
    recurrence: Optional[Literal[
        "NONE", "DAILY", "WEEKLY", "BIWEEKLY", "MONTHLY", "QUARTERLY", "YEARLY",
    ]] = None
    recurrence_end_date: Optional[date] = None
    parent_task_id: Optional[str] = None


class CalendarEventFields(_EntityFields):
    title: Optional[str] = None
    description: Optional[str] = None
    contact_id: Optional[str] = None
    contact_name: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    location: Optional[str] = None
    meet_link: Optional[str] = None
    type: Optional[Literal["MEETING", "CALL", "VIDEO_CALL", "FOLLOW_UP", "OTHER"]] = None
    status: Optional[Literal["SCHEDULED", "CONFIRMED", "CANCELLED", "COMPLETED"]] = None
    attendees: Optional[list[str]] = None
    reminder_minutes: Optional[int] = None


class TagFields(_EntityFields):
    name: Optional[str] = None
    color: Optional[str] = None
    description: Optional[str] = None


class GroupFields(_EntityFields):
    name: Optional[str] = None
    description: Optional[str] = None
    color: Optional[str] = None
    contact_ids: Optional[list[str]] = None


FIELD_MODELS: dict[str, type[_EntityFields]] = {
    KIND_CONTACT: ContactFields,
    KIND_MEETING: MeetingFields,
    KIND_TASK: TaskFields,
    KIND_CALENDAR_EVENT: CalendarEventFields,
    KIND_TAG: TagFields,
    KIND_GROUP: GroupFields,
}

# Fields that must be present (and non-blank) when creating an entity
REQUIRED_ON_CREATE: dict[str, tuple[str, ...]] = {
    KIND_CONTACT: ("name",),
    KIND_MEETING: ("contactId", "meetingDate"),
    KIND_TASK: ("title",),
    KIND_CALENDAR_EVENT: ("title", "startTime", "endTime"),
    KIND_TAG: ("name",),
    KIND_GROUP: ("name",),
}

# Defaults the server would fill in; applied to optimistic creations
CREATE_DEFAULTS: dict[str, dict] = {
    KIND_CONTACT: {"emails": [], "phones": [], "tags": []},
    KIND_TASK: {"status": "PENDING", "priority": "MEDIUM", "recurrence": "NONE"},
    KIND_CALENDAR_EVENT: {"type": "MEETING", "status": "SCHEDULED", "attendees": []},
    KIND_GROUP: {"contactIds": []},
}


def validate_fields(kind: str, payload: dict, partial: bool = True) -> dict:
    """
    Validate a mutation payload for an entity kind.

    Args:
        kind: Entity kind
        payload: camelCase (or snake_case) field dict from the caller
        partial: False for creations, which must carry the required fields

    Returns:
        The validated payload as a camelCase JSON-ready dict containing only
        the keys the caller supplied

    Raises:
        PayloadInvalid: Unknown kind, unknown field, bad value or missing
            required field
    """
    model = FIELD_MODELS.get(kind)
    if model is None:
        raise PayloadInvalid(kind, [f"unknown entity kind '{kind}'"])

    try:
        parsed = model.model_validate(payload)
    except ValidationError as e:
        raise PayloadInvalid(kind, e.errors(include_url=False)) from e

    data = parsed.model_dump(mode="json", by_alias=True, exclude_unset=True)

    if not partial:
        missing = [
            key for key in REQUIRED_ON_CREATE.get(kind, ())
            if data.get(key) is None or (isinstance(data[key], str) and not data[key].strip())
        ]
        if missing:
            raise PayloadInvalid(kind, [f"missing required field '{key}'" for key in missing])
        data = {**CREATE_DEFAULTS.get(kind, {}), **data}

    return data


def known_fields(kind: str, fields: dict) -> dict:
    """
    Drop keys the payload model for this kind does not define.

    Server snapshots carry read-only extras (contactCount, contactName on
    some kinds); re-submitting a snapshot as a payload must strip them first.
    """
    model = FIELD_MODELS.get(kind)
    if model is None:
        return dict(fields)
    allowed = {info.alias or name for name, info in model.model_fields.items()}
    return {k: v for k, v in fields.items() if k in allowed}


def replace_reference(value, old_id: str, new_id: str):
    """
    Replace every occurrence of old_id in a JSON-like value.

    Walks dicts and lists; only whole string values equal to old_id are
    replaced. Returns a new value, the input is left untouched.
    """
    if isinstance(value, dict):
        return {k: replace_reference(v, old_id, new_id) for k, v in value.items()}
    if isinstance(value, list):
        return [replace_reference(v, old_id, new_id) for v in value]
    if value == old_id:
        return new_id
    return value
