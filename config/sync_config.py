"""
Sync and derived-state configuration for the CRM client.

Holds the fixed tables the sync layer and the derived-state functions rely on:
entity kind → REST path mapping, duplicate detection limits and the profile
completeness checklist.
"""
from typing import Optional


# Entity kind → REST collection path
# Calendar events live under /calendar on the server, everything else is plural.
ENTITY_PATHS: dict[str, str] = {
    "contact": "/contacts",
    "meeting": "/meetings",
    "task": "/tasks",
    "calendar_event": "/calendar",
    "tag": "/tags",
    "group": "/groups",
}


# Profile Completeness Checklist
# (field, label, weight) - weights sum to 100, order is the display order
PROFILE_FIELDS: list[tuple[str, str, int]] = [
    ("name", "Name", 15),
    ("emails", "Email", 15),
    ("phones", "Phone", 15),
    ("company", "Company", 10),
    ("address", "Address", 10),
    ("birthday", "Birthday", 10),
    ("anniversary", "Anniversary", 5),
    ("whatsappNumber", "WhatsApp", 5),
    ("instagramHandle", "Instagram", 5),
    ("notes", "Notes", 5),
    ("profilePicture", "Photo", 5),
]


class DuplicateDetectionConfig:
    """Configuration for duplicate contact detection."""

    # Suggestions shown while creating a contact
    MAX_RESULTS: int = 3


class SyncConfig:
    """Configuration for the sync coordinator."""

    # Prefix for client-generated identifiers awaiting server confirmation
    TENTATIVE_ID_PREFIX: str = "tmp-"

    # Status code the server returns for missing entities
    NOT_FOUND_STATUS: int = 404

    # Fallback error text when the server sends no JSON message
    DEFAULT_ERROR_MESSAGE: str = "Request failed"

    # Length of the most-recent-first "recently viewed" list per kind
    MAX_RECENTLY_VIEWED: int = 10


def get_entity_path(kind: str) -> Optional[str]:
    """
    Get the REST collection path for an entity kind.

    Args:
        kind: Entity kind (e.g., "contact")

    Returns:
        Path like "/contacts", or None if the kind is unknown
    """
    return ENTITY_PATHS.get(kind)


def total_profile_weight() -> int:
    """Sum of all checklist weights (100 unless the table is edited)."""
    return sum(weight for _, _, weight in PROFILE_FIELDS)
