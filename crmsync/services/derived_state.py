"""
Derived state computed from entity snapshots.

Pure functions, no I/O: duplicate contact suggestions, profile completeness,
recurring task date advancement, offline contact filtering and task counters.
Malformed or missing optional fields count as absent and never raise.
"""
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Iterable, Optional, Union

from config.sync_config import DuplicateDetectionConfig, PROFILE_FIELDS, total_profile_weight
from crmsync.services.entities import EntitySnapshot

# Recurrence kinds
RECURRENCE_NONE = "NONE"
RECURRENCE_DAILY = "DAILY"
RECURRENCE_WEEKLY = "WEEKLY"
RECURRENCE_BIWEEKLY = "BIWEEKLY"
RECURRENCE_MONTHLY = "MONTHLY"
RECURRENCE_QUARTERLY = "QUARTERLY"
RECURRENCE_YEARLY = "YEARLY"

_DAY_STEPS = {
    RECURRENCE_DAILY: 1,
    RECURRENCE_WEEKLY: 7,
    RECURRENCE_BIWEEKLY: 14,
}

_MONTH_STEPS = {
    RECURRENCE_MONTHLY: 1,
    RECURRENCE_QUARTERLY: 3,
    RECURRENCE_YEARLY: 12,
}

# Task statuses that still count as open work
_OPEN_TASK_STATUSES = ("PENDING", "IN_PROGRESS")

_NON_DIGITS = re.compile(r"\D")

Record = Union[EntitySnapshot, dict]


def _fields(record: Record) -> dict:
    """Field dict of a snapshot or a plain server dict."""
    if isinstance(record, EntitySnapshot):
        return record.fields
    return record if isinstance(record, dict) else {}


def _record_id(record: Record) -> Optional[str]:
    if isinstance(record, EntitySnapshot):
        return record.id
    return record.get("id") if isinstance(record, dict) else None


def _text(value) -> str:
    return value if isinstance(value, str) else ""


def _string_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str)]


def parse_date(value) -> Optional[date]:
    """Parse an ISO date (or the date part of an ISO datetime); None if unusable."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or len(value) < 10:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def normalize_phone(phone: str) -> str:
    """Strip everything except digits."""
    return _NON_DIGITS.sub("", phone or "")


# ---------------------------------------------------------------------------
# Duplicate detection
# ---------------------------------------------------------------------------


def find_duplicates(
    contacts: Iterable[Record],
    name: str = "",
    email: str = "",
    phone: str = "",
    exclude_id: Optional[str] = None,
) -> list[Record]:
    """
    Find existing contacts that may be the same person as a new entry.

    A contact matches when its name contains the candidate name, when one of
    its emails equals the candidate email, or when the candidate phone's
    digits appear inside one of its phones' digits (all case-insensitive).

    Args:
        contacts: Existing contacts, in display order
        name: Candidate name
        email: Candidate's first email
        phone: Candidate's first phone
        exclude_id: Contact being edited, never suggested

    Returns:
        Up to DuplicateDetectionConfig.MAX_RESULTS matches in input order
    """
    name_lower = _text(name).lower().strip()
    email_lower = _text(email).lower().strip()
    phone_digits = normalize_phone(_text(phone))

    if not name_lower and not email_lower and not phone_digits:
        return []

    matches = []
    for contact in contacts:
        if exclude_id and _record_id(contact) == exclude_id:
            continue

        data = _fields(contact)

        name_match = bool(name_lower) and name_lower in _text(data.get("name")).lower()
        email_match = bool(email_lower) and any(
            e.lower() == email_lower for e in _string_list(data.get("emails"))
        )
        phone_match = bool(phone_digits) and any(
            phone_digits in normalize_phone(p) for p in _string_list(data.get("phones"))
        )

        if name_match or email_match or phone_match:
            matches.append(contact)
            if len(matches) >= DuplicateDetectionConfig.MAX_RESULTS:
                break

    return matches


# ---------------------------------------------------------------------------
# Profile completeness
# ---------------------------------------------------------------------------


@dataclass
class ProfileCompleteness:
    """Weighted completeness score of a contact profile."""

    percentage: int
    filled_fields: list[str] = field(default_factory=list)
    missing_fields: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "percentage": self.percentage,
            "filled_fields": list(self.filled_fields),
            "missing_fields": list(self.missing_fields),
        }


def _is_filled(value) -> bool:
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, list):
        return any(isinstance(v, str) and v.strip() for v in value)
    return False


def profile_completeness(contact: Record) -> ProfileCompleteness:
    """
    Score how complete a contact's profile is.

    Each checklist field in PROFILE_FIELDS contributes its weight when
    non-empty: strings after trimming, lists when they hold a non-blank
    string. Any other value counts as missing.

    Returns:
        ProfileCompleteness with the rounded percentage and the filled and
        missing labels, both in checklist order
    """
    data = _fields(contact)
    earned = 0
    filled = []
    missing = []

    for key, label, weight in PROFILE_FIELDS:
        if _is_filled(data.get(key)):
            earned += weight
            filled.append(label)
        else:
            missing.append(label)

    total = total_profile_weight()
    percentage = int(earned * 100 / total + 0.5) if total else 0

    return ProfileCompleteness(
        percentage=percentage,
        filled_fields=filled,
        missing_fields=missing,
    )


# ---------------------------------------------------------------------------
# Recurrence
# ---------------------------------------------------------------------------


def add_months(value: date, months: int) -> date:
    """
    Add calendar months, rolling forward when the day does not exist.

    The day of month is kept; if the target month is shorter, the surplus
    days spill into the following month (Jan 31 + 1 month = Mar 2 or Mar 3).
    """
    total = value.month - 1 + months
    first = date(value.year + total // 12, total % 12 + 1, 1)
    return first + timedelta(days=value.day - 1)


def is_recurring(recurrence) -> bool:
    """True for a recurrence kind that advances the due date."""
    if not isinstance(recurrence, str):
        return False
    kind = recurrence.upper()
    return kind in _DAY_STEPS or kind in _MONTH_STEPS


def advance_recurrence(due: date, recurrence: Optional[str]) -> date:
    """
    Compute the next due date of a recurring task.

    Args:
        due: Current due date
        recurrence: DAILY, WEEKLY, BIWEEKLY, MONTHLY, QUARTERLY or YEARLY

    Returns:
        The next due date; the input unchanged for NONE or unknown kinds
    """
    if not is_recurring(recurrence):
        return due
    kind = recurrence.upper()
    if kind in _DAY_STEPS:
        return due + timedelta(days=_DAY_STEPS[kind])
    return add_months(due, _MONTH_STEPS[kind])


def next_occurrence(
    due: date,
    recurrence: Optional[str],
    end_date: Optional[date] = None,
) -> Optional[date]:
    """
    Due date of the task that replaces a completed recurring one.

    Returns:
        The advanced date, or None if the task does not recur or the next
        date would fall after end_date
    """
    advanced = advance_recurrence(due, recurrence)
    if advanced == due:
        return None
    if end_date is not None and advanced > end_date:
        return None
    return advanced


# ---------------------------------------------------------------------------
# Offline contact filtering + task counters
# ---------------------------------------------------------------------------


def filter_contacts(
    contacts: Iterable[Record],
    query: str = "",
    tags: Optional[list[str]] = None,
) -> list[Record]:
    """
    Filter cached contacts the way the contact list search does.

    Args:
        contacts: Contacts to filter
        query: Case-insensitive substring of name, company, an email or a phone
        tags: Every tag listed must be on the contact

    Returns:
        Matching contacts in input order
    """
    needle = _text(query).lower().strip()
    needle_digits = normalize_phone(needle)
    required = [t.lower() for t in (tags or []) if t]

    results = []
    for contact in contacts:
        data = _fields(contact)

        if required:
            contact_tags = {t.lower() for t in _string_list(data.get("tags"))}
            if not all(t in contact_tags for t in required):
                continue

        if needle:
            haystack = [_text(data.get("name")), _text(data.get("company"))]
            haystack.extend(_string_list(data.get("emails")))
            text_match = any(needle in h.lower() for h in haystack)
            phone_match = bool(needle_digits) and any(
                needle_digits in normalize_phone(p) for p in _string_list(data.get("phones"))
            )
            if not (text_match or phone_match):
                continue

        results.append(contact)

    return results


def task_stats(tasks: Iterable[Record], today: Optional[date] = None) -> dict:
    """
    Count tasks by status plus overdue and due-today open tasks.

    Returns:
        Dict with total, pending, in_progress, completed, overdue, due_today
    """
    today = today or date.today()
    stats = {
        "total": 0,
        "pending": 0,
        "in_progress": 0,
        "completed": 0,
        "overdue": 0,
        "due_today": 0,
    }

    for task in tasks:
        data = _fields(task)
        status = data.get("status")
        stats["total"] += 1
        if status == "PENDING":
            stats["pending"] += 1
        elif status == "IN_PROGRESS":
            stats["in_progress"] += 1
        elif status == "COMPLETED":
            stats["completed"] += 1

        if status in _OPEN_TASK_STATUSES:
            due = parse_date(data.get("dueDate"))
            if due is not None and due < today:
                stats["overdue"] += 1
            elif due == today:
                stats["due_today"] += 1

    return stats
