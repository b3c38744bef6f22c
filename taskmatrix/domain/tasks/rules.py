from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Tuple

from taskmatrix.constants import MAX_PRIORITY, MIN_PRIORITY, SCHEDULED_TODAY, SCHEDULED_TOMORROW
from taskmatrix.domain.common.errors import ValidationError

HASHTAG_RE = re.compile(r"#(\w+)")

# patch key -> Task attribute; camelCase record names are accepted too
PATCHABLE_FIELDS = {
    "title": "title",
    "description": "description",
    "priority": "priority",
    "tags": "tags",
    "scheduled_for": "scheduled_for",
    "scheduledFor": "scheduled_for",
    "due_date": "due_date",
    "dueDate": "due_date",
}
MANAGED_FIELDS = frozenset(
    {"id", "status", "created_at", "createdAt", "updated_at", "updatedAt", "completed_at", "completedAt"}
)


def validate_title(title: Any) -> str:
    if not isinstance(title, str) or not title.strip():
        raise ValidationError("Title is required.")
    if len(title.strip()) > 500:
        raise ValidationError("Title is too long (max 500 chars).")
    return title.strip()


def validate_description(description: Any) -> str:
    if description is None:
        return ""
    if not isinstance(description, str):
        raise ValidationError("Description must be text.")
    if len(description) > 10000:
        raise ValidationError("Description is too long (max 10000 chars).")
    return description


def validate_priority(priority: Any) -> int:
    # bool is an int subclass; True must not become priority 1
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise ValidationError("Priority must be an integer.")
    if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
        raise ValidationError(f"Priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}.")
    return priority


def normalize_tags(tags: Any) -> Tuple[str, ...]:
    """Keep order, drop duplicates and blanks."""
    if tags is None:
        return ()
    if isinstance(tags, str) or not isinstance(tags, Iterable):
        raise ValidationError("Tags must be a list of strings.")
    out = []
    for tag in tags:
        if not isinstance(tag, str):
            raise ValidationError("Tags must be a list of strings.")
        tag = tag.strip()
        if tag and tag not in out:
            out.append(tag)
    return tuple(out)


def validate_scheduled_for(value: Any) -> str:
    if value not in (SCHEDULED_TODAY, SCHEDULED_TOMORROW):
        raise ValidationError("scheduledFor must be 'today' or 'tomorrow'.")
    return value


def validate_due_date(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if not isinstance(value, datetime):
        raise ValidationError("Due date must be a datetime.")
    if value.tzinfo is None:
        raise ValidationError("Due date must be timezone-aware.")
    return value


_VALIDATORS = {
    "title": validate_title,
    "description": validate_description,
    "priority": validate_priority,
    "tags": normalize_tags,
    "scheduled_for": validate_scheduled_for,
    "due_date": validate_due_date,
}


def validate_patch(patch: Any) -> dict:
    """
    Turn an update patch into validated Task attribute values.

    A list or tuple where one task's patch is expected is rejected, as are
    fields the coordinator manages itself (id, status, timestamps).
    """
    if isinstance(patch, (list, tuple)) or not isinstance(patch, Mapping):
        raise ValidationError("Expected a single task patch (mapping).")
    clean = {}
    for key, value in patch.items():
        if key in MANAGED_FIELDS:
            raise ValidationError(f"Field {key!r} cannot be set directly.")
        attr = PATCHABLE_FIELDS.get(key)
        if attr is None:
            raise ValidationError(f"Unknown task field {key!r}.")
        clean[attr] = _VALIDATORS[attr](value)
    return clean


def extract_hashtags(text: str) -> Tuple[str, ...]:
    """'Call bob #work #phone' -> ('work', 'phone')"""
    return tuple(dict.fromkeys(HASHTAG_RE.findall(text or "")))
