"""
Quadrant classification for the urgency/importance matrix.

classify() is pure and total: the same attributes always land in the same
quadrant. Callers fill in defaults (priority 4, no tags) before classifying;
Task.from_record already does that for stored records.
"""
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from taskmatrix.constants import (
    DEFAULT_PRIORITY,
    IMPORTANT_TAG,
    MOVE_TARGET_TOMORROW,
    QUADRANT_BACKLOG,
    QUADRANT_NOT_URGENT_IMPORTANT,
    QUADRANT_NOT_URGENT_NOT_IMPORTANT,
    QUADRANT_URGENT_IMPORTANT,
    QUADRANT_URGENT_NOT_IMPORTANT,
    SCHEDULED_TODAY,
    SCHEDULED_TOMORROW,
    URGENT_PRIORITY_MAX,
)
from taskmatrix.domain.common.errors import ValidationError
from taskmatrix.domain.tasks.models import Task

# Display order and labels
QUADRANTS: Dict[str, str] = {
    QUADRANT_URGENT_IMPORTANT: "Do",
    QUADRANT_NOT_URGENT_IMPORTANT: "Schedule",
    QUADRANT_URGENT_NOT_IMPORTANT: "Delegate",
    QUADRANT_NOT_URGENT_NOT_IMPORTANT: "Eliminate",
    QUADRANT_BACKLOG: "Backlog",
}

# target -> (priority, important tag wanted, scheduledFor)
MOVE_TABLE: Dict[str, Tuple[int, Optional[bool], str]] = {
    QUADRANT_URGENT_IMPORTANT: (1, True, SCHEDULED_TODAY),
    QUADRANT_NOT_URGENT_IMPORTANT: (3, True, SCHEDULED_TODAY),
    QUADRANT_URGENT_NOT_IMPORTANT: (2, False, SCHEDULED_TODAY),
    QUADRANT_NOT_URGENT_NOT_IMPORTANT: (4, False, SCHEDULED_TODAY),
    QUADRANT_BACKLOG: (5, None, SCHEDULED_TOMORROW),
}


def classify_attributes(priority: int, tags: Iterable[str], scheduled_for: str) -> str:
    if scheduled_for == SCHEDULED_TOMORROW:
        return QUADRANT_BACKLOG

    urgent = priority <= URGENT_PRIORITY_MAX
    important = IMPORTANT_TAG in set(tags)

    if urgent and important:
        return QUADRANT_URGENT_IMPORTANT
    if important:
        return QUADRANT_NOT_URGENT_IMPORTANT
    if urgent:
        return QUADRANT_URGENT_NOT_IMPORTANT
    return QUADRANT_NOT_URGENT_NOT_IMPORTANT


def classify(task: Task) -> str:
    return classify_attributes(task.priority, task.tags, task.scheduled_for)


def quadrant_of_snapshot(snapshot: Mapping[str, Any]) -> str:
    """Classify a (possibly partial) task record, filling the documented defaults."""
    priority = snapshot.get("priority")
    return classify_attributes(
        DEFAULT_PRIORITY if priority is None else priority,
        snapshot.get("tags") or (),
        snapshot.get("scheduledFor") or SCHEDULED_TODAY,
    )


def quadrant_label(quadrant: str) -> str:
    return QUADRANTS.get(quadrant, quadrant)


def move_target(target: str) -> str:
    """Resolve a drop target to a quadrant id ('tomorrow' is the backlog row)."""
    if target == MOVE_TARGET_TOMORROW:
        return QUADRANT_BACKLOG
    if target not in QUADRANTS:
        raise ValidationError(f"Unknown quadrant: {target!r}")
    return target


def apply_quadrant_move(task: Task, target: str) -> Task:
    """
    Return `task` with priority, tags and scheduledFor set from MOVE_TABLE.

    Only those three fields change. Adding 'important' appends it after the
    existing tags; removing it keeps the order of the rest. A move to the
    backlog leaves tags alone.
    """
    priority, important, scheduled_for = MOVE_TABLE[move_target(target)]

    tags = task.tags
    if important is True and IMPORTANT_TAG not in tags:
        tags = tags + (IMPORTANT_TAG,)
    elif important is False:
        tags = tuple(t for t in tags if t != IMPORTANT_TAG)

    return replace(task, priority=priority, tags=tags, scheduled_for=scheduled_for)
