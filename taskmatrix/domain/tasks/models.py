from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from taskmatrix.constants import (
    DEFAULT_PRIORITY,
    NEW_TASK_PRIORITY,
    SCHEDULED_TODAY,
    TASK_STATUS_COMPLETED,
    TASK_STATUS_TODO,
)
from taskmatrix.domain.common.errors import ValidationError
from taskmatrix.domain.common.time import from_iso, from_iso_or_none, to_iso, to_iso_or_none


@dataclass(frozen=True)
class Task:
    id: str
    title: str
    description: str
    priority: int  # 1 (most urgent) .. 5
    tags: Tuple[str, ...]  # order kept verbatim
    status: str  # 'todo' | 'completed'
    scheduled_for: str  # 'today' | 'tomorrow'
    due_date: Optional[datetime]
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None

    @property
    def is_completed(self) -> bool:
        return self.status == TASK_STATUS_COMPLETED

    def to_record(self) -> Dict[str, Any]:
        """Persisted form, camelCase keys exactly as stored in both backends."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "priority": self.priority,
            "tags": list(self.tags),
            "status": self.status,
            "scheduledFor": self.scheduled_for,
            "dueDate": to_iso_or_none(self.due_date),
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
            "completedAt": to_iso_or_none(self.completed_at),
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Task":
        """
        Decode a stored record.

        Missing priority/tags/status/scheduledFor fall back to defaults so the
        classifier always sees complete values. Raises ValidationError when the
        record cannot be decoded at all.
        """
        if not isinstance(record, Mapping):
            raise ValidationError(f"task record must be a mapping, got {type(record).__name__}")
        task_id = record.get("id")
        if not task_id or not isinstance(task_id, str):
            raise ValidationError("task record has no id")

        raw_priority = record.get("priority")
        priority = DEFAULT_PRIORITY if raw_priority is None else raw_priority
        raw_tags = record.get("tags") or []
        status = record.get("status") or TASK_STATUS_TODO
        # older clients wrote 'active' / 'doing' for open tasks
        if status != TASK_STATUS_COMPLETED:
            status = TASK_STATUS_TODO

        try:
            created_raw = record.get("createdAt")
            if not created_raw:
                raise ValueError("createdAt missing")
            created_at = from_iso(created_raw)
            updated_raw = record.get("updatedAt")
            updated_at = from_iso(updated_raw) if updated_raw else created_at
            return cls(
                id=task_id,
                title=str(record.get("title") or ""),
                description=str(record.get("description") or ""),
                priority=int(priority),
                tags=tuple(dict.fromkeys(str(t) for t in raw_tags)),
                status=status,
                scheduled_for=record.get("scheduledFor") or SCHEDULED_TODAY,
                due_date=from_iso_or_none(record.get("dueDate")),
                created_at=created_at,
                updated_at=updated_at,
                completed_at=from_iso_or_none(record.get("completedAt")),
            )
        except (TypeError, ValueError) as e:
            raise ValidationError(f"malformed task record {task_id!r}: {e}") from e


@dataclass(frozen=True)
class TaskDraft:
    """What a caller supplies to create a task; ids and timestamps are assigned by the coordinator."""

    title: str
    description: str = ""
    priority: int = NEW_TASK_PRIORITY
    tags: Tuple[str, ...] = ()
    scheduled_for: str = SCHEDULED_TODAY
    due_date: Optional[datetime] = None


@dataclass(frozen=True)
class FieldChange:
    field: str
    old_value: Any
    new_value: Any

    def to_record(self) -> Dict[str, Any]:
        return {"field": self.field, "oldValue": self.old_value, "newValue": self.new_value}

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "FieldChange":
        return cls(
            field=record["field"],
            old_value=record.get("oldValue"),
            new_value=record.get("newValue"),
        )


@dataclass(frozen=True)
class HistoryEntry:
    id: str
    timestamp: datetime
    action: str  # CREATE | UPDATE | DELETE | COMPLETE | REOPEN
    actor_id: str
    ticket_data: Dict[str, Any]  # full task record at time of action
    changes: Optional[Tuple[FieldChange, ...]] = None

    @property
    def task_id(self) -> Optional[str]:
        return self.ticket_data.get("id")

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": to_iso(self.timestamp),
            "action": self.action,
            "actorId": self.actor_id,
            "ticketData": dict(self.ticket_data),
            "changes": [c.to_record() for c in self.changes] if self.changes is not None else None,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "HistoryEntry":
        changes = record.get("changes")
        return cls(
            id=record["id"],
            timestamp=from_iso(record["timestamp"]),
            action=record["action"],
            actor_id=record.get("actorId") or "",
            ticket_data=dict(record.get("ticketData") or {}),
            changes=tuple(FieldChange.from_record(c) for c in changes) if changes is not None else None,
        )


class SyncState(str, Enum):
    OK = "ok"
    PENDING = "pending"
    FAILED = "failed"

