"""
Audit trail: field diffs between task snapshots and immutable history entries.

Entries are appended, never updated or removed. A failed append is logged and
reported to the caller as False; it never interrupts the task mutation that
produced it.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, List, Mapping, Optional, Sequence, Union

from taskmatrix.constants import (
    ACTION_COMPLETE,
    ACTION_CREATE,
    ACTION_DELETE,
    ACTION_REOPEN,
    ACTION_UPDATE,
    QUADRANT_CHANGE_FIELD,
)
from taskmatrix.domain.common.errors import ValidationError
from taskmatrix.domain.tasks.classifier import quadrant_label, quadrant_of_snapshot
from taskmatrix.domain.tasks.models import FieldChange, HistoryEntry, Task
from taskmatrix.domain.tasks.ports import BatchOp, Clock, IdGenerator, PersistenceBackend, history_path

logger = logging.getLogger(__name__)

WATCHED_FIELDS = ("title", "description", "priority", "status", "tags", "scheduledFor", "dueDate")
ACTIONS = (ACTION_CREATE, ACTION_UPDATE, ACTION_DELETE, ACTION_COMPLETE, ACTION_REOPEN)

Snapshot = Union[Task, Mapping[str, Any], None]


def _as_record(snapshot: Snapshot) -> Mapping[str, Any]:
    if snapshot is None:
        return {}
    if isinstance(snapshot, Task):
        return snapshot.to_record()
    return snapshot


def _serialized(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def diff(old: Snapshot, new: Snapshot) -> List[FieldChange]:
    """
    Changes between two snapshots of the same task.

    Fields are compared by their JSON form, so tags are compared as an ordered
    list: ['a', 'b'] -> ['b', 'a'] is a change. A missing key counts as null.
    A 'Quadrant' entry is appended when the classified quadrant moves, with
    the quadrant labels as values.
    """
    before, after = _as_record(old), _as_record(new)
    changes = []
    for name in WATCHED_FIELDS:
        old_value, new_value = before.get(name), after.get(name)
        if _serialized(old_value) != _serialized(new_value):
            changes.append(FieldChange(name, old_value, new_value))

    old_quadrant, new_quadrant = quadrant_of_snapshot(before), quadrant_of_snapshot(after)
    if old_quadrant != new_quadrant:
        changes.append(
            FieldChange(QUADRANT_CHANGE_FIELD, quadrant_label(old_quadrant), quadrant_label(new_quadrant))
        )
    return changes


class HistoryRecorder:
    def __init__(self, backend: PersistenceBackend, clock: Clock, ids: IdGenerator) -> None:
        self._backend = backend
        self._clock = clock
        self._ids = ids
        self._last_timestamp: Optional[datetime] = None

    diff = staticmethod(diff)

    def _next_timestamp(self) -> datetime:
        ts = self._clock.now()
        # strictly increasing within this recorder, even if the clock stalls
        if self._last_timestamp is not None and ts <= self._last_timestamp:
            ts = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = ts
        return ts

    def record(
        self,
        task: Task,
        action: str,
        actor_id: str,
        changes: Optional[Sequence[FieldChange]] = None,
    ) -> HistoryEntry:
        if action not in ACTIONS:
            raise ValidationError(f"Unknown history action {action!r}")
        return HistoryEntry(
            id=f"history-{self._ids.new_id()}",
            timestamp=self._next_timestamp(),
            action=action,
            actor_id=actor_id,
            ticket_data=task.to_record(),
            changes=tuple(changes) if changes is not None else None,
        )

    def entries_for(
        self,
        task: Task,
        action: str,
        actor_id: str,
        changes: Optional[Sequence[FieldChange]] = None,
    ) -> List[HistoryEntry]:
        """UPDATE with nothing changed produces no entry; every other action always does."""
        if action == ACTION_UPDATE and not changes:
            return []
        return [self.record(task, action, actor_id, changes)]

    @staticmethod
    def batch_op(entry: HistoryEntry) -> BatchOp:
        return BatchOp.set(history_path(entry.actor_id, entry.id), entry.to_record())

    async def append(self, entry: HistoryEntry) -> bool:
        try:
            await self._backend.set(history_path(entry.actor_id, entry.id), entry.to_record())
        except Exception:
            # an audit write never interrupts the mutation that produced it
            logger.warning(
                "History write failed action=%s task=%s entry=%s",
                entry.action,
                entry.task_id,
                entry.id,
                exc_info=True,
            )
            return False
        logger.debug("History appended action=%s task=%s entry=%s", entry.action, entry.task_id, entry.id)
        return True

    async def get_history(self, actor_id: str, task_id: Optional[str] = None) -> List[HistoryEntry]:
        """Newest first, optionally only the entries of one task."""
        records = await self._backend.get(history_path(actor_id)) or []
        entries = []
        for record in records:
            try:
                entry = HistoryEntry.from_record(record)
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping unreadable history record id=%s", record.get("id"))
                continue
            if task_id is None or entry.task_id == task_id:
                entries.append(entry)
        entries.sort(key=lambda e: e.timestamp, reverse=True)
        return entries

    async def export_json(self, actor_id: str) -> str:
        entries = await self.get_history(actor_id)
        return json.dumps([e.to_record() for e in entries], indent=2, ensure_ascii=False)
