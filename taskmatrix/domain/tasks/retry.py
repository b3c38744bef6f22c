from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from taskmatrix.constants import RETRY_BACKOFF_FACTOR, RETRY_BASE_DELAY, RETRY_MAX_ATTEMPTS, RETRY_MAX_DELAY
from taskmatrix.domain.tasks.models import HistoryEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryItem:
    """
    A write that failed. The task values are not captured: a retry writes
    whatever the overlay holds for these ids at retry time, so it can never
    push an older value over a newer local edit.
    """

    task_ids: Tuple[str, ...]
    whole_list: bool = False  # rewrite the full ordered collection
    history: Tuple[HistoryEntry, ...] = ()
    attempts: int = 1
    next_attempt_at: Optional[datetime] = None
    last_error: str = ""


@dataclass
class RetryPolicy:
    base_delay: float = RETRY_BASE_DELAY
    factor: float = RETRY_BACKOFF_FACTOR
    max_delay: float = RETRY_MAX_DELAY
    max_attempts: int = RETRY_MAX_ATTEMPTS

    def delay(self, attempts: int) -> timedelta:
        seconds = min(self.base_delay * (self.factor ** max(attempts - 1, 0)), self.max_delay)
        return timedelta(seconds=seconds)


@dataclass
class RetryQueue:
    policy: RetryPolicy = field(default_factory=RetryPolicy)
    _items: List[RetryItem] = field(default_factory=list)
    _gave_up: Dict[str, str] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self._items)

    def items(self) -> List[RetryItem]:
        return list(self._items)

    def failed_ids(self) -> set:
        ids = set(self._gave_up)
        for item in self._items:
            ids.update(item.task_ids)
        return ids

    def push(self, item: RetryItem, now: datetime) -> Optional[RetryItem]:
        """Schedule `item` after its backoff delay; returns None once it has used all attempts."""
        if item.attempts >= self.policy.max_attempts:
            logger.error(
                "Giving up on write ids=%s after %s attempts: %s",
                list(item.task_ids),
                item.attempts,
                item.last_error,
            )
            for task_id in item.task_ids:
                self._gave_up[task_id] = item.last_error
            return None
        scheduled = replace(item, next_attempt_at=now + self.policy.delay(item.attempts))
        self._items.append(scheduled)
        logger.info(
            "Write queued for retry ids=%s attempt=%s at=%s",
            list(item.task_ids),
            item.attempts + 1,
            scheduled.next_attempt_at.isoformat(),
        )
        return scheduled

    def pop_due(self, now: datetime) -> List[RetryItem]:
        due = [i for i in self._items if i.next_attempt_at is None or i.next_attempt_at <= now]
        self._items = [i for i in self._items if i not in due]
        return due

    def forget(self, task_ids) -> None:
        """A later write for these ids succeeded; their old failures no longer matter."""
        ids = set(task_ids)
        for task_id in ids:
            self._gave_up.pop(task_id, None)
        kept = []
        for item in self._items:
            remaining = tuple(t for t in item.task_ids if t not in ids)
            # a full-list rewrite or unsent history still has work left
            if remaining or item.whole_list or item.history:
                kept.append(replace(item, task_ids=remaining))
        self._items = kept
