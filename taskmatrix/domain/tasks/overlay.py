"""
Optimistic overlay over the last known store contents.

The observable list is `base_tasks` in order, with every id that has a local
mutation in flight replaced by its pending value (or hidden, for a pending
delete). Tasks created locally and not yet seen in `base_tasks` follow at the
end in creation order. Everything here is synchronous; the coordinator owns
all awaiting.
"""
from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from taskmatrix.domain.common.errors import ValidationError
from taskmatrix.domain.tasks.models import Task


def _arrange(tasks: List[Task], order: Sequence[str]) -> List[Task]:
    """Put the tasks named in `order` into the slots they occupy, in that order."""
    positions = {t.id: i for i, t in enumerate(tasks)}
    listed = [tid for tid in order if tid in positions]
    slots = sorted(positions[tid] for tid in listed)
    out = list(tasks)
    for slot, tid in zip(slots, listed):
        out[slot] = tasks[positions[tid]]
    return out


class _Deleted:
    def __repr__(self) -> str:
        return "DELETED"


DELETED = _Deleted()

PendingValue = Union[Task, _Deleted]


class OptimisticOverlay:
    def __init__(self, base_tasks: Iterable[Task] = ()) -> None:
        self._base: List[Task] = []
        self._pending: Dict[str, PendingValue] = {}
        self._generations: Dict[str, int] = {}
        self._counter = 0
        # reorder in flight: (full order, reordered ids, generation)
        self._pending_order: Optional[Tuple[List[str], Set[str], int]] = None
        self.replace_all(base_tasks)

    # ---- reads ----

    def view(self) -> List[Task]:
        out = []
        seen = set()
        for task in self._base:
            seen.add(task.id)
            value = self._pending.get(task.id, task)
            if value is not DELETED:
                out.append(value)
        # pending dict keeps insertion order, so in-flight creations stay in creation order
        for task_id, value in self._pending.items():
            if task_id not in seen and value is not DELETED:
                out.append(value)
        if self._pending_order is not None:
            out = _arrange(out, self._pending_order[0])
        return out

    def get(self, task_id: str) -> Optional[Task]:
        if task_id in self._pending:
            value = self._pending[task_id]
            return None if value is DELETED else value
        for task in self._base:
            if task.id == task_id:
                return task
        return None

    def base_tasks(self) -> List[Task]:
        return list(self._base)

    def is_deleted(self, task_id: str) -> bool:
        return self._pending.get(task_id) is DELETED

    def is_pending(self, task_id: str) -> bool:
        if task_id in self._pending:
            return True
        return self._pending_order is not None and task_id in self._pending_order[1]

    def order_generation(self) -> Optional[int]:
        return self._pending_order[2] if self._pending_order is not None else None

    def generation(self, task_id: str) -> Optional[int]:
        return self._generations.get(task_id)

    # ---- local mutations ----

    def _mark(self, task_id: str, value: PendingValue) -> int:
        self._counter += 1
        self._pending[task_id] = value
        self._generations[task_id] = self._counter
        return self._counter

    def apply_local(self, tasks: Sequence[Task]) -> Dict[str, int]:
        """Overlay `tasks` immediately. Returns id -> generation for clear_pending."""
        ids = [t.id for t in tasks]
        if len(set(ids)) != len(ids):
            raise ValidationError("Duplicate task ids in one update.")
        return {task.id: self._mark(task.id, task) for task in tasks}

    def apply_delete(self, task_id: str) -> Dict[str, int]:
        return {task_id: self._mark(task_id, DELETED)}

    def clear_pending(
        self,
        ids: Iterable[str],
        generations: Optional[Dict[str, int]] = None,
        commit: bool = True,
    ) -> List[str]:
        """
        Drop pending entries once their write has been acknowledged.

        With `generations`, an entry is only cleared if no newer local
        mutation replaced it since. With `commit`, the acknowledged value is
        folded into the base list first so the view does not fall back to an
        older base value. Returns the ids actually cleared.
        """
        cleared = []
        for task_id in ids:
            if task_id not in self._pending:
                continue
            if generations is not None and self._generations.get(task_id) != generations.get(task_id):
                continue
            value = self._pending.pop(task_id)
            self._generations.pop(task_id, None)
            if commit:
                self._fold_into_base(task_id, value)
            cleared.append(task_id)
        return cleared

    def _fold_into_base(self, task_id: str, value: PendingValue) -> None:
        for i, task in enumerate(self._base):
            if task.id == task_id:
                if value is DELETED:
                    del self._base[i]
                else:
                    self._base[i] = value
                return
        if value is not DELETED:
            self._base.append(value)

    def reorder(self, task_ids: Sequence[str]) -> List[Task]:
        """
        Put the given tasks in the given order, reusing the slots they occupy.

        `task_ids` may be every visible id or a subset (e.g. one quadrant);
        tasks not listed keep their positions. The set of tasks never changes.
        """
        if len(set(task_ids)) != len(task_ids):
            raise ValidationError("Duplicate ids in reorder.")

        current = self.view()
        positions = {t.id: i for i, t in enumerate(current)}
        unknown = [tid for tid in task_ids if tid not in positions]
        if unknown:
            raise ValidationError(f"Unknown task ids in reorder: {unknown}")

        reordered = _arrange(current, task_ids)

        # base keeps every visible task in the new order; pending values are
        # still authoritative for their ids, and hidden deletes stay pending
        self._base = [self._base_value(t) for t in reordered]
        # the order stays pending until acknowledged, so a snapshot taken
        # before our write cannot put the old order back
        self._counter += 1
        self._pending_order = ([t.id for t in reordered], set(task_ids), self._counter)
        return reordered

    def clear_pending_order(self, generation: Optional[int]) -> bool:
        """Fold the pending order into base once its write is acknowledged, unless a newer reorder replaced it."""
        if self._pending_order is None or self._pending_order[2] != generation:
            return False
        self._base = _arrange(self._base, self._pending_order[0])
        self._pending_order = None
        return True

    def _base_value(self, task: Task) -> Task:
        if task.id in self._pending:
            for base_task in self._base:
                if base_task.id == task.id:
                    return base_task
        # not in base yet (in-flight creation): it takes its slot with the pending value
        return task

    # ---- remote ----

    def reconcile_remote(self, remote_tasks: Iterable[Task]) -> List[Task]:
        """Replace the base list with what the store reported; pending entries keep overriding."""
        self.replace_all(remote_tasks)
        return self.view()

    def replace_all(self, tasks: Iterable[Task]) -> None:
        base = list(tasks)
        ids = [t.id for t in base]
        if len(set(ids)) != len(ids):
            raise ValidationError("Duplicate task ids in task list.")
        self._base = base
