"""
Sync coordinator: the seam between user intents and the persistence backend.

Every user operation computes the new task values, applies them to the
optimistic overlay before returning, and schedules the backend write as a
background asyncio task. Writes reach the backend in the order they were
issued. A failed write leaves the optimistic value visible, marks the task
failed and queues a retry; it is never rolled back. A loop started with
the coordinator replays due retries, so recovery does not wait for the next
user edit.

Remote snapshots that arrive within the echo window of a local write are
dropped so our own echo cannot briefly put the old values back.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from taskmatrix.constants import (
    ACTION_COMPLETE,
    ACTION_CREATE,
    ACTION_DELETE,
    ACTION_REOPEN,
    ACTION_UPDATE,
    BULK_DEBOUNCE_WINDOW_MS,
    ECHO_SUPPRESSION_WINDOW_MS,
    RETRY_POLL_INTERVAL,
    TASK_STATUS_COMPLETED,
    TASK_STATUS_TODO,
)
from taskmatrix.domain.common.errors import NotFoundError, ValidationError
from taskmatrix.domain.common.time import elapsed_ms
from taskmatrix.domain.tasks.classifier import QUADRANTS, apply_quadrant_move, classify, move_target
from taskmatrix.domain.tasks.history import HistoryRecorder
from taskmatrix.domain.tasks.models import FieldChange, HistoryEntry, SyncState, Task, TaskDraft
from taskmatrix.domain.tasks.overlay import OptimisticOverlay
from taskmatrix.domain.tasks.ports import (
    BatchOp,
    Clock,
    IdGenerator,
    PersistenceBackend,
    Record,
    Unsubscribe,
    tasks_path,
)
from taskmatrix.domain.tasks.retry import RetryItem, RetryQueue
from taskmatrix.domain.tasks.rules import (
    extract_hashtags,
    normalize_tags,
    validate_description,
    validate_due_date,
    validate_patch,
    validate_priority,
    validate_scheduled_for,
    validate_title,
)

logger = logging.getLogger(__name__)


class SyncCoordinator:
    """
    Task operations for one actor against one backend.

    All timing state (debounce, echo window, retries) lives on the instance,
    so several coordinators in one process never share it.
    """

    def __init__(
        self,
        backend: PersistenceBackend,
        actor_id: str,
        clock: Clock,
        ids: IdGenerator,
        *,
        recorder: Optional[HistoryRecorder] = None,
        overlay: Optional[OptimisticOverlay] = None,
        retry_queue: Optional[RetryQueue] = None,
        echo_window_ms: float = ECHO_SUPPRESSION_WINDOW_MS,
        debounce_window_ms: float = BULK_DEBOUNCE_WINDOW_MS,
        retry_poll_interval: float = RETRY_POLL_INTERVAL,
    ) -> None:
        self._backend = backend
        self._actor_id = actor_id
        self._clock = clock
        self._ids = ids
        self._recorder = recorder or HistoryRecorder(backend, clock, ids)
        self._overlay = overlay or OptimisticOverlay()
        self._retry = retry_queue or RetryQueue()
        self._echo_window_ms = echo_window_ms
        self._debounce_window_ms = debounce_window_ms
        self._retry_poll_interval = retry_poll_interval

        self._last_local_write_at: Optional[datetime] = None
        self._last_bulk_at: Optional[datetime] = None
        self._write_lock = asyncio.Lock()
        self._inflight: set = set()
        self._unsubscribe: Optional[Unsubscribe] = None
        self._retry_loop_task: Optional[asyncio.Task] = None

    # ---- properties ----

    @property
    def actor_id(self) -> str:
        return self._actor_id

    @property
    def backend(self) -> PersistenceBackend:
        return self._backend

    @property
    def overlay(self) -> OptimisticOverlay:
        return self._overlay

    @property
    def retry_queue(self) -> RetryQueue:
        return self._retry

    @property
    def last_local_write_at(self) -> Optional[datetime]:
        return self._last_local_write_at

    # ---- lifecycle ----

    async def start(self) -> List[Task]:
        """Load the current list and subscribe to remote snapshots."""
        records = await self._backend.get(tasks_path(self._actor_id)) or []
        self._overlay.replace_all(self._decode(records))
        self._unsubscribe = self._backend.subscribe(tasks_path(self._actor_id), self.handle_remote_snapshot)
        if self._retry_loop_task is None:
            self._retry_loop_task = asyncio.get_running_loop().create_task(self._retry_loop())
        logger.info(
            "Coordinator started actor=%s backend=%s tasks=%s",
            self._actor_id,
            self._backend.name,
            len(self._overlay.base_tasks()),
        )
        return self.tasks()

    async def flush(self) -> None:
        """Wait until every background write (and retry it triggered) has finished."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._retry_loop_task is not None:
            self._retry_loop_task.cancel()
            try:
                await self._retry_loop_task
            except asyncio.CancelledError:
                pass
            self._retry_loop_task = None
        await self.flush()

    # ---- reads ----

    def tasks(self) -> List[Task]:
        return self._overlay.view()

    def get_task(self, task_id: str) -> Optional[Task]:
        return self._overlay.get(task_id)

    def list_by_quadrant(self) -> Dict[str, List[Task]]:
        """Open tasks per quadrant, every quadrant present, list order kept."""
        grouped: Dict[str, List[Task]] = {q: [] for q in QUADRANTS}
        for task in self._overlay.view():
            if task.is_completed:
                continue
            grouped[classify(task)].append(task)
        return grouped

    def list_completed(self) -> List[Task]:
        done = [t for t in self._overlay.view() if t.is_completed]
        done.sort(key=lambda t: t.completed_at or t.updated_at, reverse=True)
        return done

    def completed_by_day(self) -> Dict[str, List[Task]]:
        grouped: Dict[str, List[Task]] = {}
        for task in self.list_completed():
            day = (task.completed_at or task.updated_at).date().isoformat()
            grouped.setdefault(day, []).append(task)
        return grouped

    def sync_state(self, task_id: str) -> SyncState:
        if task_id in self._retry.failed_ids():
            return SyncState.FAILED
        if self._overlay.is_pending(task_id):
            return SyncState.PENDING
        return SyncState.OK

    async def get_history(self, task_id: Optional[str] = None) -> List[HistoryEntry]:
        return await self._recorder.get_history(self._actor_id, task_id)

    async def export_history(self) -> str:
        return await self._recorder.export_json(self._actor_id)

    # ---- user operations ----

    def create_task(self, draft: Union[TaskDraft, Mapping[str, Any]]) -> Task:
        if isinstance(draft, Mapping):
            fields = validate_patch(draft)
            if "title" not in fields:
                raise ValidationError("Title is required.")
            draft = TaskDraft(**fields)
        elif not isinstance(draft, TaskDraft):
            raise ValidationError("Expected a single task draft.")

        title = validate_title(draft.title)
        tags = normalize_tags(draft.tags)
        tags = tags + tuple(t for t in extract_hashtags(title) if t not in tags)
        now = self._clock.now()
        task = Task(
            id=self._ids.new_id(),
            title=title,
            description=validate_description(draft.description),
            priority=validate_priority(draft.priority),
            tags=tags,
            status=TASK_STATUS_TODO,
            scheduled_for=validate_scheduled_for(draft.scheduled_for),
            due_date=validate_due_date(draft.due_date),
            created_at=now,
            updated_at=now,
            completed_at=None,
        )
        generations = self._overlay.apply_local([task])
        history = self._recorder.entries_for(task, ACTION_CREATE, self._actor_id)
        self._schedule_write([self._set_op(task)], [task.id], generations, history)
        logger.info("Task created id=%s quadrant=%s", task.id, classify(task))
        return task

    def update_task(self, task_id: str, patch: Mapping[str, Any]) -> Task:
        fields = validate_patch(patch)
        old = self._require(task_id)
        new = replace(old, **fields, updated_at=self._clock.now())
        return self._apply_update(old, new, ACTION_UPDATE)

    def delete_task(self, task_id: str) -> Task:
        old = self._require(task_id)
        entry = self._recorder.record(old, ACTION_DELETE, self._actor_id)
        generations = self._overlay.apply_delete(task_id)
        self._schedule_write(
            [BatchOp.delete(tasks_path(self._actor_id, task_id))],
            [task_id],
            generations,
            [entry],
            history_first=True,
        )
        logger.info("Task deleted id=%s", task_id)
        return old

    def toggle_complete(self, task: Union[Task, str]) -> Task:
        task_id = task.id if isinstance(task, Task) else task
        old = self._require(task_id)
        now = self._clock.now()
        if old.is_completed:
            new = replace(old, status=TASK_STATUS_TODO, completed_at=None, updated_at=now)
            action = ACTION_REOPEN
        else:
            new = replace(old, status=TASK_STATUS_COMPLETED, completed_at=now, updated_at=now)
            action = ACTION_COMPLETE
        changes = [FieldChange("status", old.status, new.status)]
        return self._apply_update(old, new, action, changes)

    def move(self, task_id: str, target_quadrant: str) -> Task:
        target = move_target(target_quadrant)
        old = self._require(task_id)
        if classify(old) == target:
            return old
        new = replace(apply_quadrant_move(old, target), updated_at=self._clock.now())
        logger.info("Task moved id=%s %s -> %s", task_id, classify(old), target)
        return self._apply_update(old, new, ACTION_UPDATE)

    def reorder(self, task_ids: Sequence[str]) -> List[Task]:
        ids = list(task_ids)
        self._overlay.reorder(ids)
        view = self._overlay.view()
        self._schedule_write(
            [self._list_op(view)],
            ids,
            {},
            [],
            whole_list=True,
            order_generation=self._overlay.order_generation(),
        )
        return view

    def bulk_update(self, tasks: Sequence[Task]) -> Sequence[Task]:
        """
        Upsert many tasks and adopt their order in one atomic write.

        Debounced: a call starting within the debounce window of the previous
        accepted call does nothing and hands `tasks` back unchanged.
        """
        if isinstance(tasks, (Task, str, Mapping)) or not all(isinstance(t, Task) for t in tasks):
            raise ValidationError("Bulk update expects a list of tasks.")
        now = self._clock.now()
        if self._last_bulk_at is not None and elapsed_ms(self._last_bulk_at, now) < self._debounce_window_ms:
            logger.debug("Bulk update debounced (%s tasks)", len(tasks))
            return tasks
        self._last_bulk_at = now

        stamped = []
        history: List[HistoryEntry] = []
        for task in tasks:
            old = self._overlay.get(task.id)
            if old is None:
                stamped.append(task)
                history.extend(self._recorder.entries_for(task, ACTION_CREATE, self._actor_id))
                continue
            changes = self._recorder.diff(old, task)
            if changes:
                task = replace(task, updated_at=now)
                history.extend(self._recorder.entries_for(task, ACTION_UPDATE, self._actor_id, changes))
            stamped.append(task)

        generations = self._overlay.apply_local(stamped)
        self._overlay.reorder([t.id for t in stamped])
        self._schedule_write(
            [self._list_op(self._overlay.view())] + [self._recorder.batch_op(e) for e in history],
            [t.id for t in stamped],
            generations,
            history,
            atomic=True,
            whole_list=True,
            order_generation=self._overlay.order_generation(),
        )
        return [self._overlay.get(t.id) for t in stamped]

    # ---- remote feed ----

    def handle_remote_snapshot(self, records: Iterable[Record]) -> bool:
        """Reconcile a pushed snapshot unless it falls inside the echo window. Returns True if merged."""
        now = self._clock.now()
        if self._last_local_write_at is not None:
            since = elapsed_ms(self._last_local_write_at, now)
            if since < self._echo_window_ms:
                logger.debug("Remote snapshot suppressed %.0fms after local write", since)
                return False
        self._overlay.reconcile_remote(self._decode(records))
        logger.debug("Remote snapshot merged (%s tasks)", len(self._overlay.base_tasks()))
        return True

    # ---- retries ----

    async def retry_failed(self) -> int:
        """Replay failed writes whose backoff has elapsed. Returns how many succeeded."""
        succeeded = 0
        for item in self._retry.pop_due(self._clock.now()):
            ops, generations, order_generation = self._retry_ops(item)
            async with self._write_lock:
                try:
                    await self._backend.commit_batch(ops)
                except Exception as e:
                    logger.warning("Retry failed ids=%s attempt=%s: %s", list(item.task_ids), item.attempts + 1, e)
                    self._retry.push(
                        replace(item, attempts=item.attempts + 1, last_error=str(e)),
                        self._clock.now(),
                    )
                    continue
                self._acknowledge(item.task_ids, generations, order_generation)
            logger.info("Retry succeeded ids=%s", list(item.task_ids))
            succeeded += 1
        return succeeded

    def _retry_ops(self, item: RetryItem):
        ops: List[BatchOp] = []
        generations: Dict[str, int] = {}
        order_generation = None
        if item.whole_list:
            ops.append(self._list_op(self._overlay.view()))
            order_generation = self._overlay.order_generation()
        for task_id in item.task_ids:
            generation = self._overlay.generation(task_id)
            if generation is not None:
                generations[task_id] = generation
            task = self._overlay.get(task_id)
            if task is not None:
                ops.append(self._set_op(task))
            elif self._overlay.is_deleted(task_id):
                ops.append(BatchOp.delete(tasks_path(self._actor_id, task_id)))
        ops.extend(self._recorder.batch_op(e) for e in item.history)
        return ops, generations, order_generation

    async def _retry_loop(self) -> None:
        """Drive the backoff: replay due retries even when no new write comes along."""
        while True:
            await asyncio.sleep(self._retry_poll_interval)
            if not self._has_due_retries():
                continue
            try:
                await self.retry_failed()
            except Exception as e:
                # keep polling; the failed item is already back in the queue or given up
                logger.error(f"Retry tick error: {e}", exc_info=True)

    # ---- internals ----

    def _require(self, task_id: str) -> Task:
        if not isinstance(task_id, str):
            raise ValidationError("Expected a task id.")
        task = self._overlay.get(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id!r} not found.")
        return task

    def _apply_update(
        self,
        old: Task,
        new: Task,
        action: str,
        changes: Optional[List[FieldChange]] = None,
    ) -> Task:
        if changes is None:
            changes = self._recorder.diff(old, new)
        generations = self._overlay.apply_local([new])
        history = self._recorder.entries_for(new, action, self._actor_id, changes)
        self._schedule_write([self._set_op(new)], [new.id], generations, history)
        return new

    def _set_op(self, task: Task) -> BatchOp:
        return BatchOp.set(tasks_path(self._actor_id, task.id), task.to_record())

    def _list_op(self, tasks: Sequence[Task]) -> BatchOp:
        return BatchOp.set(tasks_path(self._actor_id), [t.to_record() for t in tasks])

    def _decode(self, records: Iterable[Record]) -> List[Task]:
        tasks = []
        seen = set()
        for record in records or []:
            try:
                task = Task.from_record(record)
            except ValidationError as e:
                logger.warning("Skipping unreadable task record: %s", e)
                continue
            if task.id in seen:
                continue
            seen.add(task.id)
            tasks.append(task)
        return tasks

    def _schedule_write(
        self,
        ops: List[BatchOp],
        task_ids: Sequence[str],
        generations: Dict[str, int],
        history: Sequence[HistoryEntry],
        *,
        atomic: bool = False,
        whole_list: bool = False,
        history_first: bool = False,
        order_generation: Optional[int] = None,
    ) -> None:
        # the overlay already shows this change; echoes of it start now
        self._last_local_write_at = self._clock.now()
        self._spawn(
            self._persist(
                ops,
                tuple(task_ids),
                generations,
                tuple(history),
                atomic=atomic,
                whole_list=whole_list,
                history_first=history_first,
                order_generation=order_generation,
            )
        )

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _persist(
        self,
        ops: List[BatchOp],
        task_ids: tuple,
        generations: Dict[str, int],
        history: tuple,
        *,
        atomic: bool,
        whole_list: bool,
        history_first: bool,
        order_generation: Optional[int] = None,
    ) -> bool:
        async with self._write_lock:
            if not atomic and history_first:
                for entry in history:
                    await self._recorder.append(entry)
            try:
                if atomic:
                    await self._backend.commit_batch(ops)
                else:
                    for op in ops:
                        if op.kind == "delete":
                            await self._backend.delete(op.path)
                        else:
                            await self._backend.set(op.path, op.value)
            except Exception as e:
                logger.warning("Write failed ids=%s: %s", list(task_ids), e, exc_info=True)
                self._retry.push(
                    RetryItem(
                        task_ids=task_ids,
                        whole_list=whole_list,
                        # a delete already appended its entry before the write
                        history=() if history_first and not atomic else history,
                        last_error=str(e),
                    ),
                    self._clock.now(),
                )
                return False
            self._acknowledge(task_ids, generations, order_generation)
            if not atomic and not history_first:
                for entry in history:
                    await self._recorder.append(entry)

        if self._has_due_retries():
            self._spawn(self.retry_failed())
        return True

    def _has_due_retries(self) -> bool:
        now = self._clock.now()
        return any(i.next_attempt_at is None or i.next_attempt_at <= now for i in self._retry.items())

    def _acknowledge(
        self,
        task_ids: Sequence[str],
        generations: Dict[str, int],
        order_generation: Optional[int] = None,
    ) -> None:
        self._last_local_write_at = self._clock.now()
        self._overlay.clear_pending(list(generations), generations)
        if order_generation is not None:
            self._overlay.clear_pending_order(order_generation)
        self._retry.forget(task_ids)
        logger.debug("Write acknowledged ids=%s", list(task_ids))
