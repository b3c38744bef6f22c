# tests/fakes.py

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Sequence, Type

from taskmatrix.domain.common.errors import BackendError
from taskmatrix.domain.tasks.ports import BatchOp, Clock, IdGenerator, PersistenceBackend, SnapshotCallback

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class ManualClock(Clock):
    """Clock that only moves when a test says so."""

    def __init__(self, start: datetime = T0) -> None:
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, ms: float) -> None:
        self.current = self.current + timedelta(milliseconds=ms)


class SequentialIds(IdGenerator):
    def __init__(self, prefix: str = "id") -> None:
        self.prefix = prefix
        self.n = 0

    def new_id(self) -> str:
        self.n += 1
        return f"{self.prefix}-{self.n}"


class FlakyBackend(PersistenceBackend):
    """
    Wraps a real backend and fails chosen writes.

    - `fail_writes` fails every write
    - `fail_when(path)` fails writes whose path matches
    - `error` is the exception type raised
    - every attempted write is recorded in `attempts`
    """

    def __init__(
        self,
        inner: PersistenceBackend,
        fail_when: Optional[Callable[[str], bool]] = None,
        error: Type[Exception] = BackendError,
    ) -> None:
        self.inner = inner
        self.name = f"flaky-{inner.name}"
        self.fail_writes = False
        self.fail_when = fail_when
        self.error = error
        self.attempts: list[list[BatchOp]] = []

    def _check(self, ops: Sequence[BatchOp]) -> None:
        self.attempts.append(list(ops))
        if self.fail_writes:
            raise self.error("write refused")
        if self.fail_when is not None and any(self.fail_when(op.path) for op in ops):
            raise self.error("write refused for path")

    async def get(self, path: str) -> Any:
        return await self.inner.get(path)

    async def set(self, path: str, value: Any) -> None:
        self._check([BatchOp.set(path, value)])
        await self.inner.set(path, value)

    async def delete(self, path: str) -> None:
        self._check([BatchOp.delete(path)])
        await self.inner.delete(path)

    async def commit_batch(self, ops: Sequence[BatchOp]) -> None:
        self._check(ops)
        await self.inner.commit_batch(ops)

    def subscribe(self, collection_path: str, on_snapshot: SnapshotCallback):
        return self.inner.subscribe(collection_path, on_snapshot)
