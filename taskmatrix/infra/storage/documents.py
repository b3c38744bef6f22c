"""
Document database client used by the remote store.

A document lives at a path with an even number of segments
(`actors/a1/tasks/t1`). Listeners are registered on path prefixes and are
told, through the event loop, that something under them changed.
"""
from __future__ import annotations

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from taskmatrix.domain.common.errors import BackendError, BackendUnavailableError
from taskmatrix.domain.tasks.ports import BatchOp, Record, Unsubscribe, split_path

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[], None]


class DocumentClient(ABC):
    @abstractmethod
    async def get_document(self, path: str) -> Optional[Record]: ...

    @abstractmethod
    async def list_documents(self, collection_path: str) -> List[Record]:
        """Documents directly inside the collection, in the store's own order."""

    @abstractmethod
    async def commit(self, writes: Sequence[BatchOp]) -> None:
        """Atomic multi-document write; every path must name a document."""

    @abstractmethod
    def listen(self, prefixes: Sequence[str], on_change: ChangeCallback) -> Unsubscribe:
        """Call `on_change`, on the event loop, after a change to a path under any prefix."""

    async def close(self) -> None:
        return None


class InMemoryDocumentClient(DocumentClient):
    """
    Process-local document database for tests. Nothing survives the process.

    Several RemoteStore instances can share one client to play several
    devices of the same account. `available` and `latency` let callers
    simulate an unreachable or slow server.
    """

    def __init__(self, *, latency: float = 0.0) -> None:
        self._docs: Dict[str, Record] = {}
        self._listeners: List[Tuple[Tuple[str, ...], ChangeCallback]] = []
        self.available = True
        self.latency = latency
        self.commits = 0

    async def _round_trip(self) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)
        if not self.available:
            raise BackendUnavailableError("document server unreachable")

    async def get_document(self, path: str) -> Optional[Record]:
        await self._round_trip()
        doc = self._docs.get(path)
        return copy.deepcopy(doc) if doc is not None else None

    async def list_documents(self, collection_path: str) -> List[Record]:
        await self._round_trip()
        out = []
        for path, doc in self._docs.items():
            collection, _ = split_path(path)
            if collection == collection_path:
                out.append(copy.deepcopy(doc))
        return out

    async def commit(self, writes: Sequence[BatchOp]) -> None:
        await self._round_trip()
        for op in writes:
            _, doc_id = split_path(op.path)
            if doc_id is None:
                raise BackendError(f"not a document path: {op.path}")
            if op.kind == "set" and not isinstance(op.value, dict):
                raise BackendError(f"document {op.path} must be a mapping")
            if op.kind not in ("set", "delete"):
                raise BackendError(f"unknown write {op.kind!r}")

        for op in writes:
            if op.kind == "delete":
                self._docs.pop(op.path, None)
            else:
                self._docs[op.path] = copy.deepcopy(op.value)
        self.commits += 1
        self._notify([op.path for op in writes])

    def listen(self, prefixes: Sequence[str], on_change: ChangeCallback) -> Unsubscribe:
        entry = (tuple(prefixes), on_change)
        self._listeners.append(entry)

        def unsubscribe() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return unsubscribe

    def _notify(self, paths: List[str]) -> None:
        loop = asyncio.get_running_loop()
        for prefixes, on_change in list(self._listeners):
            if any(p.startswith(prefix) for p in paths for prefix in prefixes):
                loop.call_soon(on_change)
