from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

Record = Dict[str, Any]
SnapshotCallback = Callable[[List[Record]], None]
Unsubscribe = Callable[[], None]


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime: ...


class IdGenerator(ABC):
    @abstractmethod
    def new_id(self) -> str: ...


class IdentityProvider(ABC):
    """Who is acting, and whether the session is backed by the remote store."""

    @property
    @abstractmethod
    def is_durable(self) -> bool: ...

    @abstractmethod
    def actor_id(self) -> Optional[str]:
        """Stable actor id, or None while the identity system is still starting."""


@dataclass(frozen=True)
class BatchOp:
    """One write inside an atomic batch. `value` is ignored for deletes."""

    kind: str  # 'set' | 'delete'
    path: str
    value: Union[Record, List[Record], None] = None

    @classmethod
    def set(cls, path: str, value: Union[Record, List[Record]]) -> "BatchOp":
        return cls("set", path, value)

    @classmethod
    def delete(cls, path: str) -> "BatchOp":
        return cls("delete", path)


class PersistenceBackend(ABC):
    """
    Uniform contract over the local and the remote store.

    Paths are slash separated. An odd number of segments names a collection
    (`actors/{actorId}/tasks`), an even number names a document inside it
    (`actors/{actorId}/tasks/{taskId}`). Collections are ordered.
    """

    name: str = "backend"

    @abstractmethod
    async def get(self, path: str) -> Union[Record, List[Record], None]: ...

    @abstractmethod
    async def set(self, path: str, value: Union[Record, List[Record]]) -> None:
        """
        Upsert a document, or merge an ordered list into a collection.

        A collection set upserts every listed document and moves them to the
        front of the order in the given sequence. Documents missing from the
        list are kept, after the listed ones. Only `delete` removes documents.
        """

    @abstractmethod
    async def delete(self, path: str) -> None: ...

    @abstractmethod
    async def commit_batch(self, ops: Sequence[BatchOp]) -> None:
        """Apply all ops or none of them."""

    @abstractmethod
    def subscribe(self, collection_path: str, on_snapshot: SnapshotCallback) -> Unsubscribe:
        """Deliver the ordered collection after every change, asynchronously via the event loop."""

    async def close(self) -> None:
        return None


def tasks_path(actor_id: str, task_id: Optional[str] = None) -> str:
    base = f"actors/{actor_id}/tasks"
    return f"{base}/{task_id}" if task_id else base


def history_path(actor_id: str, entry_id: Optional[str] = None) -> str:
    base = f"actors/{actor_id}/history"
    return f"{base}/{entry_id}" if entry_id else base


def split_path(path: str) -> tuple[str, Optional[str]]:
    """Split into (collection path, document id or None)."""
    parts = [p for p in path.strip("/").split("/") if p]
    if not parts:
        raise ValueError("empty path")
    if len(parts) % 2 == 1:
        return "/".join(parts), None
    return "/".join(parts[:-1]), parts[-1]
