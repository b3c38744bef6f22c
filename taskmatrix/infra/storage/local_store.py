"""
Local durable store: the whole data set is one JSON blob in SQLite.

The blob maps collection paths to ordered lists of documents:

    {"actors/local-user/tasks": [{...}, ...], "actors/local-user/history": [...]}

Every write reads the blob, applies its ops in memory and stores it back in a
single statement, so a batch lands completely or not at all.
"""
from __future__ import annotations

import asyncio
import copy
import json
import logging
from typing import Any, Dict, List, Sequence, Set

from taskmatrix.constants import LOCAL_BLOB_KEY
from taskmatrix.domain.common.errors import BackendError
from taskmatrix.domain.common.time import to_iso
from taskmatrix.domain.tasks.ports import (
    BatchOp,
    Clock,
    PersistenceBackend,
    SnapshotCallback,
    Unsubscribe,
    split_path,
)
from taskmatrix.infra.db.connection import Database

logger = logging.getLogger(__name__)

Tree = Dict[str, List[Dict[str, Any]]]


def read_path(tree: Tree, path: str) -> Any:
    collection, doc_id = split_path(path)
    docs = tree.get(collection)
    if doc_id is None:
        return copy.deepcopy(docs) if docs is not None else None
    for doc in docs or []:
        if doc.get("id") == doc_id:
            return copy.deepcopy(doc)
    return None


def apply_op(tree: Tree, op: BatchOp) -> str:
    """Apply one op to `tree` in place. Returns the collection it touched."""
    collection, doc_id = split_path(op.path)
    if op.kind == "delete":
        if doc_id is None:
            tree.pop(collection, None)
        else:
            tree[collection] = [d for d in tree.get(collection, []) if d.get("id") != doc_id]
        return collection

    if op.kind != "set":
        raise BackendError(f"unknown batch op {op.kind!r}")

    if doc_id is None:
        if not isinstance(op.value, list) or not all(isinstance(d, dict) and d.get("id") for d in op.value):
            raise BackendError(f"collection {collection} must be set to a list of documents with ids")
        listed = copy.deepcopy(op.value)
        listed_ids = {d["id"] for d in listed}
        # merge, never drop: unlisted documents keep their relative order after the listed ones
        tree[collection] = listed + [d for d in tree.get(collection, []) if d.get("id") not in listed_ids]
        return collection

    if not isinstance(op.value, dict):
        raise BackendError(f"document {op.path} must be a mapping")
    if op.value.get("id", doc_id) != doc_id:
        raise BackendError(f"document id does not match path {op.path}")
    doc = copy.deepcopy(op.value)
    doc.setdefault("id", doc_id)
    docs = tree.setdefault(collection, [])
    for i, existing in enumerate(docs):
        if existing.get("id") == doc_id:
            docs[i] = doc  # upsert keeps the position
            break
    else:
        docs.append(doc)
    return collection


class LocalStore(PersistenceBackend):
    name = "local"

    def __init__(self, db: Database, clock: Clock, key: str = LOCAL_BLOB_KEY) -> None:
        self._db = db
        self._clock = clock
        self._key = key
        self._lock = asyncio.Lock()
        self._subscribers: Dict[str, List[SnapshotCallback]] = {}

    async def _load(self) -> Tree:
        row = await self._db.fetchone("SELECT value FROM blobs WHERE key = ?;", (self._key,))
        if not row:
            return {}
        try:
            data = json.loads(row["value"])
        except json.JSONDecodeError as e:
            raise BackendError(f"local blob {self._key!r} is not valid JSON") from e
        return data if isinstance(data, dict) else {}

    async def _save(self, tree: Tree) -> None:
        await self._db.execute(
            """
            INSERT INTO blobs(key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at;
            """,
            (self._key, json.dumps(tree, ensure_ascii=False), to_iso(self._clock.now())),
        )

    async def get(self, path: str) -> Any:
        return read_path(await self._load(), path)

    async def set(self, path: str, value: Any) -> None:
        await self.commit_batch([BatchOp.set(path, value)])

    async def delete(self, path: str) -> None:
        await self.commit_batch([BatchOp.delete(path)])

    async def commit_batch(self, ops: Sequence[BatchOp]) -> None:
        if not ops:
            return
        async with self._lock:
            tree = await self._load()
            touched: Set[str] = set()
            for op in ops:
                touched.add(apply_op(tree, op))
            await self._save(tree)
        logger.debug("Local blob written ops=%s collections=%s", len(ops), sorted(touched))
        self._notify(touched, tree)

    def subscribe(self, collection_path: str, on_snapshot: SnapshotCallback) -> Unsubscribe:
        callbacks = self._subscribers.setdefault(collection_path, [])
        callbacks.append(on_snapshot)

        def unsubscribe() -> None:
            if on_snapshot in callbacks:
                callbacks.remove(on_snapshot)

        return unsubscribe

    def _notify(self, touched: Set[str], tree: Tree) -> None:
        loop = asyncio.get_running_loop()
        for collection in touched:
            for callback in list(self._subscribers.get(collection, [])):
                loop.call_soon(callback, copy.deepcopy(tree.get(collection, [])))
