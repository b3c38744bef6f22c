"""
Remote document store: one document per task and per history entry.

    actors/{actorId}/tasks/{taskId}
    actors/{actorId}/history/{entryId}
    actors/{actorId}/meta/taskOrder      {"ids": [...]}

Task records stay exactly as the model writes them; list order lives in the
separate taskOrder document, which every task write updates in the same
commit. Setting a whole collection upserts the listed documents and puts them
first in the order; documents it does not list are left alone, so a device
with a stale list never removes what another device added.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

from taskmatrix.domain.common.errors import BackendError
from taskmatrix.domain.tasks.ports import (
    BatchOp,
    PersistenceBackend,
    Record,
    SnapshotCallback,
    Unsubscribe,
    split_path,
)
from taskmatrix.infra.storage.documents import DocumentClient

logger = logging.getLogger(__name__)

ORDERED_COLLECTION = "tasks"
ORDER_DOC = "taskOrder"


def order_doc_path(collection_path: str) -> Optional[str]:
    parent, _, name = collection_path.rpartition("/")
    if name != ORDERED_COLLECTION or not parent:
        return None
    return f"{parent}/meta/{ORDER_DOC}"


def sort_by_order(docs: List[Record], order: Sequence[str]) -> List[Record]:
    """Docs named in `order` first, in that order; the rest after, as stored."""
    rank = {doc_id: i for i, doc_id in enumerate(order)}
    return sorted(docs, key=lambda d: rank.get(d.get("id"), len(rank)))


class RemoteStore(PersistenceBackend):
    name = "remote"

    def __init__(self, client: DocumentClient) -> None:
        self._client = client
        self._deliveries: set = set()

    async def _order(self, collection_path: str) -> Optional[List[str]]:
        path = order_doc_path(collection_path)
        if path is None:
            return None
        doc = await self._client.get_document(path)
        return list(doc.get("ids") or []) if doc else []

    async def get(self, path: str) -> Any:
        collection, doc_id = split_path(path)
        if doc_id is not None:
            return await self._client.get_document(path)
        docs = await self._client.list_documents(collection)
        if not docs:
            return None
        order = await self._order(collection)
        return sort_by_order(docs, order) if order is not None else docs

    async def set(self, path: str, value: Any) -> None:
        await self.commit_batch([BatchOp.set(path, value)])

    async def delete(self, path: str) -> None:
        await self.commit_batch([BatchOp.delete(path)])

    async def commit_batch(self, ops: Sequence[BatchOp]) -> None:
        """Translate collection-level ops into document writes and send them as one commit."""
        if not ops:
            return
        writes: List[BatchOp] = []
        orders: Dict[str, List[str]] = {}
        existing: Dict[str, List[str]] = {}

        async def current_ids(collection: str) -> List[str]:
            if collection not in existing:
                existing[collection] = [d.get("id") for d in await self._client.list_documents(collection)]
            return existing[collection]

        async def current_order(collection: str) -> Optional[List[str]]:
            if order_doc_path(collection) is None:
                return None
            if collection not in orders:
                stored = await self._order(collection)
                known = await current_ids(collection)
                # ids the order doc lost track of keep their stored position at the end
                orders[collection] = list(stored) + [i for i in known if i not in stored]
            return orders[collection]

        for op in ops:
            collection, doc_id = split_path(op.path)
            if op.kind not in ("set", "delete"):
                raise BackendError(f"unknown batch op {op.kind!r}")

            if doc_id is not None:
                if op.kind == "set" and (not isinstance(op.value, dict) or op.value.get("id", doc_id) != doc_id):
                    raise BackendError(f"document {op.path} must be a mapping with a matching id")
                writes.append(op)
                if collection in existing:
                    ids = existing[collection]
                    if op.kind == "delete" and doc_id in ids:
                        ids.remove(doc_id)
                    elif op.kind == "set" and doc_id not in ids:
                        ids.append(doc_id)
                order = await current_order(collection)
                if order is not None:
                    if op.kind == "delete" and doc_id in order:
                        order.remove(doc_id)
                    elif op.kind == "set" and doc_id not in order:
                        order.append(doc_id)
                continue

            # whole collection
            ids = await current_ids(collection)
            if op.kind == "delete":
                writes.extend(BatchOp.delete(f"{collection}/{i}") for i in ids)
                existing[collection] = []
                if order_doc_path(collection) is not None:
                    orders[collection] = []
                continue
            if not isinstance(op.value, list) or not all(isinstance(d, dict) and d.get("id") for d in op.value):
                raise BackendError(f"collection {collection} must be set to a list of documents with ids")
            # merge: listed documents are upserted, nothing else is touched
            listed = [d["id"] for d in op.value]
            writes.extend(BatchOp.set(f"{collection}/{d['id']}", d) for d in op.value)
            ids.extend(i for i in listed if i not in ids)
            order = await current_order(collection)
            if order is not None:
                orders[collection] = listed + [i for i in order if i not in listed]

        for collection, order in orders.items():
            writes.append(BatchOp.set(order_doc_path(collection), {"id": ORDER_DOC, "ids": order}))

        await self._client.commit(writes)
        logger.debug("Remote commit ops=%s writes=%s", len(ops), len(writes))

    def subscribe(self, collection_path: str, on_snapshot: SnapshotCallback) -> Unsubscribe:
        prefixes = [collection_path.rstrip("/") + "/"]
        order_path = order_doc_path(collection_path)
        if order_path:
            prefixes.append(order_path)

        async def deliver() -> None:
            try:
                records = await self.get(collection_path)
            except BackendError as e:
                logger.warning("Snapshot fetch failed for %s: %s", collection_path, e)
                return
            on_snapshot(records or [])

        def on_change() -> None:
            task = asyncio.get_running_loop().create_task(deliver())
            self._deliveries.add(task)
            task.add_done_callback(self._deliveries.discard)

        return self._client.listen(prefixes, on_change)

    async def close(self) -> None:
        if self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)
        await self._client.close()
