"""
DocumentClient over Google Cloud Firestore.

Reads and batched writes go through the asyncio `AsyncClient`. Firestore's
realtime listeners only exist on the sync `Client`, which calls back on its own
thread; those callbacks are handed to the event loop with
`call_soon_threadsafe`.

Credentials come from the usual Google sources (GOOGLE_APPLICATION_CREDENTIALS,
gcloud, metadata server).
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Optional, Sequence

from google.api_core import exceptions as api_exceptions
from google.auth import exceptions as auth_exceptions
from google.cloud import firestore

from taskmatrix.domain.common.errors import BackendError, BackendUnavailableError
from taskmatrix.domain.tasks.ports import BatchOp, Record, Unsubscribe, split_path
from taskmatrix.infra.storage.documents import ChangeCallback, DocumentClient

logger = logging.getLogger(__name__)

# Firestore rejects batches above this many writes
MAX_BATCH_WRITES = 500

_UNAVAILABLE = (
    api_exceptions.ServiceUnavailable,
    api_exceptions.DeadlineExceeded,
    api_exceptions.Unauthenticated,
    api_exceptions.PermissionDenied,
)


def _translate(e: Exception, what: str) -> BackendError:
    if isinstance(e, _UNAVAILABLE):
        return BackendUnavailableError(f"firestore {what}: {e}")
    return BackendError(f"firestore {what}: {e}")


class FirestoreDocumentClient(DocumentClient):
    def __init__(self, db: Any, watch_db: Any = None) -> None:
        self._db = db
        self._watch_db = watch_db
        self._watches: List[Any] = []

    @classmethod
    def connect(cls, project: str, database: str = "(default)") -> "FirestoreDocumentClient":
        try:
            db = firestore.AsyncClient(project=project, database=database)
            watch_db = firestore.Client(project=project, database=database)
        except auth_exceptions.DefaultCredentialsError as e:
            raise BackendUnavailableError(f"no Google credentials for project {project!r}: {e}") from e
        logger.info("Firestore client ready project=%s database=%s", project, database)
        return cls(db, watch_db)

    async def get_document(self, path: str) -> Optional[Record]:
        try:
            snap = await self._db.document(path).get()
        except api_exceptions.GoogleAPICallError as e:
            raise _translate(e, f"get {path}") from e
        if not snap.exists:
            return None
        doc = snap.to_dict() or {}
        doc.setdefault("id", snap.id)
        return doc

    async def list_documents(self, collection_path: str) -> List[Record]:
        out = []
        try:
            async for snap in self._db.collection(collection_path).stream():
                doc = snap.to_dict() or {}
                doc.setdefault("id", snap.id)
                out.append(doc)
        except api_exceptions.GoogleAPICallError as e:
            raise _translate(e, f"list {collection_path}") from e
        return out

    async def commit(self, writes: Sequence[BatchOp]) -> None:
        if len(writes) > MAX_BATCH_WRITES:
            raise BackendError(f"batch of {len(writes)} writes exceeds the Firestore limit of {MAX_BATCH_WRITES}")
        batch = self._db.batch()
        for op in writes:
            _, doc_id = split_path(op.path)
            if doc_id is None:
                raise BackendError(f"not a document path: {op.path}")
            ref = self._db.document(op.path)
            if op.kind == "delete":
                batch.delete(ref)
            elif op.kind == "set":
                batch.set(ref, op.value)
            else:
                raise BackendError(f"unknown write {op.kind!r}")
        try:
            await batch.commit()
        except api_exceptions.GoogleAPICallError as e:
            raise _translate(e, "commit") from e

    def listen(self, prefixes: Sequence[str], on_change: ChangeCallback) -> Unsubscribe:
        if self._watch_db is None:
            raise BackendError("this Firestore client was built without a listener connection")
        loop = asyncio.get_running_loop()

        def on_snapshot(docs, changes, read_time) -> None:
            # runs on the listener thread
            if not loop.is_closed():
                loop.call_soon_threadsafe(on_change)

        watches = []
        for prefix in prefixes:
            path = prefix.rstrip("/")
            _, doc_id = split_path(path)
            ref = self._watch_db.document(path) if doc_id is not None else self._watch_db.collection(path)
            watches.append(ref.on_snapshot(on_snapshot))
        self._watches.extend(watches)

        def unsubscribe() -> None:
            for watch in watches:
                if watch in self._watches:
                    self._watches.remove(watch)
                    watch.unsubscribe()

        return unsubscribe

    async def close(self) -> None:
        for watch in list(self._watches):
            watch.unsubscribe()
        self._watches.clear()
