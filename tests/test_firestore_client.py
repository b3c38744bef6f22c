"""
Tests for the Firestore document client, run against in-process stand-ins
for the Firestore handles.
"""
import asyncio
import threading

import pytest
from google.api_core import exceptions as api_exceptions

from taskmatrix.domain.common.errors import BackendError, BackendUnavailableError
from taskmatrix.domain.tasks.ports import BatchOp
from taskmatrix.infra.storage.firestore_client import MAX_BATCH_WRITES, FirestoreDocumentClient
from taskmatrix.infra.storage.remote_store import RemoteStore


class Snap:
    def __init__(self, path, data):
        self.id = path.rsplit("/", 1)[-1]
        self.exists = data is not None
        self._data = data

    def to_dict(self):
        return dict(self._data) if self._data is not None else None


class DocRef:
    def __init__(self, db, path):
        self.db = db
        self.path = path

    async def get(self):
        if self.db.error is not None:
            raise self.db.error
        return Snap(self.path, self.db.docs.get(self.path))


class CollectionRef:
    def __init__(self, db, path):
        self.db = db
        self.path = path

    async def stream(self):
        if self.db.error is not None:
            raise self.db.error
        for path in sorted(self.db.docs):
            if path.rsplit("/", 1)[0] == self.path:
                yield Snap(path, self.db.docs[path])


class Batch:
    def __init__(self, db):
        self.db = db
        self.writes = []

    def set(self, ref, value):
        self.writes.append(("set", ref.path, value))

    def delete(self, ref):
        self.writes.append(("delete", ref.path, None))

    async def commit(self):
        if self.db.error is not None:
            raise self.db.error
        for kind, path, value in self.writes:
            if kind == "set":
                self.db.docs[path] = dict(value)
            else:
                self.db.docs.pop(path, None)
        self.db.commits.append(list(self.writes))


class Db:
    def __init__(self):
        self.docs = {}
        self.commits = []
        self.error = None

    def document(self, path):
        return DocRef(self, path)

    def collection(self, path):
        return CollectionRef(self, path)

    def batch(self):
        return Batch(self)


class Watch:
    def __init__(self, callback):
        self.callback = callback
        self.active = True

    def unsubscribe(self):
        self.active = False


class WatchRef:
    def __init__(self, db, path):
        self.db = db
        self.path = path

    def on_snapshot(self, callback):
        watch = Watch(callback)
        self.db.watches.append((self.path, watch))
        return watch


class WatchDb:
    def __init__(self):
        self.watches = []

    def document(self, path):
        return WatchRef(self, path)

    def collection(self, path):
        return WatchRef(self, path)


def test_get_and_list_fill_in_document_ids():
    db = Db()
    db.docs["actors/a1/tasks/t1"] = {"title": "A"}
    db.docs["actors/a1/tasks/t2"] = {"id": "t2", "title": "B"}
    client = FirestoreDocumentClient(db)

    async def run():
        return (
            await client.get_document("actors/a1/tasks/t1"),
            await client.get_document("actors/a1/tasks/missing"),
            await client.list_documents("actors/a1/tasks"),
        )

    one, missing, listed = asyncio.run(run())
    assert one == {"id": "t1", "title": "A"}
    assert missing is None
    assert listed == [{"id": "t1", "title": "A"}, {"id": "t2", "title": "B"}]


def test_remote_store_writes_go_out_as_one_batch():
    db = Db()
    store = RemoteStore(FirestoreDocumentClient(db))

    async def run():
        await store.commit_batch(
            [
                BatchOp.set("actors/a1/tasks", [{"id": "t1"}, {"id": "t2"}]),
                BatchOp.set("actors/a1/history/h1", {"id": "h1", "action": "CREATE"}),
            ]
        )
        return await store.get("actors/a1/tasks")

    tasks = asyncio.run(run())
    assert len(db.commits) == 1
    assert [path for _, path, _ in db.commits[0]] == [
        "actors/a1/tasks/t1",
        "actors/a1/tasks/t2",
        "actors/a1/history/h1",
        "actors/a1/meta/taskOrder",
    ]
    assert tasks == [{"id": "t1"}, {"id": "t2"}]


def test_oversized_batch_is_rejected_before_sending():
    db = Db()
    client = FirestoreDocumentClient(db)
    writes = [BatchOp.set(f"actors/a1/tasks/t{i}", {"id": f"t{i}"}) for i in range(MAX_BATCH_WRITES + 1)]

    with pytest.raises(BackendError):
        asyncio.run(client.commit(writes))
    assert db.commits == []


@pytest.mark.parametrize(
    "error, expected",
    [
        (api_exceptions.ServiceUnavailable("down"), BackendUnavailableError),
        (api_exceptions.DeadlineExceeded("slow"), BackendUnavailableError),
        (api_exceptions.PermissionDenied("rules"), BackendUnavailableError),
        (api_exceptions.InvalidArgument("bad"), BackendError),
    ],
)
def test_api_errors_become_backend_errors(error, expected):
    db = Db()
    db.error = error
    client = FirestoreDocumentClient(db)

    with pytest.raises(expected):
        asyncio.run(client.commit([BatchOp.set("actors/a1/tasks/t1", {"id": "t1"})]))
    with pytest.raises(expected):
        asyncio.run(client.get_document("actors/a1/tasks/t1"))


def test_listener_callbacks_from_another_thread_reach_the_loop():
    db = Db()
    watch_db = WatchDb()
    client = FirestoreDocumentClient(db, watch_db)

    async def run():
        changed = asyncio.Event()
        calls = []

        def on_change():
            # must run on the loop's own thread
            calls.append(threading.get_ident())
            changed.set()

        unsubscribe = client.listen(["actors/a1/tasks/", "actors/a1/meta/taskOrder"], on_change)
        _, watch = watch_db.watches[0]
        thread = threading.Thread(target=watch.callback, args=([], [], None))
        thread.start()
        thread.join()
        await asyncio.wait_for(changed.wait(), timeout=1.0)
        unsubscribe()
        return calls, threading.get_ident()

    calls, loop_thread = asyncio.run(run())
    assert [path for path, _ in watch_db.watches] == ["actors/a1/tasks", "actors/a1/meta/taskOrder"]
    assert calls == [loop_thread]
    assert all(not watch.active for _, watch in watch_db.watches)


def test_listen_needs_a_listener_connection():
    client = FirestoreDocumentClient(Db())

    async def run():
        client.listen(["actors/a1/tasks/"], lambda: None)

    with pytest.raises(BackendError):
        asyncio.run(run())
