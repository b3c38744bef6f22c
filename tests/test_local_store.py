"""
Tests for the SQLite blob store. Each test uses its own temp database file.
"""
import asyncio
import json
import os
import tempfile

import pytest

from taskmatrix.domain.common.errors import BackendError
from taskmatrix.domain.tasks.ports import BatchOp
from taskmatrix.infra.db.connection import Database
from taskmatrix.infra.db.schema_version import apply_migrations
from taskmatrix.infra.storage.local_store import LocalStore

from .fakes import ManualClock

TASKS = "actors/local-user/tasks"
HISTORY = "actors/local-user/history"


def _temp_db_path() -> str:
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    return path


async def _open_store(path: str) -> LocalStore:
    db = Database(path)
    await apply_migrations(db, "2026-03-02T09:00:00+00:00")
    return LocalStore(db, ManualClock())


def test_migrations_apply_once():
    path = _temp_db_path()
    try:
        async def run():
            db = Database(path)
            first = await apply_migrations(db, "2026-03-02T09:00:00+00:00")
            second = await apply_migrations(db, "2026-03-02T09:00:00+00:00")
            return first, second

        assert asyncio.run(run()) == (1, 0)
    finally:
        os.unlink(path)


def test_documents_keep_position_on_upsert():
    path = _temp_db_path()
    try:
        async def run():
            store = await _open_store(path)
            await store.set(f"{TASKS}/a", {"id": "a", "title": "A"})
            await store.set(f"{TASKS}/b", {"id": "b", "title": "B"})
            await store.set(f"{TASKS}/a", {"id": "a", "title": "A2"})
            await store.delete(f"{TASKS}/missing")
            return await store.get(TASKS), await store.get(f"{TASKS}/a"), await store.get(HISTORY)

        tasks, one, history = asyncio.run(run())
        assert [t["title"] for t in tasks] == ["A2", "B"]
        assert one == {"id": "a", "title": "A2"}
        assert history is None
    finally:
        os.unlink(path)


def test_collection_set_merges_and_keeps_unlisted_documents():
    path = _temp_db_path()
    try:
        async def run():
            store = await _open_store(path)
            await store.set(TASKS, [{"id": "a"}, {"id": "b"}, {"id": "c"}])
            await store.set(TASKS, [{"id": "c", "title": "C"}, {"id": "a"}])
            return await store.get(TASKS)

        assert asyncio.run(run()) == [{"id": "c", "title": "C"}, {"id": "a"}, {"id": "b"}]
    finally:
        os.unlink(path)


def test_blob_is_one_row_under_fixed_key():
    path = _temp_db_path()
    try:
        async def run():
            store = await _open_store(path)
            await store.set(TASKS, [{"id": "a"}, {"id": "b"}])
            row = await Database(path).fetchone("SELECT key, value FROM blobs;")
            return row["key"], json.loads(row["value"])

        key, value = asyncio.run(run())
        assert key == "taskMatrix"
        assert value == {TASKS: [{"id": "a"}, {"id": "b"}]}
    finally:
        os.unlink(path)


def test_failed_batch_leaves_blob_unchanged():
    path = _temp_db_path()
    try:
        async def run():
            store = await _open_store(path)
            await store.set(TASKS, [{"id": "a", "title": "A"}])
            with pytest.raises(BackendError):
                await store.commit_batch(
                    [
                        BatchOp.set(f"{TASKS}/b", {"id": "b"}),
                        BatchOp.set(f"{HISTORY}/h1", {"id": "other"}),
                    ]
                )
            return await store.get(TASKS), await store.get(HISTORY)

        tasks, history = asyncio.run(run())
        assert tasks == [{"id": "a", "title": "A"}]
        assert history is None
    finally:
        os.unlink(path)


def test_subscribers_get_the_ordered_collection():
    path = _temp_db_path()
    try:
        async def run():
            store = await _open_store(path)
            seen = []
            unsubscribe = store.subscribe(TASKS, seen.append)
            await store.commit_batch(
                [
                    BatchOp.set(TASKS, [{"id": "b"}, {"id": "a"}]),
                    BatchOp.set(f"{HISTORY}/h1", {"id": "h1"}),
                ]
            )
            delivered_inline = list(seen)
            await asyncio.sleep(0)
            unsubscribe()
            await store.set(f"{TASKS}/c", {"id": "c"})
            await asyncio.sleep(0)
            return delivered_inline, seen

        delivered_inline, seen = asyncio.run(run())
        assert delivered_inline == []
        assert seen == [[{"id": "b"}, {"id": "a"}]]
    finally:
        os.unlink(path)


def test_corrupt_blob_raises_backend_error():
    path = _temp_db_path()
    try:
        async def run():
            store = await _open_store(path)
            await Database(path).execute(
                "INSERT INTO blobs(key, value, updated_at) VALUES ('taskMatrix', '{not json', 'x');"
            )
            await store.get(TASKS)

        with pytest.raises(BackendError):
            asyncio.run(run())
    finally:
        os.unlink(path)
