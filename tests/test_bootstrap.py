"""
Tests for backend selection and coordinator wiring.
"""
import asyncio
import os
import tempfile
from pathlib import Path

from taskmatrix.bootstrap import StaticIdentity, build_coordinator, select_backend
from taskmatrix.config import Settings
from taskmatrix.domain.common.errors import BackendUnavailableError
from taskmatrix.domain.tasks.ports import IdentityProvider
from taskmatrix.infra.storage.documents import InMemoryDocumentClient
from taskmatrix.infra.storage.local_store import LocalStore
from taskmatrix.infra.storage.remote_store import RemoteStore

from .fakes import ManualClock, SequentialIds


class SlowIdentity(IdentityProvider):
    """Durable identity that becomes ready after `ready_after` polls (never, if None)."""

    def __init__(self, ready_after=None, actor_id: str = "u-42") -> None:
        self.ready_after = ready_after
        self.polls = 0
        self._actor_id = actor_id

    @property
    def is_durable(self) -> bool:
        return True

    def actor_id(self):
        self.polls += 1
        if self.ready_after is not None and self.polls > self.ready_after:
            return self._actor_id
        return None


class NamedBackend:
    def __init__(self, name: str) -> None:
        self.name = name


def _factories():
    made = []

    async def local():
        made.append("local")
        return NamedBackend("local")

    async def remote(actor_id):
        made.append(f"remote:{actor_id}")
        return NamedBackend("remote")

    return made, local, remote


def test_non_durable_identity_uses_local_without_waiting():
    made, local, remote = _factories()
    selection = asyncio.run(select_backend(StaticIdentity(), local, remote, timeout=5.0, poll_interval=1.0))

    assert selection.backend.name == "local"
    assert selection.actor_id == "local-user"
    assert not selection.fell_back
    assert made == ["local"]


def test_identity_ready_after_a_few_polls_uses_remote():
    made, local, remote = _factories()
    identity = SlowIdentity(ready_after=2)
    selection = asyncio.run(select_backend(identity, local, remote, timeout=1.0, poll_interval=0.001))

    assert selection.backend.name == "remote"
    assert selection.actor_id == "u-42"
    assert made == ["remote:u-42"]


def test_identity_never_ready_falls_back_to_local():
    made, local, remote = _factories()
    selection = asyncio.run(select_backend(SlowIdentity(), local, remote, timeout=0.05, poll_interval=0.01))

    assert selection.backend.name == "local"
    assert selection.actor_id == "local-user"
    assert selection.fell_back
    assert made == ["local"]


def test_unreachable_remote_falls_back_to_local():
    made, local, _ = _factories()

    async def remote(actor_id):
        raise BackendUnavailableError("down")

    selection = asyncio.run(
        select_backend(StaticIdentity("u-1", durable=True), local, remote, timeout=0.05, poll_interval=0.01)
    )
    assert selection.backend.name == "local"
    assert selection.fell_back


def _settings(db_path: Path, remote: bool) -> Settings:
    return Settings(
        db_path=db_path,
        actor_id="u-7",
        remote_enabled=remote,
        echo_window_ms=1000,
        debounce_window_ms=1000,
        bootstrap_timeout_ms=50,
        bootstrap_poll_ms=10,
        log_level="INFO",
    )


def test_build_coordinator_on_local_store():
    tmp = tempfile.mkdtemp()
    db_path = Path(tmp) / "nested" / "tasks.db"

    async def run():
        coordinator, selection = await build_coordinator(
            _settings(db_path, remote=False), clock=ManualClock(), ids=SequentialIds()
        )
        await coordinator.start()
        task = coordinator.create_task({"title": "Local"})
        await coordinator.close()
        return coordinator, selection, task, await coordinator.backend.get(f"actors/u-7/tasks/{task.id}")

    coordinator, selection, task, stored = asyncio.run(run())

    assert isinstance(selection.backend, LocalStore)
    assert coordinator.actor_id == "u-7"
    assert stored == task.to_record()
    assert os.path.exists(db_path)


def test_build_coordinator_on_remote_store():
    client = InMemoryDocumentClient()

    async def run():
        coordinator, selection = await build_coordinator(
            _settings(Path(tempfile.mkdtemp()) / "unused.db", remote=True),
            clock=ManualClock(),
            ids=SequentialIds(),
            client=client,
        )
        await coordinator.start()
        coordinator.create_task({"title": "Remote"})
        await coordinator.close()
        return selection

    selection = asyncio.run(run())
    assert isinstance(selection.backend, RemoteStore)
    assert selection.actor_id == "u-7"
    assert client.commits == 2


def test_remote_without_firestore_project_falls_back_to_local():
    tmp = tempfile.mkdtemp()

    async def run():
        coordinator, selection = await build_coordinator(
            _settings(Path(tmp) / "tasks.db", remote=True), clock=ManualClock(), ids=SequentialIds()
        )
        await coordinator.start()
        await coordinator.close()
        return coordinator, selection

    coordinator, selection = asyncio.run(run())
    assert isinstance(selection.backend, LocalStore)
    assert selection.fell_back
    assert coordinator.actor_id == "local-user"
