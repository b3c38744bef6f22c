"""
Startup wiring: pick the persistence backend once and build a coordinator on it.

A durable identity means the remote store is wanted. Its actor id may not be
known yet when we start, so selection waits a bounded time for it and falls
back to the local store when it never shows up, no Firestore project is
configured, or the remote cannot be reached.
"""
from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple

from taskmatrix.config import Settings
from taskmatrix.constants import BOOTSTRAP_POLL_INTERVAL_MS, BOOTSTRAP_TIMEOUT_MS, LOCAL_ACTOR_ID
from taskmatrix.domain.common.errors import BackendError, BackendUnavailableError
from taskmatrix.domain.common.time import to_iso
from taskmatrix.domain.tasks.ports import Clock, IdentityProvider, IdGenerator, PersistenceBackend, tasks_path
from taskmatrix.domain.tasks.sync import SyncCoordinator
from taskmatrix.infra.clock.system_clock import SystemClock
from taskmatrix.infra.db.connection import Database
from taskmatrix.infra.db.schema_version import apply_migrations
from taskmatrix.infra.ids.uuid_gen import UuidGenerator
from taskmatrix.infra.storage.documents import DocumentClient
from taskmatrix.infra.storage.firestore_client import FirestoreDocumentClient
from taskmatrix.infra.storage.local_store import LocalStore
from taskmatrix.infra.storage.remote_store import RemoteStore, order_doc_path

logger = logging.getLogger(__name__)

LocalFactory = Callable[[], Awaitable[PersistenceBackend]]
RemoteFactory = Callable[[str], Awaitable[PersistenceBackend]]


class StaticIdentity(IdentityProvider):
    """Identity known up front. Without an actor id it is the anonymous local user."""

    def __init__(self, actor_id: Optional[str] = None, durable: bool = False) -> None:
        self._actor_id = actor_id
        self._durable = durable

    @property
    def is_durable(self) -> bool:
        return self._durable

    def actor_id(self) -> Optional[str]:
        return self._actor_id


@dataclass(frozen=True)
class Selection:
    backend: PersistenceBackend
    actor_id: str
    fell_back: bool = False


async def select_backend(
    identity: IdentityProvider,
    local_factory: LocalFactory,
    remote_factory: RemoteFactory,
    timeout: float = BOOTSTRAP_TIMEOUT_MS / 1000,
    poll_interval: float = BOOTSTRAP_POLL_INTERVAL_MS / 1000,
) -> Selection:
    if not identity.is_durable:
        return Selection(await local_factory(), identity.actor_id() or LOCAL_ACTOR_ID)

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    actor_id = identity.actor_id()
    while actor_id is None and loop.time() < deadline:
        await asyncio.sleep(poll_interval)
        actor_id = identity.actor_id()

    if actor_id is None:
        logger.warning("Identity not ready after %.1fs; using local store", timeout)
        return Selection(await local_factory(), LOCAL_ACTOR_ID, fell_back=True)

    try:
        backend = await remote_factory(actor_id)
    except BackendError as e:
        logger.warning("Remote store unavailable (%s); using local store", e)
        return Selection(await local_factory(), LOCAL_ACTOR_ID, fell_back=True)

    logger.info("Using %s store for actor=%s", backend.name, actor_id)
    return Selection(backend, actor_id)


async def open_local_store(db_path, clock: Clock) -> LocalStore:
    os.makedirs(os.path.dirname(str(db_path)) or ".", exist_ok=True)
    db = Database(str(db_path))
    await apply_migrations(db, to_iso(clock.now()))
    return LocalStore(db, clock)


async def open_remote_store(client: DocumentClient, actor_id: str) -> RemoteStore:
    # one round trip so an unreachable server shows up here, not on the first write
    await client.get_document(order_doc_path(tasks_path(actor_id)))
    return RemoteStore(client)


def remote_factory_for(settings: Settings, client: Optional[DocumentClient] = None) -> RemoteFactory:
    """Firestore from settings unless a client is given; no project configured means no remote."""

    async def factory(actor_id: str) -> PersistenceBackend:
        doc_client = client
        if doc_client is None:
            if not settings.firestore_project:
                raise BackendUnavailableError("TASKMATRIX_FIRESTORE_PROJECT is not set")
            doc_client = FirestoreDocumentClient.connect(settings.firestore_project, settings.firestore_database)
        return await open_remote_store(doc_client, actor_id)

    return factory


async def build_coordinator(
    settings: Settings,
    identity: Optional[IdentityProvider] = None,
    *,
    clock: Optional[Clock] = None,
    ids: Optional[IdGenerator] = None,
    client: Optional[DocumentClient] = None,
) -> Tuple[SyncCoordinator, Selection]:
    clock = clock or SystemClock()
    ids = ids or UuidGenerator()
    if identity is None:
        identity = StaticIdentity(settings.actor_id, durable=settings.remote_enabled)
    selection = await select_backend(
        identity,
        lambda: open_local_store(settings.db_path, clock),
        remote_factory_for(settings, client),
        timeout=settings.bootstrap_timeout_ms / 1000,
        poll_interval=settings.bootstrap_poll_ms / 1000,
    )
    coordinator = SyncCoordinator(
        selection.backend,
        selection.actor_id,
        clock,
        ids,
        echo_window_ms=settings.echo_window_ms,
        debounce_window_ms=settings.debounce_window_ms,
    )
    return coordinator, selection
