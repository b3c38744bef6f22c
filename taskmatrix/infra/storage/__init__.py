# -*- coding: utf-8 -*-
"""Persistence backends. Both implement taskmatrix.domain.tasks.ports.PersistenceBackend."""

from taskmatrix.infra.storage.documents import DocumentClient, InMemoryDocumentClient
from taskmatrix.infra.storage.firestore_client import FirestoreDocumentClient
from taskmatrix.infra.storage.local_store import LocalStore
from taskmatrix.infra.storage.remote_store import RemoteStore

__all__ = [
    "DocumentClient",
    "FirestoreDocumentClient",
    "InMemoryDocumentClient",
    "LocalStore",
    "RemoteStore",
]
