"""
In-Memory Document Store

Process-local implementation of the document store used in development
mode (ENV_MODE=development) and throughout the test suite.

Behavior:
    - Documents live in nested dicts keyed by collection and id
    - Reads and writes deep-copy, so callers never share mutable state
    - A single asyncio.Lock serializes writes, which makes ``commit`` atomic
"""

import asyncio
import copy
import logging
import uuid
from typing import Any, Optional, Sequence

from restaurant_dispatch.core.exceptions import (
    ConcurrentModificationError,
    DocumentExistsError,
    DocumentNotFoundError,
)
from restaurant_dispatch.services.store.base import (
    BaseDocumentStore,
    DocumentSnapshot,
    FieldFilter,
    WriteOp,
    apply_fields,
    matches_all,
    order_and_limit,
)

logger = logging.getLogger(__name__)


class InMemoryDocumentStore(BaseDocumentStore):
    """
    Dict-backed document store.

    Example:
        >>> store = InMemoryDocumentStore()
        >>> snap = await store.add("orders", {"status": "RECEIVED"})
        >>> await store.update("orders", snap.id, {"status": "PREPARING"},
        ...                    expected_version=snap.version)
    """

    def __init__(self):
        super().__init__()
        self._collections: dict[str, dict[str, tuple[dict[str, Any], int]]] = {}
        self._lock = asyncio.Lock()
        logger.info("InMemoryDocumentStore initialized")

    @property
    def provider_name(self) -> str:
        return "memory"

    def _snapshot(self, collection: str, doc_id: str) -> Optional[DocumentSnapshot]:
        entry = self._collections.get(collection, {}).get(doc_id)
        if entry is None:
            return None
        data, version = entry
        return DocumentSnapshot(collection, doc_id, copy.deepcopy(data), version)

    def _check_version(self, write: WriteOp) -> tuple[dict[str, Any], int]:
        entry = self._collections.get(write.collection, {}).get(write.doc_id)
        if entry is None:
            raise DocumentNotFoundError(write.collection, write.doc_id)
        data, version = entry
        if write.expected_version is not None and write.expected_version != version:
            raise ConcurrentModificationError(
                write.collection, write.doc_id, write.expected_version, version
            )
        return data, version

    async def get(self, collection: str, doc_id: str) -> Optional[DocumentSnapshot]:
        return self._snapshot(collection, doc_id)

    async def query(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[DocumentSnapshot]:
        snapshots = [
            self._snapshot(collection, doc_id)
            for doc_id, (data, _) in self._collections.get(collection, {}).items()
            if matches_all(data, filters)
        ]
        return order_and_limit(snapshots, order_by, descending, limit)

    async def add(
        self,
        collection: str,
        data: dict[str, Any],
        doc_id: Optional[str] = None,
    ) -> DocumentSnapshot:
        doc_id = doc_id or uuid.uuid4().hex
        async with self._lock:
            documents = self._collections.setdefault(collection, {})
            if doc_id in documents:
                raise DocumentExistsError(collection, doc_id)
            documents[doc_id] = (copy.deepcopy(data), 1)
            snapshot = self._snapshot(collection, doc_id)
        await self._publish([(collection, doc_id)])
        return snapshot

    async def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> DocumentSnapshot:
        async with self._lock:
            documents = self._collections.setdefault(collection, {})
            version = documents[doc_id][1] + 1 if doc_id in documents else 1
            documents[doc_id] = (copy.deepcopy(data), version)
            snapshot = self._snapshot(collection, doc_id)
        await self._publish([(collection, doc_id)])
        return snapshot

    async def update(
        self,
        collection: str,
        doc_id: str,
        fields: dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> DocumentSnapshot:
        snapshots = await self.commit([WriteOp(collection, doc_id, fields, expected_version)])
        return snapshots[0]

    async def commit(self, writes: Sequence[WriteOp]) -> list[DocumentSnapshot]:
        async with self._lock:
            # Validate every write before touching anything
            staged: dict[tuple[str, str], tuple[dict[str, Any], int]] = {}
            for write in writes:
                key = (write.collection, write.doc_id)
                if key in staged:
                    data, version = staged[key]
                else:
                    data, version = self._check_version(write)
                    version += 1
                staged[key] = (apply_fields(data, write.fields), version)

            for (collection, doc_id), entry in staged.items():
                self._collections[collection][doc_id] = entry

            snapshots = [self._snapshot(w.collection, w.doc_id) for w in writes]

        await self._publish([(w.collection, w.doc_id) for w in writes])
        return snapshots

    def clear(self) -> None:
        """Drop every document (tests and local resets)."""
        self._collections.clear()
