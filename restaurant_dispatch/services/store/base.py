"""
Document Store Abstract Base Class

Defines the interface contract for the keyed-record store the dispatch core
runs against. Both InMemoryDocumentStore and SQLDocumentStore implement it.

Semantics:
    - Every document carries a monotonically increasing ``version``;
      ``update`` and ``commit`` accept an expected version and fail with
      ConcurrentModificationError when it no longer matches.
    - ``commit`` applies several writes atomically (all or nothing).
    - Field updates accept dotted paths ("timestamps.readyAt") and the
      DELETE_FIELD sentinel to remove a key.
    - Subscribers receive the full matching result set after every change
      to the subscribed collection; ``prime_subscription`` reads the
      current state for the initial render.
"""

import asyncio
import copy
import itertools
import logging
import operator
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, Sequence

logger = logging.getLogger(__name__)


class _DeleteField:
    """Sentinel marking a field for removal in an update."""

    def __repr__(self) -> str:
        return "DELETE_FIELD"


DELETE_FIELD = _DeleteField()

_MISSING = object()

_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "in": lambda value, options: value in options,
}


@dataclass(frozen=True)
class DocumentSnapshot:
    """
    Immutable view of a stored document.

    Attributes:
        collection: Collection name
        id: Document key
        data: Document fields (a private copy)
        version: Version the data was read at
    """
    collection: str
    id: str
    data: dict[str, Any]
    version: int

    def get(self, path: str, default: Any = None) -> Any:
        value = get_field(self.data, path)
        return default if value is _MISSING else value


@dataclass(frozen=True)
class FieldFilter:
    """A single ``field <op> value`` condition on a dotted field path."""
    field: str
    op: str
    value: Any

    def __post_init__(self):
        if self.op not in _OPERATORS:
            raise ValueError(f"Unsupported filter operator: {self.op}")

    def matches(self, data: dict[str, Any]) -> bool:
        current = get_field(data, self.field)
        if current is _MISSING:
            return False
        try:
            return _OPERATORS[self.op](current, self.value)
        except TypeError:
            # Incomparable types (e.g. None < datetime) never match
            return False


@dataclass
class WriteOp:
    """One document write inside an atomic commit."""
    collection: str
    doc_id: str
    fields: dict[str, Any]
    expected_version: Optional[int] = None


@dataclass
class _Subscription:
    collection: str
    callback: Callable[[list[DocumentSnapshot]], None]
    filters: tuple[FieldFilter, ...] = ()
    doc_id: Optional[str] = None
    active: bool = field(default=True)


# =============================================================================
# FIELD HELPERS
# =============================================================================

def get_field(data: dict[str, Any], path: str) -> Any:
    """Resolve a dotted path; returns the _MISSING sentinel when absent."""
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def apply_fields(data: dict[str, Any], fields: dict[str, Any]) -> dict[str, Any]:
    """
    Return a copy of ``data`` with partial ``fields`` merged in.

    Dotted keys address nested maps (intermediate maps are created as
    needed). A DELETE_FIELD value removes the key.
    """
    result = copy.deepcopy(data)
    for path, value in fields.items():
        parts = path.split(".")
        target = result
        for part in parts[:-1]:
            child = target.get(part)
            if not isinstance(child, dict):
                child = {}
                target[part] = child
            target = child
        if value is DELETE_FIELD:
            target.pop(parts[-1], None)
        else:
            target[parts[-1]] = copy.deepcopy(value)
    return result


def matches_all(data: dict[str, Any], filters: Iterable[FieldFilter]) -> bool:
    return all(f.matches(data) for f in filters)


def order_and_limit(
    snapshots: list[DocumentSnapshot],
    order_by: Optional[str] = None,
    descending: bool = False,
    limit: Optional[int] = None,
) -> list[DocumentSnapshot]:
    """Sort by a dotted field (documents without it go last) and truncate."""
    if order_by:
        present = [s for s in snapshots if get_field(s.data, order_by) is not _MISSING]
        absent = [s for s in snapshots if get_field(s.data, order_by) is _MISSING]
        present.sort(key=lambda s: get_field(s.data, order_by), reverse=descending)
        snapshots = present + absent
    if limit is not None:
        snapshots = snapshots[:limit]
    return snapshots


# =============================================================================
# BASE CLASS
# =============================================================================

class BaseDocumentStore(ABC):
    """
    Abstract base class for document stores.

    Subclasses implement persistence; subscription bookkeeping and change
    fan-out live here so every implementation notifies the same way.
    """

    def __init__(self):
        self._subscriptions: dict[int, _Subscription] = {}
        self._subscription_ids = itertools.count(1)

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the store backend name (e.g., "memory", "sql")."""
        pass

    async def initialize(self) -> None:
        """Prepare the backend (create tables, open pools)."""

    async def close(self) -> None:
        """Release backend resources."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[DocumentSnapshot]:
        """Point read; None when the document does not exist."""
        pass

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[DocumentSnapshot]:
        """Filtered, optionally ordered and limited read of a collection."""
        pass

    @abstractmethod
    async def add(
        self,
        collection: str,
        data: dict[str, Any],
        doc_id: Optional[str] = None,
    ) -> DocumentSnapshot:
        """
        Create a new document; a random id is generated when none is given.

        Raises:
            DocumentExistsError: If ``doc_id`` is already taken
        """
        pass

    @abstractmethod
    async def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> DocumentSnapshot:
        """Create or fully replace a document."""
        pass

    @abstractmethod
    async def update(
        self,
        collection: str,
        doc_id: str,
        fields: dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> DocumentSnapshot:
        """
        Merge partial fields into an existing document.

        Raises:
            DocumentNotFoundError: If the document does not exist
            ConcurrentModificationError: If expected_version is stale
        """
        pass

    @abstractmethod
    async def commit(self, writes: Sequence[WriteOp]) -> list[DocumentSnapshot]:
        """
        Apply several updates atomically.

        Either every write lands or none does. Each write may carry an
        expected version.
        """
        pass

    async def health_check(self) -> bool:
        return True

    # =========================================================================
    # SUBSCRIPTIONS
    # =========================================================================

    def subscribe(
        self,
        collection: str,
        callback: Callable[[list[DocumentSnapshot]], None],
        filters: Sequence[FieldFilter] = (),
        doc_id: Optional[str] = None,
    ) -> Callable[[], None]:
        """
        Register a callback for changes to a query's result set.

        The callback is invoked from the writing coroutine after each
        committed change to ``collection``. It must not block.

        Returns:
            A function that cancels the subscription.
        """
        sub_id = next(self._subscription_ids)
        subscription = _Subscription(
            collection=collection,
            callback=callback,
            filters=tuple(filters),
            doc_id=doc_id,
        )
        self._subscriptions[sub_id] = subscription

        def unsubscribe() -> None:
            subscription.active = False
            self._subscriptions.pop(sub_id, None)

        return unsubscribe

    async def prime_subscription(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
        doc_id: Optional[str] = None,
    ) -> list[DocumentSnapshot]:
        """Current result set of a subscription query."""
        if doc_id is not None:
            snapshot = await self.get(collection, doc_id)
            return [snapshot] if snapshot else []
        return await self.query(collection, filters)

    async def _publish(self, changes: Iterable[tuple[str, str]]) -> None:
        """Push fresh result sets to subscribers affected by (collection, id) changes."""
        changed = set(changes)
        collections = {collection for collection, _ in changed}
        for subscription in list(self._subscriptions.values()):
            if not subscription.active or subscription.collection not in collections:
                continue
            if (
                subscription.doc_id is not None
                and (subscription.collection, subscription.doc_id) not in changed
            ):
                continue
            snapshots = await self.prime_subscription(
                subscription.collection, subscription.filters, subscription.doc_id
            )
            try:
                subscription.callback(snapshots)
            except Exception:
                logger.exception(f"Subscriber on '{subscription.collection}' raised")
            # Give other tasks a chance between subscriber callbacks
            await asyncio.sleep(0)
