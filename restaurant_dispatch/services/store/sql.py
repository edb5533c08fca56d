"""
SQL Document Store

Document store backed by a single SQLAlchemy table using the async engine.
Used when ENV_MODE=staging or ENV_MODE=production (PostgreSQL via psycopg).

Each row holds one document: (collection, id) primary key, the document as
a JSON column and an integer version used for compare-and-swap.

Queries run in the database: ``==``, ``in`` and ordering comparisons on
strings, numbers, booleans and tz-aware datetimes become JSON path
predicates, and ``order_by``/``limit`` are pushed into the statement.
Datetimes are stored as UTC ISO strings, so they compare and sort as text.
Any other filter is applied in Python over the rows the predicates select;
ordering and limit then follow in Python as well.
"""

import enum
import json
import logging
import operator
import uuid
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from sqlalchemy import JSON, DateTime, Integer, String, func, select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

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

_DATETIME_KEY = "__datetime__"


# =============================================================================
# JSON CODEC
# =============================================================================

def _encode_default(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return {_DATETIME_KEY: value.isoformat()}
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _decode_hook(obj: dict[str, Any]) -> Any:
    if len(obj) == 1 and _DATETIME_KEY in obj:
        return datetime.fromisoformat(obj[_DATETIME_KEY])
    return obj


def json_serializer(value: Any) -> str:
    """Serialize documents, keeping datetimes round-trippable."""
    return json.dumps(value, default=_encode_default)


def json_deserializer(raw: str) -> Any:
    return json.loads(raw, object_hook=_decode_hook)


# =============================================================================
# TABLE
# =============================================================================

class Base(DeclarativeBase):
    pass


class StoredDocument(Base):
    """One document of any collection."""
    __tablename__ = "documents"

    collection: Mapped[str] = mapped_column(String(64), primary_key=True)
    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    data: Mapped[dict] = mapped_column(JSON, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def to_snapshot(self) -> DocumentSnapshot:
        return DocumentSnapshot(self.collection, self.id, apply_fields(self.data, {}), self.version)

    def __repr__(self):
        return f"<StoredDocument {self.collection}/{self.id} v{self.version}>"


# =============================================================================
# QUERY TRANSLATION
# =============================================================================

_SQL_COMPARISONS = {
    "==": operator.eq,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


def _json_field(path: str, *suffix: str):
    parts = tuple(path.split(".")) + suffix
    return StoredDocument.data[parts if len(parts) > 1 else parts[0]]


def _sql_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, enum.Enum):
        return value.value
    return value


def _typed_field(path: str, value: Any):
    """JSON accessor cast to match ``value``; None when there is no safe cast."""
    if isinstance(value, bool):
        return _json_field(path).as_boolean()
    if isinstance(value, (int, float)):
        return _json_field(path).as_float()
    if isinstance(value, str):
        return _json_field(path).as_string()
    if isinstance(value, datetime) and value.tzinfo is not None:
        return _json_field(path, _DATETIME_KEY).as_string()
    return None


def compile_filter(field_filter: FieldFilter):
    """
    SQL predicate equivalent to a FieldFilter.

    Returns None for filters that must run in Python (``!=``, ``in`` over
    non-string options, comparisons against None, naive datetimes or
    booleans in an ordering comparison).
    """
    if field_filter.op == "in":
        options = [_sql_value(o) for o in field_filter.value]
        if not options or not all(isinstance(o, str) for o in options):
            return None
        return _json_field(field_filter.field).as_string().in_(options)

    compare = _SQL_COMPARISONS.get(field_filter.op)
    if compare is None:
        return None
    if field_filter.op != "==" and isinstance(field_filter.value, bool):
        return None
    column = _typed_field(field_filter.field, field_filter.value)
    if column is None:
        return None
    return compare(column, _sql_value(field_filter.value))


def _sort_key(path: str):
    """Datetimes by their ISO text, anything else by its JSON text."""
    return func.coalesce(
        _json_field(path, _DATETIME_KEY).as_string(),
        _json_field(path).as_string(),
    )


# =============================================================================
# STORE
# =============================================================================

class SQLDocumentStore(BaseDocumentStore):
    """
    SQLAlchemy-backed document store.

    Args:
        database_url: Async SQLAlchemy URL (postgresql+psycopg://...,
            sqlite+aiosqlite://...)
        echo: Log all SQL statements
    """

    def __init__(self, database_url: str, echo: bool = False):
        super().__init__()
        engine_options: dict[str, Any] = {
            "echo": echo,
            "json_serializer": json_serializer,
            "json_deserializer": json_deserializer,
        }
        if not database_url.startswith("sqlite"):
            engine_options.update(pool_size=5, max_overflow=10)

        self.engine = create_async_engine(database_url, **engine_options)
        self.session_maker = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        logger.info(f"SQLDocumentStore initialized ({self.engine.url.get_backend_name()})")

    @property
    def provider_name(self) -> str:
        return "sql"

    async def initialize(self) -> None:
        """Create the documents table if missing."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("✅ Document table ready")

    async def close(self) -> None:
        await self.engine.dispose()

    async def health_check(self) -> bool:
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Document store health check failed: {e}")
            return False

    async def get(self, collection: str, doc_id: str) -> Optional[DocumentSnapshot]:
        async with self.session_maker() as session:
            row = await session.get(StoredDocument, (collection, doc_id))
            return row.to_snapshot() if row else None

    async def query(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[DocumentSnapshot]:
        statement = select(StoredDocument).where(StoredDocument.collection == collection)
        residual: list[FieldFilter] = []
        for field_filter in filters:
            predicate = compile_filter(field_filter)
            if predicate is None:
                residual.append(field_filter)
            else:
                statement = statement.where(predicate)

        if not residual:
            if order_by:
                key = _sort_key(order_by)
                # Documents without the field go last either way
                statement = statement.order_by(key.is_(None), key.desc() if descending else key)
            if limit is not None:
                statement = statement.limit(limit)

        async with self.session_maker() as session:
            result = await session.execute(statement)
            rows = result.scalars().all()

        snapshots = [row.to_snapshot() for row in rows]
        if not residual:
            return snapshots
        logger.debug(f"Filtering {collection} in Python on {[f.field for f in residual]}")
        snapshots = [s for s in snapshots if matches_all(s.data, residual)]
        return order_and_limit(snapshots, order_by, descending, limit)

    async def add(
        self,
        collection: str,
        data: dict[str, Any],
        doc_id: Optional[str] = None,
    ) -> DocumentSnapshot:
        row = StoredDocument(
            collection=collection,
            id=doc_id or uuid.uuid4().hex,
            data=apply_fields(data, {}),
            version=1,
        )
        try:
            async with self.session_maker() as session:
                async with session.begin():
                    session.add(row)
        except IntegrityError:
            raise DocumentExistsError(collection, row.id)
        await self._publish([(collection, row.id)])
        return row.to_snapshot()

    async def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> DocumentSnapshot:
        async with self.session_maker() as session:
            async with session.begin():
                row = await session.get(StoredDocument, (collection, doc_id), with_for_update=True)
                if row is None:
                    row = StoredDocument(collection=collection, id=doc_id, data=data, version=1)
                    session.add(row)
                else:
                    row.data = apply_fields(data, {})
                    row.version += 1
            snapshot = row.to_snapshot()
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
        rows: dict[tuple[str, str], StoredDocument] = {}
        async with self.session_maker() as session:
            async with session.begin():
                for write in writes:
                    key = (write.collection, write.doc_id)
                    row = rows.get(key)
                    if row is None:
                        row = await session.get(StoredDocument, key, with_for_update=True)
                        if row is None:
                            raise DocumentNotFoundError(write.collection, write.doc_id)
                        if (
                            write.expected_version is not None
                            and write.expected_version != row.version
                        ):
                            raise ConcurrentModificationError(
                                write.collection, write.doc_id,
                                write.expected_version, row.version,
                            )
                        row.version += 1
                        rows[key] = row
                    # Reassign so the JSON column is flagged dirty
                    row.data = apply_fields(row.data, write.fields)

            snapshots = [rows[(w.collection, w.doc_id)].to_snapshot() for w in writes]

        await self._publish([(w.collection, w.doc_id) for w in writes])
        return snapshots
