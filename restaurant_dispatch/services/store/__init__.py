"""
Document Store Factory

Provides a single entry point for obtaining the document store.
Automatically selects the in-memory or SQL implementation based on ENV_MODE.

Usage:
    from restaurant_dispatch.services.store import get_document_store

    store = get_document_store()
    snapshot = await store.get("orders", order_id)

Environment Switching:
    - ENV_MODE=development → InMemoryDocumentStore
    - ENV_MODE=staging/production → SQLDocumentStore (DATABASE_URL)
"""

import logging
from functools import lru_cache
from typing import Optional

from restaurant_dispatch.core.config import Settings, get_settings
from restaurant_dispatch.services.store.base import (
    DELETE_FIELD,
    BaseDocumentStore,
    DocumentSnapshot,
    FieldFilter,
    WriteOp,
)
from restaurant_dispatch.services.store.memory import InMemoryDocumentStore
from restaurant_dispatch.services.store.sql import SQLDocumentStore

logger = logging.getLogger(__name__)


def create_document_store(settings: Optional[Settings] = None) -> BaseDocumentStore:
    """
    Build a new, uncached store for the configured environment.

    Background tasks use this so every ``asyncio.run`` gets its own engine.
    """
    settings = settings or get_settings()

    if settings.is_development:
        logger.info("Document Store: Using InMemoryDocumentStore (development mode)")
        return InMemoryDocumentStore()

    logger.info(
        f"Document Store: Using SQLDocumentStore "
        f"({settings.env_mode.value} mode)"
    )
    return SQLDocumentStore(settings.database_url, echo=settings.database_echo)


@lru_cache()
def get_document_store() -> BaseDocumentStore:
    """Get the process-wide document store instance."""
    return create_document_store()


def reset_document_store() -> None:
    """Clear the cached store instance."""
    get_document_store.cache_clear()
    logger.debug("Document store cache cleared")


__all__ = [
    "create_document_store",
    "get_document_store",
    "reset_document_store",
    "BaseDocumentStore",
    "DocumentSnapshot",
    "FieldFilter",
    "WriteOp",
    "DELETE_FIELD",
    "InMemoryDocumentStore",
    "SQLDocumentStore",
]
