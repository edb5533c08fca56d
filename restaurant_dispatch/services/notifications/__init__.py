"""
Notification Service Factory

Returns Mock or Expo push gateway based on ENV_MODE, plus the process-wide
notification queue and notifier built on top of it.
"""

import logging
from functools import lru_cache

from restaurant_dispatch.core.config import get_settings
from restaurant_dispatch.services.notifications.base import (
    BasePushGateway,
    NotificationResult,
    PushMessage,
)
from restaurant_dispatch.services.notifications.expo import ExpoPushGateway
from restaurant_dispatch.services.notifications.mock import MockPushGateway
from restaurant_dispatch.services.notifications.queue import NotificationQueue, Notifier
from restaurant_dispatch.services.store import get_document_store

logger = logging.getLogger(__name__)


def create_push_gateway() -> BasePushGateway:
    """Build a new gateway for the configured environment."""
    settings = get_settings()

    if settings.is_development:
        logger.info("Push Gateway: Using MockPushGateway (development mode)")
        return MockPushGateway(failure_rate=0.05, min_latency=0.05, max_latency=0.2)

    logger.info(f"Push Gateway: Using ExpoPushGateway ({settings.env_mode.value} mode)")
    return ExpoPushGateway()


@lru_cache()
def get_push_gateway() -> BasePushGateway:
    """Get the configured push gateway."""
    return create_push_gateway()


@lru_cache()
def get_notification_queue() -> NotificationQueue:
    settings = get_settings()
    return NotificationQueue(
        get_push_gateway(),
        maxsize=settings.notification_queue_size,
        workers=settings.notification_workers,
    )


@lru_cache()
def get_notifier() -> Notifier:
    return Notifier(get_document_store(), get_notification_queue())


def reset_notification_service() -> None:
    """Clear the cached instances."""
    get_notifier.cache_clear()
    get_notification_queue.cache_clear()
    get_push_gateway.cache_clear()


__all__ = [
    "create_push_gateway",
    "get_push_gateway",
    "get_notification_queue",
    "get_notifier",
    "reset_notification_service",
    "BasePushGateway",
    "NotificationResult",
    "PushMessage",
    "NotificationQueue",
    "Notifier",
    "MockPushGateway",
    "ExpoPushGateway",
]
