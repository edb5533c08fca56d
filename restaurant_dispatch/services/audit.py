"""
Order Audit Trail

Append-only ``orderEvents`` records. Writers are the order lifecycle and the
dispatch engine; the admin console reads the trail per order.
"""

import logging
from datetime import datetime

from restaurant_dispatch.models import Collections, EventType, OrderEvent
from restaurant_dispatch.services.store.base import BaseDocumentStore, FieldFilter

logger = logging.getLogger(__name__)


async def record_event(
    store: BaseDocumentStore,
    order_id: str,
    event_type: EventType,
    message: str,
    created_at: datetime,
) -> OrderEvent:
    event = OrderEvent(
        id="",
        order_id=order_id,
        type=event_type,
        message=message,
        created_at=created_at,
    )
    snapshot = await store.add(Collections.ORDER_EVENTS, event.to_document())
    logger.debug(f"📝 {order_id}: {message}")
    return OrderEvent.from_snapshot(snapshot)


async def list_events(store: BaseDocumentStore, order_id: str) -> list[OrderEvent]:
    """Events for one order, oldest first."""
    snapshots = await store.query(
        Collections.ORDER_EVENTS,
        [FieldFilter("orderId", "==", order_id)],
        order_by="createdAt",
    )
    return [OrderEvent.from_snapshot(s) for s in snapshots]
