"""
Order State Machine

Pure transition logic: given an order and a requested status, decide
whether the move is legal, produce the updated order, the store field
changes, and the list of side effects the move implies. Nothing here
touches the store or the network; OrderService persists the changes and
executes the effects.

Transition graph:

    RECEIVED → PREPARING → READY → PICKED_UP → DELIVERED
        └──────────┴─────────┴─────────┴────→ CANCELLED

Side effects per target status:

    PREPARING   notify customer
    READY       notify assigned driver (if any), notify customer
    PICKED_UP   trackingEnabled = true, notify customer
    DELIVERED   release the driver's active order, notify customer
    CANCELLED   notify customer

Every accepted transition also records a STATUS_CHANGE audit event and
stamps ``timestamps[<stage>At]``. Requesting the current status is a no-op.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Union

from restaurant_dispatch.core.exceptions import InvalidTransitionError
from restaurant_dispatch.models import EventType, Order, OrderStatus

SUCCESSORS: dict[OrderStatus, OrderStatus] = {
    OrderStatus.RECEIVED: OrderStatus.PREPARING,
    OrderStatus.PREPARING: OrderStatus.READY,
    OrderStatus.READY: OrderStatus.PICKED_UP,
    OrderStatus.PICKED_UP: OrderStatus.DELIVERED,
}

TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})

CREATED_AT = "createdAt"


# =============================================================================
# EFFECTS
# =============================================================================

@dataclass(frozen=True)
class Notify:
    """Push a message to a user (customer, driver)."""
    recipient_id: str
    title: str
    body: str
    data: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ReleaseDriver:
    """Clear ``activeOrderId`` on the driver holding this order."""
    driver_id: str
    order_id: str


@dataclass(frozen=True)
class RecordEvent:
    """Append an audit event."""
    order_id: str
    message: str
    event_type: EventType = EventType.STATUS_CHANGE


Effect = Union[Notify, ReleaseDriver, RecordEvent]


@dataclass
class TransitionResult:
    """
    Outcome of apply_transition.

    Attributes:
        order: The order after the transition (the input order on a no-op)
        effects: Side effects to run after the changes are persisted
        changes: Partial store fields (dotted paths) to write
        changed: False when the request was a no-op
    """
    order: Order
    effects: list[Effect] = field(default_factory=list)
    changes: dict[str, Any] = field(default_factory=dict)
    changed: bool = True


# =============================================================================
# GRAPH QUERIES
# =============================================================================

def timestamp_key(status: OrderStatus) -> str:
    """
    Stage key written when an order enters ``status``.

    Example:
        >>> timestamp_key(OrderStatus.PICKED_UP)
        'pickedUpAt'
    """
    first, *rest = status.value.lower().split("_")
    return first + "".join(part.capitalize() for part in rest) + "At"


def next_status(current: OrderStatus) -> Optional[OrderStatus]:
    """Successor on the advance chain, or None for DELIVERED and CANCELLED."""
    return SUCCESSORS.get(current)


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    """True if ``target`` is the successor of ``current`` or a cancellation of a live order."""
    if is_terminal(current):
        return False
    if target == OrderStatus.CANCELLED:
        return True
    return SUCCESSORS.get(current) == target


def allowed_targets(current: OrderStatus) -> list[OrderStatus]:
    if is_terminal(current):
        return []
    return [SUCCESSORS[current], OrderStatus.CANCELLED]


# =============================================================================
# TRANSITION
# =============================================================================

def _effects_for(order: Order, target: OrderStatus) -> list[Effect]:
    ref = order.reference
    data = {"orderId": order.id}
    customer = order.customer_id

    effects: list[Effect] = [
        RecordEvent(order.id, f"Status changed to {target.value}"),
    ]

    if target == OrderStatus.PREPARING:
        effects.append(Notify(customer, "👨‍🍳 Being Prepared", "Your order is now being prepared!", data))

    elif target == OrderStatus.READY:
        if order.driver_id:
            effects.append(
                Notify(order.driver_id, "📦 Order Ready", f"Order #{ref} is ready for pickup", data)
            )
        effects.append(Notify(customer, "✅ Order Ready", "Your order is ready and waiting for pickup!", data))

    elif target == OrderStatus.PICKED_UP:
        effects.append(
            Notify(customer, "🛵 Driver On the Way!",
                   "Your driver has picked up your order. Track them live!", data)
        )

    elif target == OrderStatus.DELIVERED:
        if order.driver_id:
            effects.append(ReleaseDriver(order.driver_id, order.id))
        effects.append(Notify(customer, "🎉 Delivered!", "Your order has been delivered. Enjoy your meal!", data))

    elif target == OrderStatus.CANCELLED:
        # The driver slot is deliberately left alone on cancellation
        effects.append(Notify(customer, "❌ Order Cancelled", "Your order has been cancelled.", data))

    return effects


def apply_transition(order: Order, target: OrderStatus, now: datetime) -> TransitionResult:
    """
    Validate and apply a status change.

    Args:
        order: Current order state
        target: Requested status
        now: Transition instant, stamped into ``timestamps``

    Returns:
        TransitionResult with the new order, store changes and effects.

    Raises:
        InvalidTransitionError: If ``target`` is not reachable from the
            current status.
    """
    target = OrderStatus(target)

    if order.status == target:
        return TransitionResult(order=order, effects=[], changes={}, changed=False)

    if not can_transition(order.status, target):
        raise InvalidTransitionError(order.status.value, target.value)

    key = timestamp_key(target)
    timestamps = dict(order.timestamps)
    changes: dict[str, Any] = {"status": target.value}

    if key not in timestamps:
        timestamps[key] = now
        changes[f"timestamps.{key}"] = now

    updates: dict[str, Any] = {"status": target, "timestamps": timestamps}
    if target == OrderStatus.PICKED_UP:
        updates["tracking_enabled"] = True
        changes["trackingEnabled"] = True

    return TransitionResult(
        order=order.model_copy(update=updates),
        effects=_effects_for(order, target),
        changes=changes,
        changed=True,
    )


def creation_effects(order: Order) -> list[Effect]:
    """Audit entry written when an order enters the system."""
    return [RecordEvent(order.id, "Order received")]
