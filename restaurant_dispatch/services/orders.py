"""
Order Service

The single write path for order status. Every status change, whether it comes
from an admin, a driver or the stale-order sweep, goes through
``OrderService.transition``:

    1. Load the order (document + version)
    2. Check the caller may request the move
    3. Run the pure state machine
    4. Persist the field changes with the version as CAS token
       (re-read and re-validate on conflict)
    5. Execute the effects: audit event, driver release, notifications

The status write is authoritative. Failures in step 5 are logged and never
roll it back.

The service also owns checkout (pricing, coupon, creation side effects),
reads, manual driver assignment, the audit trail and ETA.
"""

import logging
from datetime import datetime
from typing import Callable, Optional, Sequence, Union

from restaurant_dispatch.core.config import Settings, get_settings
from restaurant_dispatch.core.exceptions import (
    ConcurrentModificationError,
    DispatchServiceError,
    InvalidArgumentError,
    InvalidTransitionError,
    OrderNotFoundError,
    PermissionDeniedError,
)
from restaurant_dispatch.models import (
    Collections,
    DeliveryType,
    Driver,
    EventType,
    Order,
    OrderEvent,
    OrderStatus,
    PaymentMethod,
    Restaurant,
    utc_now,
)
from restaurant_dispatch.schemas import OrderCreate
from restaurant_dispatch.services import audit
from restaurant_dispatch.services.auth import Caller
from restaurant_dispatch.services.coupons import CouponService
from restaurant_dispatch.services.dispatch import DispatchEngine, DispatchResult
from restaurant_dispatch.services.geo import Coordinates, DistanceResult, calculate_distance
from restaurant_dispatch.services.notifications.queue import Notifier
from restaurant_dispatch.services.state_machine import (
    CREATED_AT,
    Effect,
    Notify,
    RecordEvent,
    ReleaseDriver,
    apply_transition,
    creation_effects,
    next_status,
)
from restaurant_dispatch.services.store.base import (
    BaseDocumentStore,
    DocumentSnapshot,
    FieldFilter,
)

logger = logging.getLogger(__name__)

# Moves a driver may make on an order assigned to them
DRIVER_TRANSITIONS = {
    (OrderStatus.READY, OrderStatus.PICKED_UP),
    (OrderStatus.PICKED_UP, OrderStatus.DELIVERED),
}

ACTIVE_DRIVER_STATUSES = [OrderStatus.READY.value, OrderStatus.PICKED_UP.value]


class OrderService:
    """Order lifecycle operations."""

    def __init__(
        self,
        store: BaseDocumentStore,
        notifier: Notifier,
        dispatch_engine: DispatchEngine,
        coupon_service: Optional[CouponService] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.notifier = notifier
        self.dispatch = dispatch_engine
        self.settings = settings or get_settings()
        self.clock = clock
        self.coupons = coupon_service or CouponService(store, clock=clock)

    # =========================================================================
    # CHECKOUT
    # =========================================================================

    async def create_order(self, customer_id: str, request: OrderCreate) -> Order:
        """
        Price and persist a new order, then run the creation side effects.

        Raises:
            InvalidArgumentError: Missing customer or a coupon that does not
                apply to this order
        """
        if not customer_id:
            raise InvalidArgumentError("customerId required")

        subtotal = round(sum(item.line_total for item in request.items), 2)
        tax = round(subtotal * self.settings.tax_rate, 2)
        fee = self.settings.delivery_fee if request.delivery.type == DeliveryType.DELIVERY else 0.0

        discount = 0.0
        coupon_code = None
        if request.coupon_code:
            validation = await self.coupons.validate(request.coupon_code, subtotal)
            if not validation.valid:
                raise InvalidArgumentError(validation.message, {"couponCode": request.coupon_code})
            discount = validation.discount
            coupon_code = validation.code

        order = Order(
            id="",
            restaurant_id=self.settings.restaurant_id,
            customer_id=customer_id,
            items=request.items,
            subtotal=subtotal,
            tax=tax,
            delivery_fee=fee,
            tip=request.tip,
            total=max(round(subtotal + tax + fee + request.tip - discount, 2), 0.0),
            coupon_code=coupon_code,
            discount_amount=discount,
            payment_method=request.payment_method,
            payment_status="unpaid" if request.payment_method == PaymentMethod.COD else "pending",
            delivery=request.delivery,
            status=OrderStatus.RECEIVED,
            tracking_enabled=False,
            timestamps={CREATED_AT: self.clock()},
        )

        snapshot = await self.store.add(Collections.ORDERS, order.to_document())
        order = Order.from_snapshot(snapshot)
        logger.info(f"✅ Order #{order.reference} created - ${order.total:.2f}")

        result = await self.on_order_created(order)
        if result is not None and result.assigned:
            # The binding commit only adds driverId
            return order.model_copy(update={"driver_id": result.driver_id})
        return order

    async def on_order_created(self, order: Order) -> Optional[DispatchResult]:
        """
        Creation side effects: audit entry, admin alert, optional auto-dispatch.

        Returns:
            The dispatch outcome when the restaurant has autoDispatch on.
        """
        await self._execute_effects(creation_effects(order))

        await self.notifier.notify_admins(
            "🔔 New Order",
            f"Order #{order.reference} - ${order.total:.2f}",
            {"orderId": order.id, "type": "NEW_ORDER"},
        )

        # The order is already persisted; a failure here must not fail checkout
        try:
            restaurant = await self._load_restaurant()
            if restaurant is None or not restaurant.auto_dispatch:
                return None
            return await self.dispatch.auto_dispatch(order.id)
        except DispatchServiceError as e:
            logger.error(f"Auto-dispatch of order {order.id} failed: {e.message}")
        except Exception:
            logger.exception(f"Auto-dispatch of order {order.id} failed")
        return None

    async def _load_restaurant(self) -> Optional[Restaurant]:
        snapshot = await self.store.get(Collections.RESTAURANTS, self.settings.restaurant_id)
        return Restaurant.from_snapshot(snapshot) if snapshot else None

    # =========================================================================
    # READS
    # =========================================================================

    async def _load(self, order_id: str) -> DocumentSnapshot:
        if not order_id:
            raise InvalidArgumentError("orderId required")
        snapshot = await self.store.get(Collections.ORDERS, order_id)
        if snapshot is None:
            raise OrderNotFoundError(order_id)
        return snapshot

    async def get_order(self, order_id: str) -> Order:
        return Order.from_snapshot(await self._load(order_id))

    async def list_orders(
        self,
        status: Optional[Union[OrderStatus, Sequence[OrderStatus]]] = None,
        customer_id: Optional[str] = None,
        driver_id: Optional[str] = None,
        limit: Optional[int] = 50,
    ) -> list[Order]:
        """Newest first."""
        filters = []
        if isinstance(status, str):
            filters.append(FieldFilter("status", "==", OrderStatus(status).value))
        elif status:
            filters.append(FieldFilter("status", "in", [OrderStatus(s).value for s in status]))
        if customer_id:
            filters.append(FieldFilter("customerId", "==", customer_id))
        if driver_id:
            filters.append(FieldFilter("driverId", "==", driver_id))

        snapshots = await self.store.query(
            Collections.ORDERS,
            filters,
            order_by=f"timestamps.{CREATED_AT}",
            descending=True,
            limit=limit,
        )
        return [Order.from_snapshot(s) for s in snapshots]

    async def list_events(self, order_id: str) -> list[OrderEvent]:
        await self._load(order_id)
        return await audit.list_events(self.store, order_id)

    async def estimate_eta(self, order_id: str) -> Optional[DistanceResult]:
        """
        Straight-line ETA from the driver's last position to the customer.

        Pickup orders (no address) measure to the restaurant. Returns None
        while no driver is assigned or the driver has not reported a position.
        """
        order = await self.get_order(order_id)
        if not order.driver_id:
            return None

        snapshot = await self.store.get(Collections.DRIVERS, order.driver_id)
        if snapshot is None:
            return None
        driver = Driver.from_snapshot(snapshot)
        if not driver.has_position:
            return None

        address = order.delivery.address
        if order.delivery.type == DeliveryType.DELIVERY and address is not None:
            destination = Coordinates(address.lat, address.lng)
        else:
            destination = Coordinates(self.settings.restaurant_lat, self.settings.restaurant_lng)

        return calculate_distance(
            Coordinates(driver.lat, driver.lng),
            destination,
            self.settings.average_speed_kmh,
        )

    # =========================================================================
    # STATUS CHANGES
    # =========================================================================

    def _authorize(self, order: Order, target: OrderStatus, caller: Optional[Caller]) -> None:
        if caller is None or caller.is_admin:
            return
        if caller.is_driver and order.driver_id == caller.uid:
            if order.status == target and target in (OrderStatus.PICKED_UP, OrderStatus.DELIVERED):
                return
            if (order.status, target) in DRIVER_TRANSITIONS:
                return
        raise PermissionDeniedError(
            f"Not allowed to move order {order.id} to {target.value}",
            {"order_id": order.id, "target": target.value},
        )

    async def transition(
        self,
        order_id: str,
        target: Union[OrderStatus, str],
        caller: Optional[Caller] = None,
        from_status: Optional[OrderStatus] = None,
    ) -> Order:
        """
        Move an order to ``target``.

        ``caller`` is None for system callers (the sweeper). With
        ``from_status`` the move only happens while the order is still in
        that status; otherwise the order is returned unchanged.

        Raises:
            InvalidArgumentError: Unknown status
            OrderNotFoundError: Unknown order
            PermissionDeniedError: Caller may not request this move
            InvalidTransitionError: Move not allowed from the current status
            ConcurrentModificationError: Lost every CAS attempt
        """
        try:
            target = OrderStatus(target)
        except ValueError:
            raise InvalidArgumentError(f"Unknown status: {target}")

        attempts = self.settings.max_write_attempts
        attempt = 0
        while True:
            attempt += 1
            snapshot = await self._load(order_id)
            order = Order.from_snapshot(snapshot)
            if from_status is not None and order.status != from_status:
                logger.info(
                    f"Order {order_id} is {order.status.value}, not {from_status.value}; "
                    f"skipping {target.value}"
                )
                return order
            self._authorize(order, target, caller)

            result = apply_transition(order, target, self.clock())
            if not result.changed:
                logger.debug(f"Order {order_id} already {target.value}; nothing to do")
                return order

            try:
                await self.store.update(
                    Collections.ORDERS,
                    order_id,
                    result.changes,
                    expected_version=snapshot.version,
                )
            except ConcurrentModificationError:
                if attempt == attempts:
                    logger.error(f"Order {order_id} kept changing; giving up on {target.value}")
                    raise
                logger.warning(
                    f"Order {order_id} changed during {target.value} "
                    f"(attempt {attempt}/{attempts}); retrying"
                )
                continue

            logger.info(f"📋 Order #{order.reference}: {order.status.value} → {target.value}")
            await self._execute_effects(result.effects)
            return result.order

    async def advance(self, order_id: str, caller: Optional[Caller] = None) -> Order:
        """Move an order to its successor status."""
        order = await self.get_order(order_id)
        target = next_status(order.status)
        if target is None:
            raise InvalidTransitionError(order.status.value, "next")
        return await self.transition(order_id, target, caller)

    async def cancel(self, order_id: str, caller: Optional[Caller] = None) -> Order:
        return await self.transition(order_id, OrderStatus.CANCELLED, caller)

    async def assign_driver(self, order_id: str, driver_id: str) -> Order:
        """Manual assignment by an admin."""
        await self.dispatch.assign(order_id, driver_id)
        return await self.get_order(order_id)

    async def add_note(self, order_id: str, message: str) -> OrderEvent:
        await self._load(order_id)
        if not message or not message.strip():
            raise InvalidArgumentError("message required")
        return await audit.record_event(
            self.store, order_id, EventType.NOTE, message.strip(), self.clock()
        )

    # =========================================================================
    # EFFECTS
    # =========================================================================

    async def record_event(
        self,
        order_id: str,
        message: str,
        event_type: EventType = EventType.STATUS_CHANGE,
    ) -> Optional[OrderEvent]:
        try:
            return await audit.record_event(self.store, order_id, event_type, message, self.clock())
        except Exception:
            logger.exception(f"Could not record event for order {order_id}: {message}")
            return None

    async def _execute_effects(self, effects: list[Effect]) -> None:
        for effect in effects:
            if isinstance(effect, RecordEvent):
                await self.record_event(effect.order_id, effect.message, effect.event_type)

            elif isinstance(effect, ReleaseDriver):
                try:
                    await self.dispatch.release_driver(effect.driver_id, effect.order_id)
                except Exception:
                    logger.exception(
                        f"Could not release driver {effect.driver_id} from order {effect.order_id}"
                    )

            elif isinstance(effect, Notify):
                await self.notifier.notify_user(
                    effect.recipient_id, effect.title, effect.body, effect.data
                )

    # =========================================================================
    # SUBSCRIPTIONS
    # =========================================================================

    def subscribe_order(
        self,
        order_id: str,
        callback: Callable[[Optional[Order]], None],
    ) -> Callable[[], None]:
        """Call ``callback`` with the order after every change to it."""
        def on_change(snapshots: list[DocumentSnapshot]) -> None:
            callback(Order.from_snapshot(snapshots[0]) if snapshots else None)

        return self.store.subscribe(Collections.ORDERS, on_change, doc_id=order_id)

    def subscribe_driver_orders(
        self,
        driver_id: str,
        callback: Callable[[list[Order]], None],
    ) -> Callable[[], None]:
        """The driver's READY and PICKED_UP orders, pushed on every order change."""
        def on_change(snapshots: list[DocumentSnapshot]) -> None:
            callback([Order.from_snapshot(s) for s in snapshots])

        return self.store.subscribe(
            Collections.ORDERS,
            on_change,
            filters=[
                FieldFilter("driverId", "==", driver_id),
                FieldFilter("status", "in", ACTIVE_DRIVER_STATUSES),
            ],
        )
