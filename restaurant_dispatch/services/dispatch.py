"""
Dispatch Engine

Assigns a driver to an order.

Selection (auto-dispatch):
    1. Online drivers
    2. ... without an active order
    3. ... with a known position
    4. ... within DISPATCH_RADIUS_KM of the restaurant (inclusive)
    5. Nearest wins; on equal distance the first one read wins

Binding writes ``orders/{id}.driverId`` and ``drivers/{id}.activeOrderId``
in one commit guarded by both documents' versions. If either document moved
in between (another dispatch took the driver, the driver went offline, the
order got cancelled) the commit fails as a whole and selection runs again on
fresh data.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Optional

from restaurant_dispatch.core.config import Settings, get_settings
from restaurant_dispatch.core.exceptions import (
    ConcurrentModificationError,
    DriverNotFoundError,
    DriverUnavailableError,
    FailedPreconditionError,
    InvalidArgumentError,
    OrderNotFoundError,
)
from restaurant_dispatch.models import (
    Collections,
    Driver,
    EventType,
    Order,
    utc_now,
)
from restaurant_dispatch.services.audit import record_event
from restaurant_dispatch.services.geo import Coordinates, haversine_km
from restaurant_dispatch.services.notifications.queue import Notifier
from restaurant_dispatch.services.store.base import (
    DELETE_FIELD,
    BaseDocumentStore,
    DocumentSnapshot,
    FieldFilter,
    WriteOp,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DriverCandidate:
    driver: Driver
    distance_km: float


@dataclass
class DispatchResult:
    """
    Outcome of a dispatch attempt.

    ``assigned`` is False for the no-op outcomes (no driver in range, order
    already assigned or finished); none of them is an error.
    """
    order_id: str
    assigned: bool = False
    driver_id: Optional[str] = None
    distance_km: Optional[float] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "orderId": self.order_id,
            "assigned": self.assigned,
            "driverId": self.driver_id,
            "distanceKm": round(self.distance_km, 3) if self.distance_km is not None else None,
            "reason": self.reason,
        }


def select_nearest_driver(
    drivers: Iterable[Driver],
    origin: Coordinates,
    radius_km: float,
) -> Optional[DriverCandidate]:
    """
    Pick the closest available driver within ``radius_km`` of ``origin``.

    Offline, busy and position-less drivers are skipped. Returns None when
    nobody qualifies.
    """
    best: Optional[DriverCandidate] = None

    for driver in drivers:
        if not driver.is_available or not driver.has_position:
            continue
        distance = haversine_km(origin.lat, origin.lng, driver.lat, driver.lng)
        if distance > radius_km:
            continue
        if best is None or distance < best.distance_km:
            best = DriverCandidate(driver=driver, distance_km=distance)

    return best


class DispatchEngine:
    """Selects and binds drivers to orders."""

    def __init__(
        self,
        store: BaseDocumentStore,
        notifier: Notifier,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.notifier = notifier
        self.settings = settings or get_settings()
        self.clock = clock
        self.origin = Coordinates(self.settings.restaurant_lat, self.settings.restaurant_lng)

    # =========================================================================
    # READS
    # =========================================================================

    async def _load_order(self, order_id: str) -> DocumentSnapshot:
        snapshot = await self.store.get(Collections.ORDERS, order_id)
        if snapshot is None:
            raise OrderNotFoundError(order_id)
        return snapshot

    async def _online_drivers(self) -> tuple[list[Driver], dict[str, int]]:
        snapshots = await self.store.query(
            Collections.DRIVERS, [FieldFilter("isOnline", "==", True)]
        )
        drivers = [Driver.from_snapshot(s) for s in snapshots]
        return drivers, {s.id: s.version for s in snapshots}

    # =========================================================================
    # BINDING
    # =========================================================================

    async def _bind(
        self,
        order_snapshot: DocumentSnapshot,
        driver_id: str,
        driver_version: int,
    ) -> None:
        await self.store.commit([
            WriteOp(
                Collections.ORDERS,
                order_snapshot.id,
                {"driverId": driver_id},
                expected_version=order_snapshot.version,
            ),
            WriteOp(
                Collections.DRIVERS,
                driver_id,
                {"activeOrderId": order_snapshot.id},
                expected_version=driver_version,
            ),
        ])

    async def _after_assignment(self, order: Order, driver_id: str) -> None:
        try:
            await record_event(
                self.store,
                order.id,
                EventType.DRIVER_ASSIGNED,
                f"Driver {driver_id} assigned",
                self.clock(),
            )
        except Exception:
            logger.exception(f"Could not record assignment of order {order.id}")

        await self.notifier.notify_user(
            driver_id,
            "🚀 New Delivery!",
            f"You've been assigned order #{order.reference}",
            {"orderId": order.id},
        )

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    async def auto_dispatch(self, order_id: str) -> DispatchResult:
        """
        Assign the nearest eligible driver to an order.

        Raises:
            InvalidArgumentError: If order_id is empty
            OrderNotFoundError: If the order does not exist
            ConcurrentModificationError: If every binding attempt lost a race
        """
        if not order_id:
            raise InvalidArgumentError("orderId required")

        attempts = self.settings.dispatch_max_attempts
        attempt = 0
        while True:
            attempt += 1
            order_snapshot = await self._load_order(order_id)
            order = Order.from_snapshot(order_snapshot)

            if order.is_terminal:
                logger.info(f"Order {order_id} is {order.status.value}; nothing to dispatch")
                return DispatchResult(order_id, reason="order-closed")
            if order.driver_id:
                logger.info(f"Order {order_id} already has driver {order.driver_id}")
                return DispatchResult(order_id, driver_id=order.driver_id, reason="already-assigned")

            drivers, versions = await self._online_drivers()
            candidate = select_nearest_driver(drivers, self.origin, self.settings.dispatch_radius_km)
            if candidate is None:
                logger.info(
                    f"🚫 No available drivers within {self.settings.dispatch_radius_km} km "
                    f"for order {order_id}"
                )
                return DispatchResult(order_id, reason="no-driver")

            driver_id = candidate.driver.id
            try:
                await self._bind(order_snapshot, driver_id, versions[driver_id])
            except ConcurrentModificationError:
                if attempt == attempts:
                    logger.error(f"Dispatch of order {order_id} gave up after {attempts} attempts")
                    raise
                logger.warning(
                    f"Dispatch race on order {order_id} (attempt {attempt}/{attempts}); retrying"
                )
                continue

            logger.info(
                f"🛵 Auto-dispatched order {order_id} → driver {driver_id} "
                f"({candidate.distance_km:.2f} km)"
            )
            await self._after_assignment(order, driver_id)
            return DispatchResult(
                order_id,
                assigned=True,
                driver_id=driver_id,
                distance_km=candidate.distance_km,
            )

    async def assign(self, order_id: str, driver_id: str) -> DispatchResult:
        """
        Bind a specific driver chosen by an admin.

        Raises:
            InvalidArgumentError: If an id is empty
            OrderNotFoundError / DriverNotFoundError: Unknown documents
            FailedPreconditionError: Order is finished or already assigned
            DriverUnavailableError: Driver offline or busy
        """
        if not order_id or not driver_id:
            raise InvalidArgumentError("orderId and driverId required")

        attempts = self.settings.dispatch_max_attempts
        attempt = 0
        while True:
            attempt += 1
            order_snapshot = await self._load_order(order_id)
            order = Order.from_snapshot(order_snapshot)

            if order.is_terminal:
                raise FailedPreconditionError(
                    f"Order {order_id} is {order.status.value}",
                    {"order_id": order_id, "status": order.status.value},
                )
            if order.driver_id == driver_id:
                return DispatchResult(order_id, driver_id=driver_id, reason="already-assigned")
            if order.driver_id:
                raise FailedPreconditionError(
                    f"Order {order_id} already has driver {order.driver_id}",
                    {"order_id": order_id, "driver_id": order.driver_id},
                )

            driver_snapshot = await self.store.get(Collections.DRIVERS, driver_id)
            if driver_snapshot is None:
                raise DriverNotFoundError(driver_id)
            driver = Driver.from_snapshot(driver_snapshot)
            if not driver.is_available:
                raise DriverUnavailableError(
                    f"Driver {driver_id} is not available",
                    {"driver_id": driver_id, "is_online": driver.is_online,
                     "active_order_id": driver.active_order_id},
                )

            try:
                await self._bind(order_snapshot, driver_id, driver_snapshot.version)
            except ConcurrentModificationError:
                if attempt == attempts:
                    raise
                logger.warning(f"Assignment race on order {order_id}; retrying")
                continue

            logger.info(f"🛵 Assigned order {order_id} → driver {driver_id} (manual)")
            await self._after_assignment(order, driver_id)
            distance = (
                haversine_km(self.origin.lat, self.origin.lng, driver.lat, driver.lng)
                if driver.has_position else None
            )
            return DispatchResult(order_id, assigned=True, driver_id=driver_id, distance_km=distance)

    async def release_driver(self, driver_id: str, order_id: str) -> bool:
        """
        Clear a driver's active order if it is still ``order_id``.

        Returns:
            True when the slot was cleared.
        """
        attempts = self.settings.max_write_attempts
        attempt = 0
        while True:
            attempt += 1
            snapshot = await self.store.get(Collections.DRIVERS, driver_id)
            if snapshot is None:
                logger.warning(f"Driver {driver_id} not found while releasing order {order_id}")
                return False
            if snapshot.get("activeOrderId") != order_id:
                return False
            try:
                await self.store.update(
                    Collections.DRIVERS,
                    driver_id,
                    {"activeOrderId": DELETE_FIELD},
                    expected_version=snapshot.version,
                )
            except ConcurrentModificationError:
                if attempt == attempts:
                    raise
                continue
            logger.info(f"Driver {driver_id} released from order {order_id}")
            return True
