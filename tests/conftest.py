"""
Shared fixtures: in-memory store, mock push gateway, a running notification
queue, a controllable clock and the services wired on top of them.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from restaurant_dispatch.core.config import Settings
from restaurant_dispatch.models import Collections, DeliveryType, utc_now
from restaurant_dispatch.schemas import OrderCreate
from restaurant_dispatch.services.coupons import CouponService
from restaurant_dispatch.services.dispatch import DispatchEngine
from restaurant_dispatch.services.drivers import DriverService
from restaurant_dispatch.services.notifications.mock import MockPushGateway
from restaurant_dispatch.services.notifications.queue import NotificationQueue, Notifier
from restaurant_dispatch.services.orders import OrderService
from restaurant_dispatch.services.store.memory import InMemoryDocumentStore
from restaurant_dispatch.services.sweeper import StaleOrderSweeper

RESTAURANT_LAT = 25.2048
RESTAURANT_LNG = 55.2708

# Kilometers per degree of latitude on a 6371 km sphere
KM_PER_DEGREE = 111.19492664455873


def north_of_restaurant(km: float) -> tuple[float, float]:
    """A point ``km`` due north of the restaurant."""
    return RESTAURANT_LAT + km / KM_PER_DEGREE, RESTAURANT_LNG


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def settings() -> Settings:
    return Settings(
        env_mode="development",
        jwt_secret="test-secret",
        restaurant_id="alsamaha_main",
        restaurant_lat=RESTAURANT_LAT,
        restaurant_lng=RESTAURANT_LNG,
        driver_location_interval_seconds=0.01,
        driver_idle_interval_seconds=0.05,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def gateway() -> MockPushGateway:
    return MockPushGateway()


@pytest.fixture
async def queue(gateway):
    queue = NotificationQueue(gateway, maxsize=100, workers=2)
    await queue.start()
    yield queue
    await queue.stop(drain=True)


@pytest.fixture
def notifier(store, queue) -> Notifier:
    return Notifier(store, queue)


@pytest.fixture
def engine(store, notifier, settings, clock) -> DispatchEngine:
    return DispatchEngine(store, notifier, settings, clock=clock)


@pytest.fixture
def coupons(store, clock) -> CouponService:
    return CouponService(store, clock=clock)


@pytest.fixture
def orders(store, notifier, engine, coupons, settings, clock) -> OrderService:
    return OrderService(store, notifier, engine, coupons, settings, clock=clock)


@pytest.fixture
def drivers(store, settings, clock) -> DriverService:
    return DriverService(store, settings, clock=clock)


@pytest.fixture
def sweeper(store, orders, settings, clock) -> StaleOrderSweeper:
    return StaleOrderSweeper(store, orders, settings, clock=clock)


# =============================================================================
# DOCUMENT FACTORIES
# =============================================================================

def push_token(user_id: str) -> str:
    return f"ExponentPushToken[{user_id}]"


@pytest.fixture
def add_user(store):
    async def _add(user_id: str, role: str = "customer", with_token: bool = True):
        data = {"role": role, "name": user_id.title()}
        if with_token:
            data["expoPushToken"] = push_token(user_id)
        return await store.add(Collections.USERS, data, doc_id=user_id)
    return _add


@pytest.fixture
def add_driver(store, add_user):
    async def _add(
        driver_id: str,
        km_north: Optional[float] = None,
        is_online: bool = True,
        active_order_id: Optional[str] = None,
    ):
        await add_user(driver_id, role="driver")
        data = {"isOnline": is_online, "updatedAt": utc_now()}
        if km_north is not None:
            data["lat"], data["lng"] = north_of_restaurant(km_north)
        if active_order_id:
            data["activeOrderId"] = active_order_id
        return await store.add(Collections.DRIVERS, data, doc_id=driver_id)
    return _add


@pytest.fixture
def set_auto_dispatch(store, settings):
    async def _set(enabled: bool):
        return await store.set(
            Collections.RESTAURANTS,
            settings.restaurant_id,
            {"name": "Al Samaha", "autoDispatch": enabled},
        )
    return _set


def order_request(
    delivery: bool = True,
    payment_method: str = "COD",
    tip: float = 0.0,
    coupon_code: Optional[str] = None,
) -> OrderCreate:
    """Two shawarmas (one with extra garlic) and a mint lemonade: subtotal 25.00."""
    payload = {
        "items": [
            {
                "itemId": "shawarma",
                "name": "Chicken Shawarma",
                "qty": 2,
                "price": 9.0,
                "selectedOptions": [
                    {"modifierId": "sauce", "modifierName": "Sauce",
                     "optionName": "Extra garlic", "priceDelta": 1.0},
                ],
            },
            {"itemId": "lemonade", "name": "Mint Lemonade", "qty": 1, "price": 5.0},
        ],
        "delivery": {"type": DeliveryType.PICKUP.value},
        "paymentMethod": payment_method,
        "tip": tip,
        "couponCode": coupon_code,
    }
    if delivery:
        lat, lng = north_of_restaurant(3.0)
        payload["delivery"] = {
            "type": DeliveryType.DELIVERY.value,
            "address": {"lat": lat, "lng": lng, "line1": "12 Marina Walk"},
        }
    return OrderCreate.model_validate(payload)


@pytest.fixture
def place_order(orders, add_user):
    """Create a customer (once) and check out an order for them."""
    async def _place(customer_id: str = "customer-1", **kwargs):
        if await orders.store.get(Collections.USERS, customer_id) is None:
            await add_user(customer_id)
        return await orders.create_order(customer_id, order_request(**kwargs))
    return _place


@pytest.fixture
def make_request():
    return order_request
