"""Nearest-driver selection, atomic binding and driver release."""

import pytest

from restaurant_dispatch.core.exceptions import (
    ConcurrentModificationError,
    DriverNotFoundError,
    DriverUnavailableError,
    FailedPreconditionError,
    InvalidArgumentError,
    OrderNotFoundError,
)
from restaurant_dispatch.models import Collections, Driver, EventType, OrderStatus
from restaurant_dispatch.services.dispatch import select_nearest_driver
from restaurant_dispatch.services.geo import Coordinates, haversine_km
from restaurant_dispatch.services.store.base import WriteOp

from conftest import RESTAURANT_LAT, RESTAURANT_LNG, north_of_restaurant, push_token

ORIGIN = Coordinates(RESTAURANT_LAT, RESTAURANT_LNG)


def driver_at(driver_id, km_north, is_online=True, active_order_id=None) -> Driver:
    lat, lng = north_of_restaurant(km_north)
    return Driver(
        id=driver_id,
        is_online=is_online,
        active_order_id=active_order_id,
        lat=lat,
        lng=lng,
    )


# =============================================================================
# SELECTION
# =============================================================================

def test_selects_nearest_within_radius():
    drivers = [driver_at("far", 6.0), driver_at("near", 1.5), driver_at("mid", 3.0)]
    candidate = select_nearest_driver(drivers, ORIGIN, radius_km=8.0)
    assert candidate.driver.id == "near"
    assert candidate.distance_km == pytest.approx(1.5, abs=1e-6)


def test_drivers_outside_radius_are_ignored():
    assert select_nearest_driver([driver_at("far", 9.0)], ORIGIN, radius_km=8.0) is None


def test_radius_is_inclusive():
    driver = driver_at("edge", 8.0)
    exact = haversine_km(ORIGIN.lat, ORIGIN.lng, driver.lat, driver.lng)
    candidate = select_nearest_driver([driver], ORIGIN, radius_km=exact)
    assert candidate is not None
    assert candidate.driver.id == "edge"


def test_offline_busy_and_unpositioned_drivers_are_skipped():
    drivers = [
        driver_at("offline", 0.5, is_online=False),
        driver_at("busy", 0.7, active_order_id="order-x"),
        Driver(id="no-fix", is_online=True),
        driver_at("free", 4.0),
    ]
    candidate = select_nearest_driver(drivers, ORIGIN, radius_km=8.0)
    assert candidate.driver.id == "free"


def test_zero_coordinates_are_a_real_position():
    driver = Driver(id="null-island", is_online=True, lat=0.0, lng=0.0)
    candidate = select_nearest_driver([driver], Coordinates(0.0, 0.0), radius_km=1.0)
    assert candidate.driver.id == "null-island"
    assert candidate.distance_km == 0.0


def test_equal_distance_keeps_first_driver():
    drivers = [driver_at("first", 2.0), driver_at("second", 2.0)]
    assert select_nearest_driver(drivers, ORIGIN, radius_km=8.0).driver.id == "first"


def test_no_drivers():
    assert select_nearest_driver([], ORIGIN, radius_km=8.0) is None


# =============================================================================
# AUTO-DISPATCH
# =============================================================================

async def test_auto_dispatch_binds_order_and_driver(engine, store, queue, gateway, add_driver, place_order):
    await add_driver("driver-far", km_north=5.0)
    await add_driver("driver-near", km_north=3.0)
    order = await place_order()

    result = await engine.auto_dispatch(order.id)

    assert result.assigned
    assert result.driver_id == "driver-near"
    assert result.distance_km == pytest.approx(3.0, abs=1e-6)

    order_doc = await store.get(Collections.ORDERS, order.id)
    driver_doc = await store.get(Collections.DRIVERS, "driver-near")
    assert order_doc.get("driverId") == "driver-near"
    assert driver_doc.get("activeOrderId") == order.id
    assert (await store.get(Collections.DRIVERS, "driver-far")).get("activeOrderId") is None

    await queue.join()
    [push] = gateway.messages_for(push_token("driver-near"))
    assert push.title == "🚀 New Delivery!"
    assert push.body == f"You've been assigned order #{order.reference}"
    assert push.data == {"orderId": order.id}


async def test_auto_dispatch_records_assignment_event(engine, orders, add_driver, place_order):
    await add_driver("driver-1", km_north=2.0)
    order = await place_order()

    await engine.auto_dispatch(order.id)

    events = await orders.list_events(order.id)
    assert [(e.type, e.message) for e in events] == [
        (EventType.STATUS_CHANGE, "Order received"),
        (EventType.DRIVER_ASSIGNED, "Driver driver-1 assigned"),
    ]


async def test_auto_dispatch_without_driver_in_range(engine, store, add_driver, place_order):
    await add_driver("driver-far", km_north=12.0)
    await add_driver("driver-offline", km_north=1.0, is_online=False)
    order = await place_order()

    result = await engine.auto_dispatch(order.id)

    assert not result.assigned
    assert result.reason == "no-driver"
    assert (await store.get(Collections.ORDERS, order.id)).get("driverId") is None
    assert result.to_dict() == {
        "orderId": order.id,
        "assigned": False,
        "driverId": None,
        "distanceKm": None,
        "reason": "no-driver",
    }


async def test_auto_dispatch_is_a_no_op_for_assigned_order(engine, add_driver, place_order):
    await add_driver("driver-1", km_north=2.0)
    await add_driver("driver-2", km_north=1.0)
    order = await place_order()
    await engine.assign(order.id, "driver-1")

    result = await engine.auto_dispatch(order.id)

    assert not result.assigned
    assert result.reason == "already-assigned"
    assert result.driver_id == "driver-1"


async def test_auto_dispatch_skips_finished_orders(engine, orders, add_driver, place_order):
    await add_driver("driver-1", km_north=2.0)
    order = await place_order()
    await orders.cancel(order.id)

    result = await engine.auto_dispatch(order.id)

    assert result.reason == "order-closed"


async def test_auto_dispatch_argument_errors(engine):
    with pytest.raises(InvalidArgumentError):
        await engine.auto_dispatch("")
    with pytest.raises(OrderNotFoundError):
        await engine.auto_dispatch("missing-order")


async def test_lost_race_reselects_on_fresh_data(engine, store, add_driver, place_order, monkeypatch):
    await add_driver("driver-near", km_north=1.0)
    await add_driver("driver-far", km_north=4.0)
    order = await place_order()

    original_commit = store.commit
    calls = []

    async def racing_commit(writes):
        calls.append(writes)
        if len(calls) == 1:
            # Another dispatch grabs the nearest driver in between
            await original_commit([
                WriteOp(Collections.DRIVERS, "driver-near", {"activeOrderId": "order-other"})
            ])
        return await original_commit(writes)

    monkeypatch.setattr(store, "commit", racing_commit)

    result = await engine.auto_dispatch(order.id)

    assert len(calls) == 2
    assert result.driver_id == "driver-far"
    assert (await store.get(Collections.DRIVERS, "driver-near")).get("activeOrderId") == "order-other"
    assert (await store.get(Collections.DRIVERS, "driver-far")).get("activeOrderId") == order.id


async def test_gives_up_after_max_attempts(engine, store, settings, add_driver, place_order, monkeypatch):
    await add_driver("driver-1", km_north=1.0)
    order = await place_order()
    calls = []

    async def always_conflicts(writes):
        calls.append(writes)
        raise ConcurrentModificationError(Collections.ORDERS, order.id, 1, 2)

    monkeypatch.setattr(store, "commit", always_conflicts)

    with pytest.raises(ConcurrentModificationError):
        await engine.auto_dispatch(order.id)
    assert len(calls) == settings.dispatch_max_attempts


async def test_binding_is_all_or_nothing(engine, store, add_driver, place_order):
    await add_driver("driver-1", km_north=1.0)
    order = await place_order()
    driver_doc = await store.get(Collections.DRIVERS, "driver-1")
    order_doc = await store.get(Collections.ORDERS, order.id)

    # Driver moved since it was read: neither document may change
    await store.update(Collections.DRIVERS, "driver-1", {"lat": 25.3})
    with pytest.raises(ConcurrentModificationError):
        await engine._bind(order_doc, "driver-1", driver_doc.version)

    assert (await store.get(Collections.ORDERS, order.id)).get("driverId") is None
    assert (await store.get(Collections.DRIVERS, "driver-1")).get("activeOrderId") is None


# =============================================================================
# MANUAL ASSIGNMENT
# =============================================================================

async def test_manual_assignment(engine, store, add_driver, place_order):
    await add_driver("driver-1", km_north=6.0)
    order = await place_order()

    result = await engine.assign(order.id, "driver-1")

    assert result.assigned
    assert result.distance_km == pytest.approx(6.0, abs=1e-6)
    assert (await store.get(Collections.DRIVERS, "driver-1")).get("activeOrderId") == order.id


async def test_manual_assignment_outside_radius_is_allowed(engine, add_driver, place_order):
    await add_driver("driver-1", km_north=20.0)
    order = await place_order()
    assert (await engine.assign(order.id, "driver-1")).assigned


async def test_manual_assignment_of_same_driver_is_idempotent(engine, add_driver, place_order):
    await add_driver("driver-1", km_north=1.0)
    order = await place_order()
    await engine.assign(order.id, "driver-1")

    result = await engine.assign(order.id, "driver-1")
    assert not result.assigned
    assert result.reason == "already-assigned"


async def test_manual_assignment_errors(engine, orders, add_driver, place_order):
    await add_driver("busy", km_north=1.0, active_order_id="order-x")
    await add_driver("offline", km_north=1.0, is_online=False)
    await add_driver("driver-1", km_north=1.0)
    await add_driver("driver-2", km_north=1.0)
    order = await place_order()

    with pytest.raises(InvalidArgumentError):
        await engine.assign(order.id, "")
    with pytest.raises(DriverNotFoundError):
        await engine.assign(order.id, "ghost")
    with pytest.raises(DriverUnavailableError):
        await engine.assign(order.id, "busy")
    with pytest.raises(DriverUnavailableError):
        await engine.assign(order.id, "offline")

    await engine.assign(order.id, "driver-1")
    with pytest.raises(FailedPreconditionError):
        await engine.assign(order.id, "driver-2")

    other = await place_order()
    await orders.cancel(other.id)
    with pytest.raises(FailedPreconditionError):
        await engine.assign(other.id, "driver-2")


# =============================================================================
# RELEASE
# =============================================================================

async def test_release_clears_matching_slot(engine, store, add_driver):
    await add_driver("driver-1", km_north=1.0, active_order_id="order-1")

    assert await engine.release_driver("driver-1", "order-1") is True

    snapshot = await store.get(Collections.DRIVERS, "driver-1")
    assert "activeOrderId" not in snapshot.data
    assert Driver.from_snapshot(snapshot).is_available


async def test_release_leaves_other_order_alone(engine, store, add_driver):
    await add_driver("driver-1", km_north=1.0, active_order_id="order-2")

    assert await engine.release_driver("driver-1", "order-1") is False
    assert (await store.get(Collections.DRIVERS, "driver-1")).get("activeOrderId") == "order-2"


async def test_release_of_unknown_driver(engine):
    assert await engine.release_driver("ghost", "order-1") is False


async def test_released_driver_can_be_dispatched_again(engine, orders, store, add_driver, place_order):
    await add_driver("driver-1", km_north=1.0)
    first = await place_order()
    await engine.auto_dispatch(first.id)
    for status in (OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.PICKED_UP, OrderStatus.DELIVERED):
        await orders.transition(first.id, status)

    second = await place_order()
    result = await engine.auto_dispatch(second.id)

    assert result.driver_id == "driver-1"
    assert (await store.get(Collections.DRIVERS, "driver-1")).get("activeOrderId") == second.id
