"""SQLDocumentStore against a throwaway SQLite database."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import event

from restaurant_dispatch.core.exceptions import (
    ConcurrentModificationError,
    DocumentExistsError,
    DocumentNotFoundError,
)
from restaurant_dispatch.models import Collections, OrderStatus
from restaurant_dispatch.services.dispatch import DispatchEngine
from restaurant_dispatch.services.notifications.queue import Notifier
from restaurant_dispatch.services.orders import OrderService
from restaurant_dispatch.services.store.base import DELETE_FIELD, FieldFilter, WriteOp
from restaurant_dispatch.services.store.sql import (
    SQLDocumentStore,
    compile_filter,
    json_deserializer,
    json_serializer,
)

from conftest import north_of_restaurant


@pytest.fixture
async def sql_store(tmp_path):
    store = SQLDocumentStore(f"sqlite+aiosqlite:///{tmp_path / 'documents.sqlite'}")
    await store.initialize()
    yield store
    await store.close()


def test_json_codec_keeps_datetimes():
    created = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    raw = json_serializer({"timestamps": {"createdAt": created}, "status": OrderStatus.READY})

    decoded = json_deserializer(raw)

    assert decoded == {"timestamps": {"createdAt": created}, "status": "READY"}
    assert decoded["timestamps"]["createdAt"].tzinfo is not None


async def test_health_check(sql_store):
    assert sql_store.provider_name == "sql"
    assert await sql_store.health_check()


async def test_add_get_update(sql_store):
    created = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    snapshot = await sql_store.add(
        "orders", {"status": "RECEIVED", "timestamps": {"createdAt": created}}
    )

    updated = await sql_store.update(
        "orders", snapshot.id, {"status": "PREPARING", "timestamps.preparingAt": created},
        expected_version=1,
    )

    assert updated.version == 2
    fetched = await sql_store.get("orders", snapshot.id)
    assert fetched.get("status") == "PREPARING"
    assert fetched.get("timestamps") == {"createdAt": created, "preparingAt": created}
    assert await sql_store.get("orders", "missing") is None


async def test_stale_version_is_rejected(sql_store):
    snapshot = await sql_store.add("orders", {"status": "RECEIVED"})
    await sql_store.update("orders", snapshot.id, {"status": "PREPARING"})

    with pytest.raises(ConcurrentModificationError):
        await sql_store.update("orders", snapshot.id, {"status": "CANCELLED"},
                               expected_version=1)
    assert (await sql_store.get("orders", snapshot.id)).get("status") == "PREPARING"


async def test_update_missing_document(sql_store):
    with pytest.raises(DocumentNotFoundError):
        await sql_store.update("drivers", "ghost", {"isOnline": True})


async def test_commit_rolls_back_as_a_whole(sql_store):
    order = await sql_store.add("orders", {"status": "RECEIVED"})
    driver = await sql_store.add("drivers", {"isOnline": True}, doc_id="d1")
    await sql_store.update("drivers", "d1", {"lat": 25.21})

    with pytest.raises(ConcurrentModificationError):
        await sql_store.commit([
            WriteOp("orders", order.id, {"driverId": "d1"}, expected_version=1),
            WriteOp("drivers", "d1", {"activeOrderId": order.id}, expected_version=driver.version),
        ])

    stored = await sql_store.get("orders", order.id)
    assert stored.get("driverId") is None
    assert stored.version == 1


async def test_delete_field(sql_store):
    await sql_store.add("drivers", {"isOnline": True, "activeOrderId": "o1"}, doc_id="d1")
    await sql_store.update("drivers", "d1", {"activeOrderId": DELETE_FIELD})
    assert "activeOrderId" not in (await sql_store.get("drivers", "d1")).data


async def test_set_replaces_document(sql_store):
    await sql_store.set("restaurants", "r1", {"autoDispatch": True, "name": "Al Samaha"})
    replaced = await sql_store.set("restaurants", "r1", {"autoDispatch": False})

    assert replaced.version == 2
    assert (await sql_store.get("restaurants", "r1")).data == {"autoDispatch": False}


async def test_query_and_subscription(sql_store):
    seen = []
    sql_store.subscribe(
        "drivers",
        lambda snaps: seen.append(sorted(s.id for s in snaps)),
        filters=[FieldFilter("isOnline", "==", True)],
    )

    await sql_store.add("drivers", {"isOnline": True, "updatedAt": 2}, doc_id="d1")
    await sql_store.add("drivers", {"isOnline": True, "updatedAt": 1}, doc_id="d2")
    await sql_store.add("drivers", {"isOnline": False}, doc_id="d3")

    online = await sql_store.query(
        "drivers", [FieldFilter("isOnline", "==", True)], order_by="updatedAt"
    )
    assert [s.id for s in online] == ["d2", "d1"]
    assert seen[-1] == ["d1", "d2"]


async def test_order_lifecycle_on_sql(sql_store, settings, clock, queue, gateway, make_request):
    notifier = Notifier(sql_store, queue)
    engine = DispatchEngine(sql_store, notifier, settings, clock=clock)
    orders = OrderService(sql_store, notifier, engine, settings=settings, clock=clock)

    lat, lng = north_of_restaurant(2.0)
    await sql_store.add(Collections.DRIVERS, {"isOnline": True, "lat": lat, "lng": lng}, doc_id="d1")
    await sql_store.set(Collections.RESTAURANTS, settings.restaurant_id, {"autoDispatch": True})

    order = await orders.create_order("customer-1", make_request())
    assert order.driver_id == "d1"
    assert order.timestamps["createdAt"] == clock.now

    for _ in range(4):
        clock.advance(minutes=5)
        order = await orders.advance(order.id)

    assert order.status == OrderStatus.DELIVERED
    stored = await orders.get_order(order.id)
    assert stored.status == OrderStatus.DELIVERED
    assert stored.items[0].selected_options[0].price_delta == 1.0
    assert "activeOrderId" not in (await sql_store.get(Collections.DRIVERS, "d1")).data
    assert [e.message for e in await orders.list_events(order.id)][-1] == "Status changed to DELIVERED"


# =============================================================================
# QUERIES IN THE DATABASE
# =============================================================================

def capture_sql(store):
    statements = []

    def before_execute(conn, cursor, statement, *args):
        statements.append(statement.lower())

    event.listen(store.engine.sync_engine, "before_cursor_execute", before_execute)
    return statements


async def seed_orders(store):
    base = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    for n, status in enumerate(["RECEIVED", "RECEIVED", "PREPARING", "RECEIVED"]):
        await store.add(
            "orders",
            {"status": status, "customerId": "c1", "timestamps": {"createdAt": base + timedelta(hours=n)}},
            doc_id=f"o{n}",
        )
    await store.add("orders", {"status": "RECEIVED", "customerId": "c2"}, doc_id="no-stamp")
    return base


@pytest.mark.parametrize("field_filter", [
    FieldFilter("status", "==", "RECEIVED"),
    FieldFilter("status", "==", OrderStatus.READY),
    FieldFilter("status", "in", ["READY", "PICKED_UP"]),
    FieldFilter("isOnline", "==", True),
    FieldFilter("minOrderAmount", ">=", 10),
    FieldFilter("timestamps.createdAt", "<=", datetime(2026, 3, 1, tzinfo=timezone.utc)),
])
def test_core_filters_compile_to_sql(field_filter):
    assert compile_filter(field_filter) is not None


@pytest.mark.parametrize("field_filter", [
    FieldFilter("status", "!=", "READY"),
    FieldFilter("driverId", "==", None),
    FieldFilter("timestamps.createdAt", "<=", datetime(2026, 3, 1)),
    FieldFilter("isOnline", ">", False),
    FieldFilter("attempt", "in", [1, 2]),
])
def test_other_filters_stay_in_python(field_filter):
    assert compile_filter(field_filter) is None


async def test_stale_order_query_runs_in_database(sql_store):
    base = await seed_orders(sql_store)
    statements = capture_sql(sql_store)

    stale = await sql_store.query("orders", [
        FieldFilter("status", "==", OrderStatus.RECEIVED),
        FieldFilter("timestamps.createdAt", "<=", base + timedelta(hours=1)),
    ])

    assert sorted(s.id for s in stale) == ["o0", "o1"]
    assert "json_extract" in statements[-1]


async def test_datetime_filter_accepts_any_offset(sql_store):
    base = await seed_orders(sql_store)
    dubai = timezone(timedelta(hours=4))

    stale = await sql_store.query(
        "orders", [FieldFilter("timestamps.createdAt", "<", base.astimezone(dubai) + timedelta(hours=1))]
    )

    assert [s.id for s in stale] == ["o0"]
    assert stale[0].get("timestamps.createdAt") == base


async def test_in_filter(sql_store):
    await seed_orders(sql_store)
    found = await sql_store.query("orders", [FieldFilter("status", "in", ["PREPARING", "READY"])])
    assert [s.id for s in found] == ["o2"]


async def test_order_and_limit_run_in_database(sql_store):
    await seed_orders(sql_store)
    statements = capture_sql(sql_store)

    latest = await sql_store.query(
        "orders",
        [FieldFilter("status", "==", "RECEIVED")],
        order_by="timestamps.createdAt",
        descending=True,
        limit=2,
    )

    assert [s.id for s in latest] == ["o3", "o1"]
    assert "order by" in statements[-1]
    assert "limit" in statements[-1]


async def test_documents_without_order_field_go_last(sql_store):
    await seed_orders(sql_store)

    ascending = await sql_store.query("orders", order_by="timestamps.createdAt")
    descending = await sql_store.query("orders", order_by="timestamps.createdAt", descending=True)

    assert [s.id for s in ascending] == ["o0", "o1", "o2", "o3", "no-stamp"]
    assert [s.id for s in descending] == ["o3", "o2", "o1", "o0", "no-stamp"]


async def test_python_filter_is_applied_before_limit(sql_store):
    await seed_orders(sql_store)

    found = await sql_store.query(
        "orders",
        [FieldFilter("customerId", "==", "c1"), FieldFilter("status", "!=", "PREPARING")],
        order_by="timestamps.createdAt",
        limit=2,
    )

    assert [s.id for s in found] == ["o0", "o1"]


async def test_add_with_existing_id_fails(sql_store):
    await sql_store.add("drivers", {"isOnline": True}, doc_id="d1")

    with pytest.raises(DocumentExistsError):
        await sql_store.add("drivers", {"isOnline": False}, doc_id="d1")

    assert (await sql_store.get("drivers", "d1")).get("isOnline") is True
