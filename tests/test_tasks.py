"""Celery tasks executed eagerly (development settings, no broker)."""

from datetime import timedelta

import pytest

from restaurant_dispatch.celery_worker import celery_app
from restaurant_dispatch.core.config import get_settings
from restaurant_dispatch.core.exceptions import OrderNotFoundError
from restaurant_dispatch.tasks import dispatch_order, health_check, sweep_stale_orders, task_services


def test_sweep_is_scheduled():
    entry = celery_app.conf.beat_schedule["sweep-stale-orders"]
    assert entry["task"] == "restaurant_dispatch.tasks.sweep_stale_orders"
    assert entry["schedule"] == timedelta(minutes=get_settings().sweep_interval_minutes)


def test_development_sweep_task_sees_only_its_own_store():
    # Live development orders are swept by the API process instead
    result = sweep_stale_orders.apply().get()

    assert result["scanned"] == 0
    assert result["cancelled"] == 0
    assert result["cancelled_ids"] == []
    assert "processing_time_seconds" in result


def test_dispatch_task_propagates_missing_order():
    with pytest.raises(OrderNotFoundError):
        dispatch_order.apply(args=("missing",)).get()


def test_health_check_task():
    assert health_check.apply().get()["status"] == "healthy"


async def test_task_services_build_isolated_stack():
    async with task_services() as orders:
        assert orders.store.provider_name == "memory"
        assert orders.notifier.queue.running
        queue = orders.notifier.queue
    assert not queue.running
