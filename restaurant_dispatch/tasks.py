"""
Celery Tasks
Background jobs: the periodic stale-order sweep and dispatch retries.

Each run builds its own store, push queue and services inside
``asyncio.run`` and tears them down afterwards; nothing is shared with the
API process or between runs. With ENV_MODE=development that store is a
fresh in-memory one, so the tasks only reach live orders in the SQL modes;
the API process runs the development sweep itself.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from restaurant_dispatch.celery_worker import celery_app
from restaurant_dispatch.core.config import get_settings
from restaurant_dispatch.core.exceptions import ConcurrentModificationError
from restaurant_dispatch.services.dispatch import DispatchEngine
from restaurant_dispatch.services.notifications import create_push_gateway
from restaurant_dispatch.services.notifications.queue import NotificationQueue, Notifier
from restaurant_dispatch.services.orders import OrderService
from restaurant_dispatch.services.store import create_document_store
from restaurant_dispatch.services.sweeper import StaleOrderSweeper

logger = logging.getLogger(__name__)


@asynccontextmanager
async def task_services():
    """Fresh OrderService (and its infrastructure) for one task run."""
    settings = get_settings()
    store = create_document_store(settings)
    await store.initialize()
    if settings.is_development:
        logger.warning("⚠️ Task running against an isolated in-memory store")

    gateway = create_push_gateway()
    queue = NotificationQueue(
        gateway,
        maxsize=settings.notification_queue_size,
        workers=settings.notification_workers,
    )
    await queue.start()

    notifier = Notifier(store, queue)
    engine = DispatchEngine(store, notifier, settings)
    try:
        yield OrderService(store, notifier, engine, settings=settings)
    finally:
        await queue.stop(drain=True)
        await gateway.close()
        await store.close()


async def _sweep() -> dict:
    async with task_services() as orders:
        sweeper = StaleOrderSweeper(orders.store, orders, orders.settings)
        report = await sweeper.run()
        return report.to_dict()


async def _dispatch(order_id: str) -> dict:
    async with task_services() as orders:
        result = await orders.dispatch.auto_dispatch(order_id)
        return result.to_dict()


@celery_app.task(bind=True)
def sweep_stale_orders(self) -> dict:
    """
    Cancel orders stuck in RECEIVED past the stale threshold.
    Scheduled by beat every SWEEP_INTERVAL_MINUTES.
    """
    task_id = self.request.id
    logger.info(f"🧹 Task {task_id}: Sweeping stale orders")
    start_time = time.time()

    result = asyncio.run(_sweep())

    elapsed = round(time.time() - start_time, 3)
    result['task_id'] = task_id
    result['processing_time_seconds'] = elapsed
    logger.info(
        f"✅ Task {task_id}: {result['cancelled']} cancelled, "
        f"{result['failed']} failed in {elapsed}s"
    )
    return result


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    autoretry_for=(ConcurrentModificationError,),
    retry_backoff=True
)
def dispatch_order(self, order_id: str) -> dict:
    """
    Run auto-dispatch for one order.
    Used to retry orders that found no driver at creation time.
    """
    task_id = self.request.id
    logger.info(f"🛵 Task {task_id}: Dispatching order {order_id}")

    result = asyncio.run(_dispatch(order_id))

    if result['assigned']:
        logger.info(f"✅ Task {task_id}: Order {order_id} → driver {result['driverId']}")
    else:
        logger.info(f"⚠️ Task {task_id}: Order {order_id} not assigned ({result['reason']})")
    return result


@celery_app.task
def health_check() -> dict:
    """
    Simple health check task to verify Celery is working.
    """
    return {
        'status': 'healthy',
        'worker': 'celery',
        'timestamp': datetime.now(timezone.utc).isoformat()
    }
