"""
Stale-Order Sweeper

Cancels orders that have sat in RECEIVED for STALE_ORDER_THRESHOLD_HOURS or
longer. Runs every SWEEP_INTERVAL_MINUTES: from Celery beat when orders live in
the SQL store, and as an asyncio task owned by the API process in
development, where the in-memory store only exists inside that process.

Each stale order is cancelled through OrderService.transition, so a swept
order gets exactly the effects of a manual cancel (cancelledAt stamp, audit
event, customer push). Orders are processed concurrently and independently:
a failure is logged and counted, never retried in the same run.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from restaurant_dispatch.core.config import Settings, get_settings
from restaurant_dispatch.models import Collections, OrderStatus, utc_now
from restaurant_dispatch.services.orders import OrderService
from restaurant_dispatch.services.state_machine import CREATED_AT
from restaurant_dispatch.services.store.base import BaseDocumentStore, FieldFilter

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    scanned: int = 0
    cancelled: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "scanned": self.scanned,
            "cancelled": len(self.cancelled),
            "failed": len(self.failed),
            "skipped": len(self.skipped),
            "cancelled_ids": list(self.cancelled),
        }


class StaleOrderSweeper:
    def __init__(
        self,
        store: BaseDocumentStore,
        order_service: OrderService,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.orders = order_service
        self.settings = settings or get_settings()
        self.clock = clock

    @property
    def threshold(self) -> timedelta:
        return timedelta(hours=self.settings.stale_order_threshold_hours)

    async def find_stale(self, now: datetime) -> list[str]:
        """Ids of RECEIVED orders created at or before ``now - threshold``."""
        snapshots = await self.store.query(
            Collections.ORDERS,
            [
                FieldFilter("status", "==", OrderStatus.RECEIVED.value),
                FieldFilter(f"timestamps.{CREATED_AT}", "<=", now - self.threshold),
            ],
        )
        return [s.id for s in snapshots]

    async def run(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or self.clock()
        order_ids = await self.find_stale(now)
        report = SweepReport(scanned=len(order_ids))

        if not order_ids:
            logger.info("🧹 Stale-order sweep: nothing to cancel")
            return report

        results = await asyncio.gather(
            *(
                self.orders.transition(
                    order_id, OrderStatus.CANCELLED, from_status=OrderStatus.RECEIVED
                )
                for order_id in order_ids
            ),
            return_exceptions=True,
        )

        for order_id, result in zip(order_ids, results):
            if isinstance(result, Exception):
                report.failed[order_id] = str(result)
                logger.error(f"Could not cancel stale order {order_id}: {result}")
            elif result.status == OrderStatus.CANCELLED:
                report.cancelled.append(order_id)
            else:
                # Moved on since the query ran
                report.skipped.append(order_id)

        logger.info(
            f"🧹 Stale-order sweep: {len(report.cancelled)} cancelled, "
            f"{len(report.failed)} failed (of {report.scanned})"
        )
        return report

    async def run_every(self, interval_seconds: float) -> None:
        """Sweep once per interval until cancelled. A failed run is logged."""
        logger.info(f"🧹 In-process sweep every {interval_seconds:g}s")
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.run()
            except Exception as e:
                logger.error(f"Stale-order sweep failed: {e}")
