"""
Notification Queue & Notifier

Push delivery is best-effort and must never hold up or fail the write that
triggered it. NotificationQueue decouples the two: callers enqueue without
waiting, a fixed pool of worker tasks drains a bounded asyncio.Queue, and
every failure is logged per message and dropped.

Notifier sits in front of the queue and resolves user ids to device tokens
through the ``users`` collection.

Usage:
    queue = NotificationQueue(gateway, maxsize=1000, workers=4)
    await queue.start()
    notifier = Notifier(store, queue)
    await notifier.notify_user(customer_id, "Order Ready", "Come and get it")
    ...
    await queue.stop()   # drains pending messages first
"""

import asyncio
import logging
from typing import Optional

from restaurant_dispatch.services.notifications.base import BasePushGateway, PushMessage
from restaurant_dispatch.services.store.base import BaseDocumentStore, FieldFilter

logger = logging.getLogger(__name__)

USERS_COLLECTION = "users"
ADMIN_ROLE = "admin"


class NotificationQueue:
    """Bounded fire-and-forget push queue with worker tasks."""

    def __init__(self, gateway: BasePushGateway, maxsize: int = 1000, workers: int = 4):
        self.gateway = gateway
        self.maxsize = maxsize
        self.worker_count = workers
        self._queue: asyncio.Queue[PushMessage] = asyncio.Queue(maxsize=maxsize)
        self._workers: list[asyncio.Task] = []
        self.delivered = 0
        self.failed = 0
        self.dropped = 0

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def enqueue(self, message: PushMessage) -> bool:
        """
        Queue a message without waiting.

        Returns:
            False if the queue is full and the message was dropped.
        """
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                f"Notification queue full ({self.maxsize}); dropped push '{message.title}'"
            )
            return False
        return True

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"push-worker-{n}")
            for n in range(self.worker_count)
        ]
        logger.info(f"Notification queue started ({self.worker_count} workers)")

    async def join(self) -> None:
        """Wait until every queued message has been processed."""
        await self._queue.join()

    async def stop(self, drain: bool = True) -> None:
        if drain and self._workers:
            await self.join()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info(
            f"Notification queue stopped (delivered={self.delivered}, "
            f"failed={self.failed}, dropped={self.dropped})"
        )

    async def _worker(self, number: int) -> None:
        while True:
            message = await self._queue.get()
            try:
                result = await self.gateway.send_message(message)
                if result.success:
                    self.delivered += 1
                else:
                    self.failed += 1
                    logger.warning(
                        f"Push '{message.title}' to {message.token} failed: {result.error_message}"
                    )
            except Exception:
                self.failed += 1
                logger.exception(f"Push worker {number} crashed sending '{message.title}'")
            finally:
                self._queue.task_done()


class Notifier:
    """Resolves recipients to push tokens and enqueues messages."""

    def __init__(self, store: BaseDocumentStore, queue: NotificationQueue):
        self.store = store
        self.queue = queue

    def push(
        self,
        token: Optional[str],
        title: str,
        body: str,
        data: Optional[dict[str, str]] = None,
    ) -> bool:
        if not token:
            return False
        return self.queue.enqueue(PushMessage(token=token, title=title, body=body, data=dict(data or {})))

    async def notify_user(
        self,
        user_id: Optional[str],
        title: str,
        body: str,
        data: Optional[dict[str, str]] = None,
    ) -> bool:
        """
        Push to a user's registered device, if any.

        Lookup errors are logged and absorbed like delivery errors.
        """
        if not user_id:
            return False
        try:
            snapshot = await self.store.get(USERS_COLLECTION, user_id)
        except Exception:
            logger.exception(f"Could not load push token for user {user_id}")
            return False

        token = snapshot.get("expoPushToken") if snapshot else None
        if not token:
            logger.debug(f"User {user_id} has no push token; skipping '{title}'")
            return False
        return self.push(token, title, body, data)

    async def notify_admins(
        self,
        title: str,
        body: str,
        data: Optional[dict[str, str]] = None,
    ) -> int:
        """Push to every admin user. Returns how many messages were queued."""
        try:
            admins = await self.store.query(
                USERS_COLLECTION, [FieldFilter("role", "==", ADMIN_ROLE)]
            )
        except Exception:
            logger.exception("Could not load admin users for notification")
            return 0

        return sum(
            1 for admin in admins
            if self.push(admin.get("expoPushToken"), title, body, data)
        )
