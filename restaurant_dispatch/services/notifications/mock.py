"""
Mock Push Gateway

Simulates push delivery for development.
No actual messages are sent - just logged and kept in ``sent``.
"""

import asyncio
import logging
import random
import uuid
from typing import Optional

from restaurant_dispatch.services.notifications.base import (
    BasePushGateway,
    NotificationResult,
    PushMessage,
)

logger = logging.getLogger(__name__)


class MockPushGateway(BasePushGateway):
    """Mock push gateway for development and tests."""

    def __init__(
        self,
        failure_rate: float = 0.0,
        min_latency: float = 0.0,
        max_latency: float = 0.0,
    ):
        self.failure_rate = failure_rate
        self.min_latency = min_latency
        self.max_latency = max_latency
        self.sent: list[PushMessage] = []
        self.failed: list[PushMessage] = []
        logger.info(f"MockPushGateway initialized (failure_rate={failure_rate:.0%})")

    @property
    def provider_name(self) -> str:
        return "mock"

    async def _simulate_latency(self) -> None:
        """Simulate network latency."""
        if self.max_latency > 0:
            await asyncio.sleep(random.uniform(self.min_latency, self.max_latency))

    def _should_fail(self) -> bool:
        return random.random() < self.failure_rate

    async def send(
        self,
        token: str,
        title: str,
        body: str,
        data: Optional[dict[str, str]] = None,
    ) -> NotificationResult:
        """Simulate sending a push."""
        await self._simulate_latency()
        message = PushMessage(token=token, title=title, body=body, data=dict(data or {}))

        if self._should_fail():
            self.failed.append(message)
            logger.warning(f"Mock push failed (simulated) to {token}")
            return NotificationResult(
                success=False,
                error_message="Simulated push failure",
                provider="mock",
            )

        self.sent.append(message)
        message_id = f"push_mock_{uuid.uuid4().hex[:12]}"
        logger.info(f"Mock push sent to {token}: {title} (ID: {message_id})")

        return NotificationResult(success=True, message_id=message_id, provider="mock")

    def messages_for(self, token: str) -> list[PushMessage]:
        return [m for m in self.sent if m.token == token]

    async def health_check(self) -> bool:
        """Mock always returns healthy."""
        return True
