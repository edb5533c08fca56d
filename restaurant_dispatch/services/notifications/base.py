"""
Push Gateway Abstract Base Class

Defines the interface for delivering a push message to one device.
Supports both Mock (development) and Expo (production) implementations.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class NotificationResult:
    """Result from sending a notification."""
    success: bool
    message_id: Optional[str] = None
    error_message: Optional[str] = None
    provider: str = "unknown"


@dataclass(frozen=True)
class PushMessage:
    """A push addressed to one device token."""
    token: str
    title: str
    body: str
    data: dict[str, str] = field(default_factory=dict)


class BasePushGateway(ABC):
    """Abstract base class for push gateways."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name."""
        pass

    @abstractmethod
    async def send(
        self,
        token: str,
        title: str,
        body: str,
        data: Optional[dict[str, str]] = None,
    ) -> NotificationResult:
        """Deliver one push message. Never raises for delivery failures."""
        pass

    async def send_message(self, message: PushMessage) -> NotificationResult:
        return await self.send(message.token, message.title, message.body, message.data)

    @abstractmethod
    async def health_check(self) -> bool:
        """Check service connectivity."""
        pass

    async def close(self) -> None:
        """Release transport resources."""
