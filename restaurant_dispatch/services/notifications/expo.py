"""
Expo Push Gateway

Production implementation posting to the Expo push API with httpx.
Only Expo device tokens ("ExponentPushToken[...]") are deliverable; anything
else is rejected locally without a network call.
"""

import logging
from typing import Optional

import httpx

from restaurant_dispatch.core.config import get_settings
from restaurant_dispatch.services.notifications.base import (
    BasePushGateway,
    NotificationResult,
)

logger = logging.getLogger(__name__)

EXPO_TOKEN_PREFIX = "ExponentPushToken"


class ExpoPushGateway(BasePushGateway):
    """Push gateway backed by the Expo push service."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        settings = get_settings()
        self.push_url = settings.expo_push_url

        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if settings.expo_access_token:
            headers["Authorization"] = f"Bearer {settings.expo_access_token}"
        else:
            logger.warning("Expo access token not configured")

        self._client = client or httpx.AsyncClient(
            headers=headers,
            timeout=settings.push_timeout_seconds,
        )
        logger.info("ExpoPushGateway initialized")

    @property
    def provider_name(self) -> str:
        return "expo"

    async def send(
        self,
        token: str,
        title: str,
        body: str,
        data: Optional[dict[str, str]] = None,
    ) -> NotificationResult:
        """Send a push via Expo."""
        if not token or not token.startswith(EXPO_TOKEN_PREFIX):
            logger.debug(f"Skipping non-Expo push token: {token!r}")
            return NotificationResult(
                success=False,
                error_message="Not an Expo push token",
                provider="expo",
            )

        payload = {
            "to": token,
            "title": title,
            "body": body,
            "data": data or {},
            "sound": "default",
            "priority": "high",
        }

        try:
            response = await self._client.post(self.push_url, json=payload)
            response.raise_for_status()
            ticket = response.json().get("data", {})
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Expo push error: {e}")
            return NotificationResult(success=False, error_message=str(e), provider="expo")

        if ticket.get("status") == "error":
            message = ticket.get("message", "Expo rejected the message")
            logger.error(f"Expo push rejected for {token}: {message}")
            return NotificationResult(success=False, error_message=message, provider="expo")

        logger.info(f"Push sent to {token}: {ticket.get('id')}")
        return NotificationResult(success=True, message_id=ticket.get("id"), provider="expo")

    async def close(self) -> None:
        await self._client.aclose()

    async def health_check(self) -> bool:
        """Expo has no ping endpoint; a reachable host counts as healthy."""
        try:
            response = await self._client.head(self.push_url)
            return response.status_code < 500
        except httpx.HTTPError:
            return False
