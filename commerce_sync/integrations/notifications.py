"""
Notification dispatcher for outbox events.

Delivery is best-effort: the outbox publisher logs dispatcher failures and
retries on the next poll. Email rendering and delivery live behind the
configured notification endpoint.
"""
from typing import Any, Dict, Optional

import httpx
import structlog

logger = structlog.get_logger(__name__)


class NotificationDispatcher:
    """POSTs outbox events to a notification endpoint, or logs them when none is set."""

    def __init__(
        self,
        endpoint_url: Optional[str] = None,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.endpoint_url = endpoint_url
        self._client = client
        self._owns_client = client is None
        self.timeout_seconds = timeout_seconds

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    async def dispatch(self, event: Dict[str, Any]) -> None:
        """
        Deliver one notification event.

        Raises:
            httpx.HTTPError: If the endpoint is unreachable or rejects the event
        """
        if self.endpoint_url is None:
            logger.info(
                "notification_logged",
                event_type=event.get("event_type"),
                aggregate_id=event.get("aggregate_id"),
                payload=event.get("payload"),
            )
            return

        client = await self._ensure_client()
        response = await client.post(self.endpoint_url, json=event)
        response.raise_for_status()
        logger.info(
            "notification_dispatched",
            event_type=event.get("event_type"),
            aggregate_id=event.get("aggregate_id"),
            status_code=response.status_code,
        )

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
