"""HTTP transport shared by marketplace adapters, with error classification."""
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

import httpx
import structlog

from commerce_sync.core.errors import (
    AdapterErrorType,
    PermanentAdapterFailure,
    TransientAdapterFailure,
)
from commerce_sync.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


def to_cents(value: Any) -> int:
    """Convert a decimal money string ("12.99") to integer minor units."""
    if value is None or value == "":
        return 0
    return int((Decimal(str(value)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(amount_cents: int) -> str:
    return str((Decimal(amount_cents) / 100).quantize(Decimal("0.01")))


class ChannelHttpClient:
    """
    Thin wrapper over httpx.AsyncClient.

    Classifies failures:
    - timeouts, transport errors, 408/425/5xx -> TransientAdapterFailure
    - 429 -> TransientAdapterFailure(RATE_LIMIT)
    - other 4xx -> PermanentAdapterFailure
    """

    def __init__(
        self,
        channel: str,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.channel = channel
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            base_url=base_url,
            headers=headers or {},
            timeout=timeout_seconds,
        )

    async def request(
        self,
        method: str,
        path: str,
        operation: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None,
    ) -> Any:
        """
        Send a request and return the decoded JSON body (None when empty).

        Raises:
            TransientAdapterFailure: On retryable failures
            PermanentAdapterFailure: On non-retryable failures
        """
        try:
            response = await self.client.request(method, path, params=params, json=json)
        except httpx.TimeoutException as e:
            metrics.record_adapter_call(self.channel, operation, "timeout")
            raise TransientAdapterFailure(
                f"{self.channel} {operation} timed out", original_error=e
            ) from e
        except httpx.TransportError as e:
            metrics.record_adapter_call(self.channel, operation, "network_error")
            raise TransientAdapterFailure(
                f"{self.channel} {operation} network error: {e}", original_error=e
            ) from e

        metrics.record_adapter_call(self.channel, operation, str(response.status_code))

        if response.status_code == 429:
            raise TransientAdapterFailure(
                f"{self.channel} {operation} rate limited",
                error_type=AdapterErrorType.RATE_LIMIT,
            )
        if response.status_code in RETRYABLE_STATUS_CODES:
            raise TransientAdapterFailure(
                f"{self.channel} {operation} failed with HTTP {response.status_code}"
            )
        if response.status_code >= 400:
            logger.warning(
                "channel_request_rejected",
                channel=self.channel,
                operation=operation,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise PermanentAdapterFailure(
                f"{self.channel} {operation} rejected with HTTP {response.status_code}: "
                f"{response.text[:200]}",
                status_code=response.status_code,
            )

        if not response.content:
            return None
        return response.json()

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()
