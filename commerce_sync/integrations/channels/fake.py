"""
In-memory marketplace for local runs and tests.

Deterministic: listing ids are derived from the channel and SKU, orders are
whatever was seeded. Failures and latency can be scripted per operation and key.
"""
import asyncio
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

import structlog

from commerce_sync.core.clock import as_utc
from commerce_sync.core.states import FakeOrderStatus
from commerce_sync.integrations.channels.base import (
    CatalogEntry,
    ChannelAdapter,
    ExternalOrder,
    ExternalRef,
    RejectedOrder,
    TrackingInfo,
)

logger = structlog.get_logger(__name__)


class FakeChannelAdapter(ChannelAdapter):
    """
    Scriptable ChannelAdapter.

    Example:
        adapter = FakeChannelAdapter("fake")
        adapter.fail("publish_catalog_entry", "SKU-1", TransientAdapterFailure("503"), times=2)
        adapter.add_order(order)
    """

    status_enum = FakeOrderStatus

    def __init__(self, channel: str = "fake", page_size: int = 50):
        super().__init__(channel)
        self.page_size = page_size
        self.listings: Dict[str, Dict[str, Any]] = {}
        self.orders: Dict[str, ExternalOrder] = {}
        self.fulfillments: Dict[str, TrackingInfo] = {}
        self.refunds: List[Dict[str, Any]] = []
        self.relists: List[str] = []
        self.rejected: List[RejectedOrder] = []
        self.calls: List[Tuple[str, Optional[str]]] = []
        self.pages_fetched = 0
        self._failures: Dict[Tuple[str, Optional[str]], List[Exception]] = defaultdict(list)
        self._delays: Dict[Tuple[str, Optional[str]], float] = {}

    # Scripting

    def fail(self, operation: str, key: Optional[str], error: Exception, times: int = 1) -> None:
        """Raise `error` on the next `times` calls of operation for key (None = any key)."""
        self._failures[(operation, key)].extend([error] * times)

    def delay(self, operation: str, seconds: float, key: Optional[str] = None) -> None:
        self._delays[(operation, key)] = seconds

    def add_order(self, order: ExternalOrder) -> None:
        self.orders[order.external_id] = order

    def add_unparseable_order(self, external_id: Optional[str], error: str) -> None:
        """Return a RejectedOrder alongside the seeded orders on the next fetch."""
        self.rejected.append(RejectedOrder(external_id=external_id, error=error))

    def call_count(self, operation: str, key: Optional[str] = None) -> int:
        return sum(
            1 for op, k in self.calls if op == operation and (key is None or k == key)
        )

    async def _enter(self, operation: str, key: Optional[str]) -> None:
        self.calls.append((operation, key))

        seconds = self._delays.get((operation, key), self._delays.get((operation, None)))
        if seconds:
            await asyncio.sleep(seconds)

        for failure_key in ((operation, key), (operation, None)):
            queued = self._failures.get(failure_key)
            if queued:
                raise queued.pop(0)

    # ChannelAdapter

    async def publish_catalog_entry(
        self,
        entry: CatalogEntry,
        existing: Optional[ExternalRef] = None,
        relist: bool = False,
    ) -> ExternalRef:
        await self._enter("publish_catalog_entry", entry.sku)

        external_id = existing.external_id if existing else f"{self.channel}_{entry.sku}"
        listing = self.listings.setdefault(external_id, {"created": True, "updates": 0})
        if existing is not None or "sku" in listing:
            listing["updates"] += 1
        listing.update(
            sku=entry.sku,
            title=entry.title,
            price_cents=entry.price_cents,
            currency=entry.currency,
            quantity=entry.quantity,
            active=True,
        )
        if relist:
            self.relists.append(external_id)
        return ExternalRef(
            external_id=external_id,
            external_sku=entry.sku,
            url=f"https://marketplace.invalid/{self.channel}/{external_id}",
            data={"listing_id": external_id},
        )

    async def update_stock(self, ref: ExternalRef, quantity: int) -> None:
        await self._enter("update_stock", ref.external_sku)
        self.listings.setdefault(ref.external_id, {"updates": 0})["quantity"] = quantity

    async def update_price(self, ref: ExternalRef, amount_cents: int, currency: str) -> None:
        await self._enter("update_price", ref.external_sku)
        listing = self.listings.setdefault(ref.external_id, {"updates": 0})
        listing["price_cents"] = amount_cents
        listing["currency"] = currency

    async def end_listing(self, ref: ExternalRef, reason: str = "NOT_AVAILABLE") -> None:
        await self._enter("end_listing", ref.external_sku)
        listing = self.listings.setdefault(ref.external_id, {"updates": 0})
        listing["active"] = False
        listing["end_reason"] = reason

    async def fetch_orders_since(
        self, since: datetime
    ) -> List[Union[ExternalOrder, RejectedOrder]]:
        since = as_utc(since)
        matching = sorted(
            (order for order in self.orders.values() if as_utc(order.sort_key) >= since),
            key=lambda order: order.sort_key,
        )

        # Walk pages the way a real API would
        collected: List[Union[ExternalOrder, RejectedOrder]] = []
        offset = 0
        while True:
            await self._enter("fetch_orders_since", None)
            self.pages_fetched += 1
            page = matching[offset:offset + self.page_size]
            collected.extend(page)
            offset += len(page)
            if len(page) < self.page_size:
                break
        collected.extend(self.rejected)
        self.rejected = []
        return collected

    async def fulfill_order(self, external_order_id: str, tracking: TrackingInfo) -> None:
        await self._enter("fulfill_order", external_order_id)
        self.fulfillments[external_order_id] = tracking

    async def issue_refund(
        self,
        external_order_id: str,
        line_ref: Optional[str],
        amount_cents: int,
        reason: str,
    ) -> Dict[str, Any]:
        await self._enter("issue_refund", external_order_id)
        refund = {
            "refund_id": f"refund_{len(self.refunds) + 1}",
            "status": "REFUNDED",
            "amount_cents": amount_cents,
            "external_order_id": external_order_id,
            "line_ref": line_ref,
            "reason": reason,
        }
        self.refunds.append(refund)
        return refund
