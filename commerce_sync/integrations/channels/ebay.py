"""
eBay adapter over the Sell Inventory and Sell Fulfillment REST APIs.

Listings are an inventory item (keyed by SKU) plus an offer. The offer id is
the listing's external id; the published listing id lives in platform data.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

import httpx
import structlog

from commerce_sync.config import MarketplaceChannelConfig
from commerce_sync.core.clock import utcnow
from commerce_sync.core.errors import PermanentAdapterFailure
from commerce_sync.core.states import EbayOrderStatus
from commerce_sync.integrations.channels.base import (
    CatalogEntry,
    ChannelAdapter,
    ExternalBuyer,
    ExternalOrder,
    ExternalOrderLine,
    ExternalRef,
    RejectedOrder,
    TrackingInfo,
)
from commerce_sync.integrations.channels.http import ChannelHttpClient, from_cents, to_cents

logger = structlog.get_logger(__name__)

INVENTORY_PATH = "/sell/inventory/v1"
FULFILLMENT_PATH = "/sell/fulfillment/v1"

LISTING_URL = "https://www.ebay.co.uk/itm/{listing_id}"


def parse_ebay_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_ebay_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def normalise_order_status(order: Dict[str, Any]) -> str:
    """
    Collapse eBay's payment, fulfilment and cancel states into one EbayOrderStatus value.

    Unrecognised payment states are passed through so status translation can
    log them.
    """
    cancel_state = (order.get("cancelStatus") or {}).get("cancelState")
    if cancel_state == "CANCELED":
        return EbayOrderStatus.CANCELLED.value

    payment_status = order.get("orderPaymentStatus")
    if payment_status == "FULLY_REFUNDED":
        return EbayOrderStatus.REFUNDED.value

    fulfillment_status = order.get("orderFulfillmentStatus")
    if fulfillment_status == "FULFILLED":
        return EbayOrderStatus.SHIPPED.value
    if fulfillment_status == "IN_PROGRESS":
        return EbayOrderStatus.IN_PROGRESS.value

    if payment_status in ("PAID", "PARTIALLY_REFUNDED"):
        return EbayOrderStatus.PAID.value
    if payment_status in (None, "PENDING", "FAILED"):
        return EbayOrderStatus.PENDING.value
    return str(payment_status)


class EbayAdapter(ChannelAdapter):
    """ChannelAdapter for eBay."""

    status_enum = EbayOrderStatus

    def __init__(
        self,
        channel: str,
        config: MarketplaceChannelConfig,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(channel)
        self.config = config
        self.page_size = config.page_size
        self.http = ChannelHttpClient(
            channel=channel,
            base_url=config.base_url,
            headers={
                "Authorization": f"Bearer {config.access_token or ''}",
                "Content-Type": "application/json",
                "Content-Language": "en-GB",
                "X-EBAY-C-MARKETPLACE-ID": config.marketplace_id,
            },
            timeout_seconds=config.request_timeout_seconds,
            client=client,
        )

    # Catalog

    def _offer_body(self, entry: CatalogEntry) -> Dict[str, Any]:
        return {
            "sku": entry.sku,
            "marketplaceId": self.config.marketplace_id,
            "format": "FIXED_PRICE",
            "availableQuantity": entry.quantity,
            "listingDescription": entry.description or entry.title,
            "pricingSummary": {
                "price": {"value": from_cents(entry.price_cents), "currency": entry.currency},
            },
        }

    async def publish_catalog_entry(
        self,
        entry: CatalogEntry,
        existing: Optional[ExternalRef] = None,
        relist: bool = False,
    ) -> ExternalRef:
        # Inventory items are keyed by SKU, so this PUT is naturally idempotent
        await self.http.request(
            "PUT",
            f"{INVENTORY_PATH}/inventory_item/{entry.sku}",
            operation="publish_catalog_entry",
            json={
                "availability": {"shipToLocationAvailability": {"quantity": entry.quantity}},
                "condition": "NEW",
                "product": {
                    "title": entry.title[:80],
                    "description": entry.description or entry.title,
                },
            },
        )

        if existing is not None:
            await self.http.request(
                "PUT",
                f"{INVENTORY_PATH}/offer/{existing.external_id}",
                operation="publish_catalog_entry",
                json=self._offer_body(entry),
            )
            if relist:
                return await self._publish_offer(entry, existing.external_id)
            logger.info(
                "ebay_listing_updated",
                channel=self.channel,
                sku=entry.sku,
                offer_id=existing.external_id,
            )
            return ExternalRef(
                external_id=existing.external_id,
                external_sku=entry.sku,
                url=existing.url,
                data=dict(existing.data),
            )

        # A retry after a lost response must not create a second offer for the SKU
        offer = await self._find_offer(entry.sku)
        if offer is not None:
            offer_id = str(offer["offerId"])
            await self.http.request(
                "PUT",
                f"{INVENTORY_PATH}/offer/{offer_id}",
                operation="publish_catalog_entry",
                json=self._offer_body(entry),
            )
        else:
            created = await self.http.request(
                "POST",
                f"{INVENTORY_PATH}/offer",
                operation="publish_catalog_entry",
                json=self._offer_body(entry),
            )
            offer_id = str(created["offerId"])
        return await self._publish_offer(entry, offer_id)

    async def _find_offer(self, sku: str) -> Optional[Dict[str, Any]]:
        """Return the offer already created for sku on this marketplace, if any."""
        try:
            found = await self.http.request(
                "GET",
                f"{INVENTORY_PATH}/offer",
                operation="publish_catalog_entry",
                params={"sku": sku, "marketplace_id": self.config.marketplace_id},
            )
        except PermanentAdapterFailure as e:
            if e.status_code == 404:
                return None
            raise
        offers = (found or {}).get("offers") or []
        return offers[0] if offers else None

    async def _publish_offer(self, entry: CatalogEntry, offer_id: str) -> ExternalRef:
        published = await self.http.request(
            "POST",
            f"{INVENTORY_PATH}/offer/{offer_id}/publish",
            operation="publish_catalog_entry",
        )
        listing_id = (published or {}).get("listingId")

        logger.info(
            "ebay_listing_published",
            channel=self.channel,
            sku=entry.sku,
            offer_id=offer_id,
            listing_id=listing_id,
        )
        return ExternalRef(
            external_id=offer_id,
            external_sku=entry.sku,
            url=LISTING_URL.format(listing_id=listing_id) if listing_id else None,
            data={"listing_id": listing_id, "published_at": utcnow().isoformat()},
        )

    async def update_stock(self, ref: ExternalRef, quantity: int) -> None:
        await self.http.request(
            "POST",
            f"{INVENTORY_PATH}/bulk_update_price_quantity",
            operation="update_stock",
            json={
                "requests": [
                    {
                        "sku": ref.external_sku,
                        "shipToLocationAvailability": {"quantity": quantity},
                        "offers": [{"offerId": ref.external_id, "availableQuantity": quantity}],
                    }
                ]
            },
        )

    async def update_price(self, ref: ExternalRef, amount_cents: int, currency: str) -> None:
        await self.http.request(
            "POST",
            f"{INVENTORY_PATH}/bulk_update_price_quantity",
            operation="update_price",
            json={
                "requests": [
                    {
                        "sku": ref.external_sku,
                        "offers": [
                            {
                                "offerId": ref.external_id,
                                "price": {"value": from_cents(amount_cents), "currency": currency},
                            }
                        ],
                    }
                ]
            },
        )

    async def end_listing(self, ref: ExternalRef, reason: str = "NOT_AVAILABLE") -> None:
        await self.http.request(
            "POST",
            f"{INVENTORY_PATH}/offer/{ref.external_id}/withdraw",
            operation="end_listing",
        )
        logger.info(
            "ebay_listing_ended",
            channel=self.channel,
            offer_id=ref.external_id,
            reason=reason,
        )

    # Orders

    def _parse_order(self, data: Dict[str, Any]) -> ExternalOrder:
        buyer = data.get("buyer") or {}
        registration = buyer.get("buyerRegistrationAddress") or {}
        total = (data.get("pricingSummary") or {}).get("total") or {}

        lines = []
        for item in data.get("lineItems") or []:
            quantity = int(item.get("quantity") or 1)
            line_cost = to_cents((item.get("lineItemCost") or {}).get("value"))
            lines.append(
                ExternalOrderLine(
                    line_ref=str(item.get("lineItemId")),
                    external_sku=item.get("sku"),
                    title=item.get("title"),
                    quantity=quantity,
                    unit_price_cents=line_cost // quantity if quantity else line_cost,
                )
            )

        created_at = parse_ebay_datetime(data.get("creationDate")) or utcnow()
        return ExternalOrder(
            external_id=str(data["orderId"]),
            order_number=str(data.get("legacyOrderId") or data["orderId"]),
            status=normalise_order_status(data),
            total_cents=to_cents(total.get("value")),
            currency=total.get("currency") or self.config.currency,
            buyer=ExternalBuyer(
                username=buyer.get("username"),
                email=registration.get("email"),
                name=registration.get("fullName"),
            ),
            lines=tuple(lines),
            created_at=created_at,
            modified_at=parse_ebay_datetime(data.get("lastModifiedDate")),
        )

    async def fetch_orders_since(
        self, since: datetime
    ) -> List[Union[ExternalOrder, RejectedOrder]]:
        orders: List[Union[ExternalOrder, RejectedOrder]] = []
        offset = 0
        date_filter = f"lastmodifieddate:[{format_ebay_datetime(since)}..]"

        while True:
            page = await self.http.request(
                "GET",
                f"{FULFILLMENT_PATH}/order",
                operation="fetch_orders_since",
                params={"filter": date_filter, "limit": self.page_size, "offset": offset},
            ) or {}
            batch = page.get("orders") or []
            orders.extend(self._parse_or_reject(item) for item in batch)

            offset += len(batch)
            total = page.get("total")
            if not batch or (total is not None and offset >= int(total)):
                break

        logger.info(
            "ebay_orders_fetched",
            channel=self.channel,
            since=since.isoformat(),
            count=len(orders),
        )
        return orders

    def _parse_or_reject(self, item: Any) -> Union[ExternalOrder, RejectedOrder]:
        try:
            return self._parse_order(item)
        except (KeyError, TypeError, ValueError, AttributeError, ArithmeticError) as e:
            order_id = item.get("orderId") if isinstance(item, dict) else None
            logger.error(
                "ebay_order_unparseable",
                channel=self.channel,
                order_id=order_id,
                error=repr(e),
            )
            return RejectedOrder(external_id=order_id, error=f"{type(e).__name__}: {e}")

    async def fulfill_order(self, external_order_id: str, tracking: TrackingInfo) -> None:
        order = await self.http.request(
            "GET",
            f"{FULFILLMENT_PATH}/order/{external_order_id}",
            operation="fulfill_order",
        ) or {}
        line_items = [
            {"lineItemId": item["lineItemId"], "quantity": int(item.get("quantity") or 1)}
            for item in order.get("lineItems") or []
        ]
        await self.http.request(
            "POST",
            f"{FULFILLMENT_PATH}/order/{external_order_id}/shipping_fulfillment",
            operation="fulfill_order",
            json={
                "lineItems": line_items,
                "shippedDate": format_ebay_datetime(tracking.shipped_at or utcnow()),
                "shippingCarrierCode": tracking.carrier,
                "trackingNumber": tracking.tracking_number,
            },
        )

    async def issue_refund(
        self,
        external_order_id: str,
        line_ref: Optional[str],
        amount_cents: int,
        reason: str,
    ) -> Dict[str, Any]:
        amount = {"value": from_cents(amount_cents), "currency": self.config.currency}
        body: Dict[str, Any] = {"reasonForRefund": reason, "comment": reason}
        if line_ref:
            body["refundItems"] = [{"lineItemId": line_ref, "refundAmount": amount}]
        else:
            body["orderLevelRefundAmount"] = amount

        result = await self.http.request(
            "POST",
            f"{FULFILLMENT_PATH}/order/{external_order_id}/issue_refund",
            operation="issue_refund",
            json=body,
        ) or {}
        return {
            "refund_id": result.get("refundId"),
            "status": result.get("refundStatus"),
            "amount_cents": amount_cents,
        }

    async def close(self) -> None:
        await self.http.close()
