"""
Channel adapter contract.

One implementation per external marketplace. Adapters are the only place
that knows a marketplace's wire formats; they classify every failure as
TransientAdapterFailure or PermanentAdapterFailure so the sync engine can
decide whether to retry.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Type, Union

from commerce_sync.core.states import OrderStatus, translate_external_status


@dataclass(frozen=True)
class CatalogEntry:
    """Snapshot of a canonical product as pushed to a channel."""

    product_id: str
    sku: str
    title: str
    price_cents: int
    currency: str
    quantity: int
    description: Optional[str] = None


@dataclass(frozen=True)
class ExternalRef:
    """Identity of a listing on a channel."""

    external_id: str
    external_sku: Optional[str] = None
    url: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class ExternalBuyer:
    username: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class ExternalOrderLine:
    line_ref: str
    external_sku: Optional[str]
    title: Optional[str]
    quantity: int
    unit_price_cents: int


@dataclass(frozen=True)
class ExternalOrder:
    """A marketplace order normalised by its adapter."""

    external_id: str
    order_number: str
    status: str
    total_cents: int
    currency: str
    buyer: ExternalBuyer
    lines: Tuple[ExternalOrderLine, ...]
    created_at: datetime
    modified_at: Optional[datetime] = None

    @property
    def sort_key(self) -> datetime:
        return self.modified_at or self.created_at


@dataclass(frozen=True)
class RejectedOrder:
    """An order on a fetched page that the adapter could not normalise."""

    external_id: Optional[str]
    error: str


@dataclass(frozen=True)
class TrackingInfo:
    tracking_number: str
    carrier: str
    shipped_at: Optional[datetime] = None


class ChannelAdapter(ABC):
    """
    Capability set every marketplace integration implements.

    Each method may raise TransientAdapterFailure (rate limited, network,
    timeout, 5xx) or PermanentAdapterFailure (validation, not found).
    """

    # External status enum translated through core.states.EXTERNAL_STATUS_TABLES
    status_enum: Type[Enum]

    def __init__(self, channel: str):
        self.channel = channel

    @abstractmethod
    async def publish_catalog_entry(
        self,
        entry: CatalogEntry,
        existing: Optional[ExternalRef] = None,
        relist: bool = False,
    ) -> ExternalRef:
        """
        Create or update the listing for a product.

        Idempotent: with an existing reference the listing is updated, never
        duplicated. Without one, a listing left behind by an earlier attempt
        for the same SKU is reused. With relist set, an ended listing is made
        live again.
        """

    @abstractmethod
    async def update_stock(self, ref: ExternalRef, quantity: int) -> None:
        """Set available quantity of a listing."""

    @abstractmethod
    async def update_price(self, ref: ExternalRef, amount_cents: int, currency: str) -> None:
        """Set the price of a listing."""

    @abstractmethod
    async def fetch_orders_since(
        self, since: datetime
    ) -> List[Union[ExternalOrder, RejectedOrder]]:
        """
        Return every order created or modified at or after `since`.

        Pagination is handled internally; the caller receives the complete set.
        An order the adapter cannot parse comes back as a RejectedOrder so the
        rest of its page is still imported.
        """

    @abstractmethod
    async def fulfill_order(self, external_order_id: str, tracking: TrackingInfo) -> None:
        """Mark an order shipped with tracking details."""

    @abstractmethod
    async def issue_refund(
        self,
        external_order_id: str,
        line_ref: Optional[str],
        amount_cents: int,
        reason: str,
    ) -> Dict[str, Any]:
        """Refund an order line (or the whole order when line_ref is None)."""

    @abstractmethod
    async def end_listing(self, ref: ExternalRef, reason: str = "NOT_AVAILABLE") -> None:
        """Withdraw a listing."""

    def translate_status(self, raw_status: Optional[str]) -> OrderStatus:
        """Map this channel's order status onto the canonical status."""
        return translate_external_status(self.status_enum, raw_status)

    async def close(self) -> None:
        """Release transport resources."""
        return None
