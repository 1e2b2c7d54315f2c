"""SQLAlchemy database models for payment reconciliation and marketplace sync."""
import uuid
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from commerce_sync.core.clock import utcnow

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


def _new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Product(Base):
    """
    Canonical catalog entry.

    Canonical data is authoritative for price and product identity on every
    channel the product is published to.
    """

    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    sku: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="GBP")
    stock_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("price_cents >= 0", name="non_negative_price"),
        CheckConstraint("stock_quantity >= 0", name="non_negative_stock"),
        Index("idx_products_active_updated", "is_active", "updated_at"),
    )

    def __repr__(self) -> str:
        """String representation of Product."""
        return f"<Product(id={self.id}, sku={self.sku}, active={self.is_active})>"


class Order(Base):
    """
    Canonical purchase record.

    Status only ever moves forward (see core.states). Financial fields are
    fixed at creation and never overwritten from marketplace data.
    """

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    order_number: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    total_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="GBP")
    customer_ref: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    payment_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source_channel: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    items: Mapped[List["OrderItem"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", lazy="selectin"
    )

    __table_args__ = (
        CheckConstraint("total_cents >= 0", name="non_negative_total"),
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'processing', 'shipped', "
            "'delivered', 'cancelled', 'refunded')",
            name="valid_order_status",
        ),
        CheckConstraint("length(currency) = 3", name="valid_order_currency"),
    )

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, number={self.order_number}, "
            f"total={self.total_cents}, status={self.status})>"
        )


class OrderItem(Base):
    """One line of an order."""

    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("products.id"), nullable=False
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_line_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)

    order: Mapped[Order] = relationship(back_populates="items")

    __table_args__ = (CheckConstraint("quantity > 0", name="positive_quantity"),)

    def __repr__(self) -> str:
        """String representation of OrderItem."""
        return (
            f"<OrderItem(order_id={self.order_id}, product_id={self.product_id}, "
            f"quantity={self.quantity})>"
        )


class Payment(Base):
    """
    One payment-processor payment attempt for exactly one order.

    Keyed by processor_reference; every write is an upsert on that key.
    """

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    processor_reference: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    order_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("orders.id"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    channel: Mapped[str] = mapped_column(String(50), nullable=False)
    charge_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    processor_metadata: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    disputes: Mapped[List["Dispute"]] = relationship(back_populates="payment", lazy="selectin")

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="non_negative_amount"),
        CheckConstraint(
            "status IN ('pending', 'succeeded', 'failed', 'refunded')",
            name="valid_payment_status",
        ),
    )

    def __repr__(self) -> str:
        """String representation of Payment."""
        return (
            f"<Payment(ref={self.processor_reference}, order_id={self.order_id}, "
            f"amount={self.amount_cents}, status={self.status})>"
        )


class Dispute(Base):
    """Chargeback reported by the payment processor against a payment."""

    __tablename__ = "disputes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("payments.id"), nullable=False, index=True
    )
    processor_dispute_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    opened_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    payment: Mapped[Payment] = relationship(back_populates="disputes")

    def __repr__(self) -> str:
        """String representation of Dispute."""
        return f"<Dispute(id={self.processor_dispute_id}, status={self.status})>"


class LoyaltyTransaction(Base):
    """
    Append-only loyalty ledger entry.

    A customer's balance is the sum of their entries. One entry per
    (order, kind) so accrual and reversal each happen at most once.
    """

    __tablename__ = "loyalty_transactions"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    customer_ref: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    order_id: Mapped[str] = mapped_column(String(64), ForeignKey("orders.id"), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        UniqueConstraint("order_id", "kind", name="uq_loyalty_order_kind"),
        CheckConstraint("kind IN ('earned', 'reversed')", name="valid_loyalty_kind"),
    )

    def __repr__(self) -> str:
        """String representation of LoyaltyTransaction."""
        return (
            f"<LoyaltyTransaction(customer={self.customer_ref}, order_id={self.order_id}, "
            f"kind={self.kind}, points={self.points})>"
        )


class ProductMapping(Base):
    """Canonical product <-> external listing within one channel."""

    __tablename__ = "product_mappings"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    product_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("products.id"), nullable=False
    )
    channel: Mapped[str] = mapped_column(String(50), nullable=False)
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_sku: Mapped[str | None] = mapped_column(String(100), nullable=True)
    external_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sync_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_sync_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    platform_data: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("product_id", "channel", name="uq_product_mapping_canonical"),
        UniqueConstraint("external_id", "channel", name="uq_product_mapping_external"),
        CheckConstraint(
            "status IN ('active', 'ended', 'error')", name="valid_product_mapping_status"
        ),
        Index("idx_product_mappings_sku", "channel", "external_sku"),
    )

    def __repr__(self) -> str:
        """String representation of ProductMapping."""
        return (
            f"<ProductMapping(product_id={self.product_id}, channel={self.channel}, "
            f"external_id={self.external_id}, status={self.status})>"
        )


class OrderMapping(Base):
    """Canonical order <-> external order within one channel."""

    __tablename__ = "order_mappings"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(64), ForeignKey("orders.id"), nullable=False)
    channel: Mapped[str] = mapped_column(String(50), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    external_number: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    platform_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    platform_total_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tracking_number: Mapped[str | None] = mapped_column(String(255), nullable=True)
    shipping_carrier: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("order_id", "channel", name="uq_order_mapping_canonical"),
        UniqueConstraint("external_id", "channel", name="uq_order_mapping_external"),
        CheckConstraint(
            "status IN ('active', 'ended', 'error')", name="valid_order_mapping_status"
        ),
    )

    def __repr__(self) -> str:
        """String representation of OrderMapping."""
        return (
            f"<OrderMapping(order_id={self.order_id}, channel={self.channel}, "
            f"external_id={self.external_id})>"
        )


class SyncLog(Base):
    """
    One synchronization run for one channel and operation.

    The ended_at of the latest succeeded run is the order-pull watermark.
    """

    __tablename__ = "sync_logs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    channel: Mapped[str] = mapped_column(String(50), nullable=False)
    operation: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    succeeded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    watermark: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    records_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    records_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    records_skipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    api_call_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "operation IN ('catalog_push', 'order_pull')", name="valid_sync_operation"
        ),
        CheckConstraint(
            "status IN ('in_progress', 'succeeded', 'partial', 'failed')",
            name="valid_sync_status",
        ),
        Index("idx_sync_logs_watermark", "channel", "operation", "succeeded", "ended_at"),
        Index("idx_sync_logs_started", "channel", "started_at"),
    )

    def __repr__(self) -> str:
        """String representation of SyncLog."""
        return (
            f"<SyncLog(id={self.id}, channel={self.channel}, operation={self.operation}, "
            f"status={self.status})>"
        )


class WebhookEventRecord(Base):
    """Processed webhook event id. Write-once; the unique key serializes replays."""

    __tablename__ = "webhook_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    channel: Mapped[str] = mapped_column(String(50), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        """String representation of WebhookEventRecord."""
        return f"<WebhookEventRecord(event_id={self.event_id}, type={self.event_type})>"


class OutboxEvent(Base):
    """
    Transactional outbox events table.

    Notification events are written in the same transaction as the order or
    payment transition that caused them, then dispatched by a background worker.
    """

    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    aggregate_id: Mapped[str] = mapped_column(String(64), nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("idx_outbox_aggregate", "aggregate_id", "aggregate_type"),)

    def __repr__(self) -> str:
        """String representation of OutboxEvent."""
        return (
            f"<OutboxEvent(id={self.id}, type={self.event_type}, "
            f"published={self.published})>"
        )
