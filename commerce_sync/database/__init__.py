"""Database package for commerce sync."""
from .connection import Database, get_db
from .models import (
    Base,
    Dispute,
    LoyaltyTransaction,
    Order,
    OrderItem,
    OrderMapping,
    OutboxEvent,
    Payment,
    Product,
    ProductMapping,
    SyncLog,
    WebhookEventRecord,
)

__all__ = [
    "Base",
    "Database",
    "Dispute",
    "LoyaltyTransaction",
    "Order",
    "OrderItem",
    "OrderMapping",
    "OutboxEvent",
    "Payment",
    "Product",
    "ProductMapping",
    "SyncLog",
    "WebhookEventRecord",
    "get_db",
]
