"""
Order, payment, mapping and sync status enumerations with their transition rules.

Order progression is forward-only. Terminal order states are never left.
"""
from enum import Enum
from typing import Dict, FrozenSet, Optional, Type

import structlog

logger = structlog.get_logger(__name__)


class OrderStatus(str, Enum):
    """Canonical order status. PENDING is the state an order is created in."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class MappingStatus(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"
    ERROR = "error"


class SyncOperation(str, Enum):
    CATALOG_PUSH = "catalog_push"
    ORDER_PULL = "order_pull"


class SyncRunStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    PARTIAL = "partial"  # deadline hit, partial counts kept
    FAILED = "failed"


class LoyaltyKind(str, Enum):
    EARNED = "earned"
    REVERSED = "reversed"


TERMINAL_ORDER_STATUSES: FrozenSet[OrderStatus] = frozenset(
    {OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.REFUNDED}
)

# Position along the fulfilment path; cancellation and refund branch off it.
_FULFILMENT_RANK: Dict[OrderStatus, int] = {
    OrderStatus.PENDING: 0,
    OrderStatus.CONFIRMED: 1,
    OrderStatus.PROCESSING: 2,
    OrderStatus.SHIPPED: 3,
    OrderStatus.DELIVERED: 4,
}

_CANCELLABLE_FROM: FrozenSet[OrderStatus] = frozenset(
    {OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING}
)

_REFUNDABLE_FROM: FrozenSet[OrderStatus] = frozenset(
    {OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.SHIPPED}
)

_PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.SUCCEEDED, PaymentStatus.FAILED}),
    PaymentStatus.SUCCEEDED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}


def can_transition_order(current: OrderStatus, target: OrderStatus) -> bool:
    """
    Check whether an order may move from current to target.

    Moves along the fulfilment path may skip intermediate steps
    (confirmed -> shipped) but never go backwards.
    """
    if current == target or current in TERMINAL_ORDER_STATUSES:
        return False
    if target is OrderStatus.CANCELLED:
        return current in _CANCELLABLE_FROM
    if target is OrderStatus.REFUNDED:
        return current in _REFUNDABLE_FROM
    return _FULFILMENT_RANK[target] > _FULFILMENT_RANK[current]


def can_transition_payment(current: PaymentStatus, target: PaymentStatus) -> bool:
    """Check whether a payment may move from current to target."""
    return target in _PAYMENT_TRANSITIONS[current]


# External marketplace order statuses. Adapters normalise their wire payloads
# into one of these members; anything else is reported as unrecognised.


class EbayOrderStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    IN_PROGRESS = "IN_PROGRESS"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class FakeOrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


EXTERNAL_STATUS_TABLES: Dict[Type[Enum], Dict[Enum, OrderStatus]] = {
    EbayOrderStatus: {
        EbayOrderStatus.PENDING: OrderStatus.PENDING,
        EbayOrderStatus.PAID: OrderStatus.CONFIRMED,
        EbayOrderStatus.IN_PROGRESS: OrderStatus.PROCESSING,
        EbayOrderStatus.SHIPPED: OrderStatus.SHIPPED,
        EbayOrderStatus.DELIVERED: OrderStatus.DELIVERED,
        EbayOrderStatus.CANCELLED: OrderStatus.CANCELLED,
        EbayOrderStatus.REFUNDED: OrderStatus.REFUNDED,
    },
    FakeOrderStatus: {
        FakeOrderStatus.PENDING: OrderStatus.PENDING,
        FakeOrderStatus.PAID: OrderStatus.CONFIRMED,
        FakeOrderStatus.PROCESSING: OrderStatus.PROCESSING,
        FakeOrderStatus.SHIPPED: OrderStatus.SHIPPED,
        FakeOrderStatus.DELIVERED: OrderStatus.DELIVERED,
        FakeOrderStatus.CANCELLED: OrderStatus.CANCELLED,
        FakeOrderStatus.REFUNDED: OrderStatus.REFUNDED,
    },
}

UNRECOGNISED_EXTERNAL_STATUS = OrderStatus.PENDING


def translate_external_status(status_enum: Type[Enum], raw: Optional[str]) -> OrderStatus:
    """
    Translate a marketplace order status into a canonical OrderStatus.

    Args:
        status_enum: The channel's external status enum
        raw: Status string as reported by the channel

    Returns:
        OrderStatus: Mapped status, or PENDING for unrecognised values
    """
    table = EXTERNAL_STATUS_TABLES[status_enum]
    try:
        member = status_enum(raw)
    except ValueError:
        logger.warning(
            "external_status_unrecognised",
            status_enum=status_enum.__name__,
            status=raw,
        )
        return UNRECOGNISED_EXTERNAL_STATUS
    return table[member]
