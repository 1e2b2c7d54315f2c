"""
Order/payment repository and loyalty ledger.

Both work inside the caller's session; transaction boundaries belong to the
gateway, the sync engine and the explicit operations that call them.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync.core.states import (
    LoyaltyKind,
    OrderStatus,
    PaymentStatus,
    can_transition_order,
    can_transition_payment,
)
from commerce_sync.database.models import (
    Dispute,
    LoyaltyTransaction,
    Order,
    OrderItem,
    Payment,
    Product,
)

logger = structlog.get_logger(__name__)

_UPSERT_DIALECTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


class OrderRepository:
    """Transactional access to orders, payments, disputes and products."""

    # Orders

    async def get_order(
        self, db: AsyncSession, order_id: str, for_update: bool = False
    ) -> Optional[Order]:
        stmt = select(Order).where(Order.id == order_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def create_order(
        self,
        db: AsyncSession,
        order_number: str,
        total_cents: int,
        currency: str,
        customer_ref: str,
        items: Iterable[Dict[str, Any]],
        status: OrderStatus = OrderStatus.PENDING,
        source_channel: Optional[str] = None,
        order_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Order:
        """
        Create an order with its items.

        Args:
            items: Dicts with product_id, quantity, unit_price_cents and
                optional title / external_line_ref
        """
        order = Order(
            order_number=order_number,
            status=status.value,
            total_cents=total_cents,
            currency=currency.upper(),
            customer_ref=customer_ref,
            source_channel=source_channel,
        )
        if order_id is not None:
            order.id = order_id
        if created_at is not None:
            order.created_at = created_at
        order.items = [OrderItem(**item) for item in items]
        db.add(order)
        await db.flush()

        logger.info(
            "order_created",
            order_id=order.id,
            order_number=order_number,
            status=order.status,
            total_cents=total_cents,
            items=len(order.items),
        )
        return order

    async def advance_order(self, order: Order, target: OrderStatus, cause: str) -> bool:
        """
        Move an order forward, or do nothing if the move is not allowed.

        Returns:
            bool: True if the status changed
        """
        current = OrderStatus(order.status)
        if not can_transition_order(current, target):
            if current != target:
                logger.info(
                    "order_transition_skipped",
                    order_id=order.id,
                    current=current.value,
                    target=target.value,
                    cause=cause,
                )
            return False
        order.status = target.value
        logger.info(
            "order_transitioned",
            order_id=order.id,
            from_status=current.value,
            to_status=target.value,
            cause=cause,
        )
        return True

    # Payments

    async def get_payment(
        self, db: AsyncSession, processor_reference: str, for_update: bool = False
    ) -> Optional[Payment]:
        stmt = select(Payment).where(Payment.processor_reference == processor_reference)
        if for_update:
            stmt = stmt.with_for_update()
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_payment_by_charge(
        self, db: AsyncSession, charge_id: str
    ) -> Optional[Payment]:
        stmt = select(Payment).where(Payment.charge_id == charge_id).limit(1)
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def has_succeeded_payment(
        self, db: AsyncSession, order_id: str, exclude_reference: Optional[str] = None
    ) -> bool:
        """True if any other payment for the order has been captured."""
        stmt = select(Payment.id).where(
            Payment.order_id == order_id,
            Payment.status == PaymentStatus.SUCCEEDED.value,
        )
        if exclude_reference is not None:
            stmt = stmt.where(Payment.processor_reference != exclude_reference)
        result = await db.execute(stmt.limit(1))
        return result.scalar_one_or_none() is not None

    async def upsert_payment(
        self,
        db: AsyncSession,
        processor_reference: str,
        order_id: str,
        amount_cents: int,
        currency: str,
        channel: str,
        processor_metadata: Optional[Dict[str, Any]] = None,
    ) -> Payment:
        """
        Insert the payment if its processor reference is new, then lock and return it.

        Never a plain insert: concurrent deliveries for the same reference
        converge on one row.
        """
        insert = _UPSERT_DIALECTS.get(db.get_bind().dialect.name)
        if insert is not None:
            stmt = (
                insert(Payment)
                .values(
                    processor_reference=processor_reference,
                    order_id=order_id,
                    status=PaymentStatus.PENDING.value,
                    amount_cents=amount_cents,
                    currency=currency.upper(),
                    channel=channel,
                    processor_metadata=processor_metadata,
                )
                .on_conflict_do_nothing(index_elements=["processor_reference"])
            )
            await db.execute(stmt)
            payment = await self.get_payment(db, processor_reference, for_update=True)
        else:
            payment = await self.get_payment(db, processor_reference, for_update=True)
            if payment is None:
                payment = Payment(
                    processor_reference=processor_reference,
                    order_id=order_id,
                    status=PaymentStatus.PENDING.value,
                    amount_cents=amount_cents,
                    currency=currency.upper(),
                    channel=channel,
                    processor_metadata=processor_metadata,
                )
                db.add(payment)
                await db.flush()

        if payment is None:
            raise LookupError(f"Payment {processor_reference} vanished after upsert")
        if processor_metadata:
            merged = dict(payment.processor_metadata or {})
            merged.update(processor_metadata)
            payment.processor_metadata = merged
        return payment

    async def advance_payment(
        self, payment: Payment, target: PaymentStatus, cause: str
    ) -> bool:
        """
        Move a payment forward, or do nothing if the move is not allowed.

        Returns:
            bool: True if the status changed
        """
        current = PaymentStatus(payment.status)
        if not can_transition_payment(current, target):
            if current != target:
                logger.info(
                    "payment_transition_skipped",
                    processor_reference=payment.processor_reference,
                    current=current.value,
                    target=target.value,
                    cause=cause,
                )
            return False
        payment.status = target.value
        logger.info(
            "payment_transitioned",
            processor_reference=payment.processor_reference,
            from_status=current.value,
            to_status=target.value,
            cause=cause,
        )
        return True

    # Disputes

    async def get_dispute(
        self, db: AsyncSession, processor_dispute_id: str
    ) -> Optional[Dispute]:
        stmt = select(Dispute).where(Dispute.processor_dispute_id == processor_dispute_id)
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def add_dispute(
        self,
        db: AsyncSession,
        payment: Payment,
        processor_dispute_id: str,
        amount_cents: int,
        reason: Optional[str],
        status: str,
        opened_at: datetime,
    ) -> Dispute:
        dispute = Dispute(
            payment_id=payment.id,
            processor_dispute_id=processor_dispute_id,
            amount_cents=amount_cents,
            reason=reason,
            status=status,
            opened_at=opened_at,
        )
        db.add(dispute)
        await db.flush()

        logger.warning(
            "dispute_recorded",
            processor_dispute_id=processor_dispute_id,
            processor_reference=payment.processor_reference,
            amount_cents=amount_cents,
            reason=reason,
        )
        return dispute

    # Products

    async def list_products(self, db: AsyncSession) -> List[Product]:
        result = await db.execute(select(Product).order_by(Product.sku))
        return list(result.scalars().all())


class LoyaltyLedger:
    """
    Append-only loyalty points ledger.

    Points are floor(order total in major units x points_per_unit), computed
    in integer minor units. One credit and at most one reversal per order.
    """

    def __init__(self, points_per_unit: int = 100):
        self.points_per_unit = points_per_unit

    def points_for(self, total_cents: int) -> int:
        return (total_cents * self.points_per_unit) // 100

    async def _existing(
        self, db: AsyncSession, order_id: str, kind: LoyaltyKind
    ) -> Optional[LoyaltyTransaction]:
        stmt = select(LoyaltyTransaction).where(
            LoyaltyTransaction.order_id == order_id,
            LoyaltyTransaction.kind == kind.value,
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def _append(
        self,
        db: AsyncSession,
        order: Order,
        kind: LoyaltyKind,
        points: int,
        description: str,
    ) -> Optional[LoyaltyTransaction]:
        if await self._existing(db, order.id, kind) is not None:
            logger.info("loyalty_entry_exists", order_id=order.id, kind=kind.value)
            return None

        entry = LoyaltyTransaction(
            customer_ref=order.customer_ref,
            order_id=order.id,
            kind=kind.value,
            points=points,
            description=description,
        )
        db.add(entry)
        try:
            await db.flush()
        except IntegrityError:
            # Another transaction won the (order, kind) slot; surface so the
            # enclosing transaction rolls back and the delivery is retried.
            logger.warning("loyalty_entry_conflict", order_id=order.id, kind=kind.value)
            raise

        logger.info(
            "loyalty_entry_appended",
            customer_ref=order.customer_ref,
            order_id=order.id,
            kind=kind.value,
            points=points,
        )
        return entry

    async def credit_order(
        self, db: AsyncSession, order: Order, source: str
    ) -> Optional[LoyaltyTransaction]:
        """Credit points for a paid order. Returns None if already credited or zero."""
        points = self.points_for(order.total_cents)
        if points <= 0:
            return None
        return await self._append(
            db,
            order,
            LoyaltyKind.EARNED,
            points,
            f"Points earned from order {order.order_number} ({source})",
        )

    async def reverse_order(
        self, db: AsyncSession, order: Order, source: str
    ) -> Optional[LoyaltyTransaction]:
        """Debit the points credited for an order that was refunded."""
        earned = await self._existing(db, order.id, LoyaltyKind.EARNED)
        if earned is None:
            return None
        return await self._append(
            db,
            order,
            LoyaltyKind.REVERSED,
            -earned.points,
            f"Points reversed for refunded order {order.order_number} ({source})",
        )

    async def balance(self, db: AsyncSession, customer_ref: str) -> int:
        stmt = select(func.coalesce(func.sum(LoyaltyTransaction.points), 0)).where(
            LoyaltyTransaction.customer_ref == customer_ref
        )
        result = await db.execute(stmt)
        return int(result.scalar_one())

    async def entries_for_order(
        self, db: AsyncSession, order_id: str
    ) -> List[LoyaltyTransaction]:
        stmt = (
            select(LoyaltyTransaction)
            .where(LoyaltyTransaction.order_id == order_id)
            .order_by(LoyaltyTransaction.id)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())
