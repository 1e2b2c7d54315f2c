"""
Payment reconciliation state machine.

Consumes verified payment-processor events and drives Payment and Order
transitions plus their side effects (loyalty accrual, dispute records,
notification outbox rows). Every handler runs inside the gateway's
transaction, keys strictly on the processor payment reference and only ever
moves state forward, so re-delivered and out-of-order events are no-ops.
"""
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync.core.errors import PaymentOperationError, ReconciliationConflict
from commerce_sync.core.events import ProcessorEvent, timestamp_to_datetime
from commerce_sync.core.outbox import OutboxWriter
from commerce_sync.core.repositories import LoyaltyLedger, OrderRepository
from commerce_sync.core.states import OrderStatus, PaymentStatus
from commerce_sync.database.connection import Database
from commerce_sync.database.models import Order, Payment
from commerce_sync.integrations.stripe_client import StripeClient
from commerce_sync.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

Handler = Callable[[AsyncSession, ProcessorEvent, str], Awaitable[Dict[str, Any]]]


class PaymentReconciliationStateMachine:
    """
    Applies payment-processor events to orders and payments.

    Transition table:
        checkout.session.completed     payment pending->succeeded (amount must match),
                                       order ->confirmed
        payment_intent.succeeded       payment pending->succeeded, order ->confirmed,
                                       loyalty credit
        payment_intent.payment_failed  payment pending->failed, order ->cancelled unless
                                       another payment for it succeeded
        charge.dispute.created         payment unchanged, Dispute row created
        charge.refunded                payment succeeded->refunded (full refunds only)

    Loyalty points are credited once per order, by whichever event first moves
    the order's payment into succeeded.
    """

    def __init__(
        self,
        orders: OrderRepository,
        loyalty: LoyaltyLedger,
        outbox: OutboxWriter,
        database: Optional[Database] = None,
        stripe_client: Optional[StripeClient] = None,
    ):
        """
        Initialize the state machine.

        Args:
            orders: Order/payment repository
            loyalty: Loyalty ledger writer
            outbox: Notification outbox writer
            database: Needed only for the explicit refund operation
            stripe_client: Needed only for the explicit refund operation
        """
        self.orders = orders
        self.loyalty = loyalty
        self.outbox = outbox
        self.database = database
        self.stripe_client = stripe_client
        self.handlers: Dict[str, Handler] = {}

        self.register_handler("checkout.session.completed", self.handle_checkout_completed)
        self.register_handler("payment_intent.succeeded", self.handle_payment_succeeded)
        self.register_handler("payment_intent.payment_failed", self.handle_payment_failed)
        self.register_handler("charge.dispute.created", self.handle_dispute_created)
        self.register_handler("charge.refunded", self.handle_charge_refunded)
        self.register_handler("invoice.payment_succeeded", self.handle_invoice_payment_succeeded)

    def register_handler(self, event_type: str, handler: Handler) -> None:
        """
        Register a handler for a specific event type.

        Args:
            event_type: Processor event type (e.g. 'payment_intent.succeeded')
            handler: Async callable taking (db, event, channel)
        """
        self.handlers[event_type] = handler
        logger.debug("state_machine_handler_registered", event_type=event_type)

    async def apply(
        self, db: AsyncSession, event: ProcessorEvent, channel: str
    ) -> Dict[str, Any]:
        """
        Apply one event inside the caller's transaction.

        Unknown event kinds are logged and reported as unhandled, never raised.

        Returns:
            Dict[str, Any]: Result with at least an "action" key
        """
        handler = self.handlers.get(event.type)
        if handler is None:
            logger.info(
                "webhook_event_unhandled",
                event_id=event.id,
                event_type=event.type,
                channel=channel,
            )
            return {"action": "unhandled", "event_type": event.type}

        logger.info(
            "applying_webhook_event",
            event_id=event.id,
            event_type=event.type,
            channel=channel,
        )
        return await handler(db, event, channel)

    # Helpers

    def _amount_conflict(
        self, order: Order, amount: Optional[int], currency: Optional[str]
    ) -> bool:
        """Log a ReconciliationConflict when the processor amount disagrees with the order."""
        conflict: Optional[ReconciliationConflict] = None
        if amount is not None and int(amount) != order.total_cents:
            conflict = ReconciliationConflict("order", "total_cents", order.total_cents, amount)
        elif currency and currency.upper() != order.currency.upper():
            conflict = ReconciliationConflict("order", "currency", order.currency, currency)
        if conflict is None:
            return False

        metrics.record_conflict(conflict.entity, conflict.field)
        logger.warning(
            "reconciliation_conflict",
            order_id=order.id,
            field=conflict.field,
            canonical=conflict.canonical,
            external=conflict.external,
        )
        return True

    async def _resolve_order(
        self, db: AsyncSession, event: ProcessorEvent, processor_reference: str
    ) -> Optional[Order]:
        order_id = event.order_id
        if order_id is None:
            payment = await self.orders.get_payment(db, processor_reference)
            order_id = payment.order_id if payment is not None else None
        if order_id is None:
            logger.warning(
                "webhook_event_missing_order",
                event_id=event.id,
                event_type=event.type,
                processor_reference=processor_reference,
            )
            return None

        order = await self.orders.get_order(db, order_id, for_update=True)
        if order is None:
            logger.warning(
                "webhook_event_order_not_found",
                event_id=event.id,
                order_id=order_id,
            )
        return order

    async def _find_payment(
        self, db: AsyncSession, payment_intent: Optional[str], charge_id: Optional[str]
    ) -> Optional[Payment]:
        payment = None
        if payment_intent:
            payment = await self.orders.get_payment(db, payment_intent, for_update=True)
        if payment is None and charge_id:
            payment = await self.orders.get_payment_by_charge(db, charge_id)
        return payment

    async def _mark_succeeded(
        self, db: AsyncSession, order: Order, payment: Payment, source: str
    ) -> Dict[str, Any]:
        payment_moved = await self.orders.advance_payment(payment, PaymentStatus.SUCCEEDED, source)
        order_moved = await self.orders.advance_order(order, OrderStatus.CONFIRMED, source)

        points = 0
        if payment_moved:
            metrics.record_transition("payment", PaymentStatus.SUCCEEDED.value)
            entry = await self.loyalty.credit_order(db, order, source)
            if entry is not None:
                points = entry.points
                metrics.record_loyalty_credit(points)
        if order_moved:
            metrics.record_transition("order", OrderStatus.CONFIRMED.value)
            await self.outbox.add(
                db,
                "order",
                order.id,
                "order.confirmed",
                {
                    "order_number": order.order_number,
                    "customer_ref": order.customer_ref,
                    "total_cents": order.total_cents,
                    "currency": order.currency,
                    "loyalty_points": points,
                    "source": source,
                },
            )

        return {
            "payment_status": payment.status,
            "order_status": order.status,
            "payment_transitioned": payment_moved,
            "order_transitioned": order_moved,
            "loyalty_points": points,
        }

    async def _mark_refunded(
        self, db: AsyncSession, payment: Payment, source: str
    ) -> Dict[str, Any]:
        payment_moved = await self.orders.advance_payment(payment, PaymentStatus.REFUNDED, source)
        order = await self.orders.get_order(db, payment.order_id, for_update=True)
        order_moved = False
        reversed_points = 0

        if payment_moved:
            metrics.record_transition("payment", PaymentStatus.REFUNDED.value)
            if order is not None:
                entry = await self.loyalty.reverse_order(db, order, source)
                reversed_points = -entry.points if entry is not None else 0
                order_moved = await self.orders.advance_order(order, OrderStatus.REFUNDED, source)
                if order_moved:
                    metrics.record_transition("order", OrderStatus.REFUNDED.value)
            await self.outbox.add(
                db,
                "payment",
                payment.order_id,
                "payment.refunded",
                {
                    "processor_reference": payment.processor_reference,
                    "amount_cents": payment.amount_cents,
                    "currency": payment.currency,
                    "loyalty_points_reversed": reversed_points,
                },
            )

        return {
            "payment_status": payment.status,
            "order_status": order.status if order is not None else None,
            "payment_transitioned": payment_moved,
            "order_transitioned": order_moved,
        }

    # Event handlers

    async def handle_checkout_completed(
        self, db: AsyncSession, event: ProcessorEvent, channel: str
    ) -> Dict[str, Any]:
        """Handle checkout.session.completed."""
        session = event.object
        processor_reference = session.get("payment_intent") or session.get("id")
        if not processor_reference:
            logger.warning("checkout_session_missing_reference", event_id=event.id)
            return {"action": "ignored", "reason": "no payment reference"}

        order = await self._resolve_order(db, event, processor_reference)
        if order is None:
            return {"action": "ignored", "reason": "order not found"}

        amount = session.get("amount_total")
        currency = session.get("currency")
        payment = await self.orders.upsert_payment(
            db,
            processor_reference=processor_reference,
            order_id=order.id,
            amount_cents=int(amount) if amount is not None else order.total_cents,
            currency=currency or order.currency,
            channel=channel,
            processor_metadata={
                "checkout_session_id": session.get("id"),
                "last_event_id": event.id,
                "last_event_type": event.type,
            },
        )
        if order.payment_reference is None:
            order.payment_reference = processor_reference

        if self._amount_conflict(order, amount, currency):
            return {
                "action": "amount_mismatch",
                "order_id": order.id,
                "processor_reference": processor_reference,
                "payment_status": payment.status,
                "order_status": order.status,
            }

        result = await self._mark_succeeded(db, order, payment, source=f"checkout:{channel}")
        return {
            "action": "checkout_completed",
            "order_id": order.id,
            "processor_reference": processor_reference,
            **result,
        }

    async def handle_payment_succeeded(
        self, db: AsyncSession, event: ProcessorEvent, channel: str
    ) -> Dict[str, Any]:
        """Handle payment_intent.succeeded."""
        intent = event.object
        processor_reference = intent["id"]

        order = await self._resolve_order(db, event, processor_reference)
        if order is None:
            return {"action": "ignored", "reason": "order not found"}

        amount = intent.get("amount_received") or intent.get("amount")
        currency = intent.get("currency")
        payment = await self.orders.upsert_payment(
            db,
            processor_reference=processor_reference,
            order_id=order.id,
            amount_cents=int(amount) if amount is not None else order.total_cents,
            currency=currency or order.currency,
            channel=channel,
            processor_metadata={"last_event_id": event.id, "last_event_type": event.type},
        )
        if intent.get("latest_charge"):
            payment.charge_id = intent["latest_charge"]
        if order.payment_reference is None:
            order.payment_reference = processor_reference

        if self._amount_conflict(order, amount, currency):
            return {
                "action": "amount_mismatch",
                "order_id": order.id,
                "processor_reference": processor_reference,
                "payment_status": payment.status,
                "order_status": order.status,
            }

        result = await self._mark_succeeded(db, order, payment, source=f"payment:{channel}")
        return {
            "action": "payment_succeeded",
            "order_id": order.id,
            "processor_reference": processor_reference,
            **result,
        }

    async def handle_payment_failed(
        self, db: AsyncSession, event: ProcessorEvent, channel: str
    ) -> Dict[str, Any]:
        """Handle payment_intent.payment_failed."""
        intent = event.object
        processor_reference = intent["id"]

        order = await self._resolve_order(db, event, processor_reference)
        if order is None:
            return {"action": "ignored", "reason": "order not found"}

        error_message = (intent.get("last_payment_error") or {}).get("message", "Unknown error")
        amount = intent.get("amount")
        payment = await self.orders.upsert_payment(
            db,
            processor_reference=processor_reference,
            order_id=order.id,
            amount_cents=int(amount) if amount is not None else order.total_cents,
            currency=intent.get("currency") or order.currency,
            channel=channel,
            processor_metadata={
                "last_event_id": event.id,
                "last_event_type": event.type,
                "failure_message": error_message,
            },
        )

        payment_moved = await self.orders.advance_payment(
            payment, PaymentStatus.FAILED, f"payment_failed:{channel}"
        )
        order_moved = False
        if payment_moved:
            metrics.record_transition("payment", PaymentStatus.FAILED.value)
            # A failed retry must not cancel an order another payment already paid for
            paid = await self.orders.has_succeeded_payment(
                db, order.id, exclude_reference=processor_reference
            )
            if paid:
                logger.info(
                    "payment_failed_order_kept",
                    order_id=order.id,
                    processor_reference=processor_reference,
                    order_status=order.status,
                )
            else:
                order_moved = await self.orders.advance_order(
                    order, OrderStatus.CANCELLED, f"payment_failed:{channel}"
                )
        if order_moved:
            metrics.record_transition("order", OrderStatus.CANCELLED.value)
            await self.outbox.add(
                db,
                "order",
                order.id,
                "order.cancelled",
                {
                    "order_number": order.order_number,
                    "customer_ref": order.customer_ref,
                    "reason": error_message,
                },
            )

        logger.info(
            "payment_failed_applied",
            order_id=order.id,
            processor_reference=processor_reference,
            error=error_message,
        )
        return {
            "action": "payment_failed",
            "order_id": order.id,
            "processor_reference": processor_reference,
            "payment_status": payment.status,
            "order_status": order.status,
            "payment_transitioned": payment_moved,
            "order_transitioned": order_moved,
        }

    async def handle_dispute_created(
        self, db: AsyncSession, event: ProcessorEvent, channel: str
    ) -> Dict[str, Any]:
        """Handle charge.dispute.created. Payment and order state are left unchanged."""
        dispute = event.object
        payment = await self._find_payment(db, dispute.get("payment_intent"), dispute.get("charge"))
        if payment is None:
            logger.warning(
                "dispute_payment_not_found",
                event_id=event.id,
                dispute_id=dispute.get("id"),
                charge_id=dispute.get("charge"),
            )
            return {"action": "ignored", "reason": "payment not found"}

        if await self.orders.get_dispute(db, dispute["id"]) is not None:
            return {"action": "dispute_exists", "dispute_id": dispute["id"]}

        await self.orders.add_dispute(
            db,
            payment,
            processor_dispute_id=dispute["id"],
            amount_cents=int(dispute.get("amount") or 0),
            reason=dispute.get("reason"),
            status=dispute.get("status") or "needs_response",
            opened_at=timestamp_to_datetime(dispute.get("created")),
        )
        await self.outbox.add(
            db,
            "payment",
            payment.order_id,
            "dispute.created",
            {
                "dispute_id": dispute["id"],
                "processor_reference": payment.processor_reference,
                "amount_cents": dispute.get("amount"),
                "reason": dispute.get("reason"),
            },
        )
        return {
            "action": "dispute_created",
            "dispute_id": dispute["id"],
            "processor_reference": payment.processor_reference,
            "payment_status": payment.status,
        }

    async def handle_charge_refunded(
        self, db: AsyncSession, event: ProcessorEvent, channel: str
    ) -> Dict[str, Any]:
        """Handle charge.refunded: processor confirmation of a refund."""
        charge = event.object
        payment = await self._find_payment(db, charge.get("payment_intent"), charge.get("id"))
        if payment is None:
            logger.warning("charge_refunded_payment_not_found", charge_id=charge.get("id"))
            return {"action": "ignored", "reason": "payment not found"}

        if not charge.get("refunded"):
            logger.info(
                "partial_refund_recorded",
                processor_reference=payment.processor_reference,
                amount_refunded=charge.get("amount_refunded"),
            )
            return {
                "action": "partial_refund",
                "processor_reference": payment.processor_reference,
                "payment_status": payment.status,
            }

        result = await self._mark_refunded(db, payment, source=f"charge_refunded:{channel}")
        return {
            "action": "refunded",
            "processor_reference": payment.processor_reference,
            **result,
        }

    async def handle_invoice_payment_succeeded(
        self, db: AsyncSession, event: ProcessorEvent, channel: str
    ) -> Dict[str, Any]:
        """Handle invoice.payment_succeeded (acknowledged, no state change)."""
        logger.info(
            "invoice_payment_succeeded", event_id=event.id, invoice_id=event.object.get("id")
        )
        return {"action": "logged"}

    # Explicit operations

    async def refund(
        self,
        processor_reference: str,
        amount_cents: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Refund a succeeded payment through the processor.

        A full refund moves the payment to refunded, the order to refunded and
        reverses the loyalty credit. Partial refunds are recorded on the
        payment's metadata only.

        Raises:
            LookupError: If the payment does not exist
            PaymentOperationError: If the payment is not refundable
        """
        if self.database is None or self.stripe_client is None:
            raise PaymentOperationError("Refunds are not configured")

        async with self.database.session() as db:
            payment = await self.orders.get_payment(db, processor_reference)
            if payment is None:
                raise LookupError(f"Payment {processor_reference} not found")
            if payment.status != PaymentStatus.SUCCEEDED.value:
                raise PaymentOperationError(
                    f"Payment {processor_reference} is {payment.status}; only succeeded "
                    "payments can be refunded"
                )
            if amount_cents is not None and not 0 < amount_cents <= payment.amount_cents:
                raise PaymentOperationError(
                    f"Refund amount must be between 1 and {payment.amount_cents}"
                )
            full_refund = amount_cents is None or amount_cents == payment.amount_cents
            # Recorded refunds number the next one; a retry of a lost call reuses its key
            sequence = len((payment.processor_metadata or {}).get("refunds", []))

        # No transaction is held open across the processor call.
        refund = await self.stripe_client.create_refund(
            processor_reference,
            amount_cents=amount_cents,
            reason=reason,
            idempotency_key=f"refund:{processor_reference}:{sequence}:{amount_cents or 'full'}",
        )

        async with self.database.transaction() as db:
            payment = await self.orders.get_payment(db, processor_reference, for_update=True)
            if payment is None:
                raise LookupError(f"Payment {processor_reference} not found")
            metadata = dict(payment.processor_metadata or {})
            refunds = list(metadata.get("refunds", []))
            if all(recorded.get("id") != refund["id"] for recorded in refunds):
                metadata["refunds"] = refunds + [refund]
                payment.processor_metadata = metadata

            result: Dict[str, Any] = {"payment_status": payment.status}
            if full_refund:
                result = await self._mark_refunded(db, payment, source="refund")

        logger.info(
            "payment_refunded",
            processor_reference=processor_reference,
            refund_id=refund["id"],
            full_refund=full_refund,
        )
        return {
            "processor_reference": processor_reference,
            "refund_id": refund["id"],
            "refund_status": refund["status"],
            "amount_cents": refund["amount"],
            "full_refund": full_refund,
            **result,
        }
