"""
Event dedup ledger backed by the webhook_events table.

The unique constraint on event_id is what serializes concurrent deliveries of
the same event: the losing insert fails and is reported as a duplicate.
"""
import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync.core.errors import DuplicateEvent
from commerce_sync.database.models import WebhookEventRecord

logger = structlog.get_logger(__name__)


class EventDedupLedger:
    """Write-once record of processed external event identifiers."""

    async def is_processed(self, db: AsyncSession, event_id: str) -> bool:
        """
        Check if webhook event has already been processed.

        Args:
            db: Database session
            event_id: Processor event ID

        Returns:
            bool: True if event already processed, False otherwise
        """
        stmt = select(WebhookEventRecord.id).where(WebhookEventRecord.event_id == event_id)
        result = await db.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def record(
        self, db: AsyncSession, event_id: str, event_type: str, channel: str
    ) -> WebhookEventRecord:
        """
        Insert the dedup record inside the caller's transaction.

        The record only becomes visible when the caller commits, i.e. together
        with the state transition it guards.

        Raises:
            DuplicateEvent: If another delivery already recorded this event id.
                The session must be rolled back by the caller.
        """
        record = WebhookEventRecord(event_id=event_id, event_type=event_type, channel=channel)
        db.add(record)
        try:
            await db.flush()
        except IntegrityError as e:
            logger.info("webhook_dedup_conflict", event_id=event_id, channel=channel)
            raise DuplicateEvent(event_id) from e
        return record
