"""
Transactional outbox for best-effort notifications.

Notification events are written in the same transaction as the transition
that caused them, then handed to the notification dispatcher by a background
publisher. Dispatch failures are logged and retried on the next poll; they
never propagate to the webhook caller or the sync engine.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync.core.clock import utcnow
from commerce_sync.database.connection import Database
from commerce_sync.database.models import OutboxEvent
from commerce_sync.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

Dispatch = Callable[[Dict[str, Any]], Awaitable[None]]


class OutboxWriter:
    """Appends notification events inside the caller's transaction."""

    async def add(
        self,
        db: AsyncSession,
        aggregate_type: str,
        aggregate_id: str,
        event_type: str,
        payload: Dict[str, Any],
    ) -> OutboxEvent:
        event = OutboxEvent(
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            event_type=event_type,
            payload=payload,
        )
        db.add(event)
        await db.flush()
        logger.info(
            "outbox_event_written",
            event_type=event_type,
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
        )
        return event


class OutboxPublisher:
    """
    Publishes events from the outbox table to the notification dispatcher.

    1. Read unpublished events from the outbox
    2. Dispatch each one
    3. Mark dispatched events as published
    """

    def __init__(
        self,
        database: Database,
        dispatch: Optional[Dispatch] = None,
        batch_size: int = 100,
        poll_interval_seconds: float = 1.0,
    ):
        """
        Initialize outbox publisher.

        Args:
            database: Database holding the outbox table
            dispatch: Coroutine that delivers one event (e.g. NotificationDispatcher.dispatch)
            batch_size: Number of events to process per batch
            poll_interval_seconds: Polling interval
        """
        self.database = database
        self.dispatch = dispatch or self._default_dispatch
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self._running = False

        logger.info(
            "outbox_publisher_initialized",
            batch_size=batch_size,
            poll_interval=poll_interval_seconds,
        )

    async def _default_dispatch(self, event_data: Dict[str, Any]) -> None:
        logger.info(
            "outbox_event_published_default",
            event_type=event_data.get("event_type"),
            aggregate_id=event_data.get("aggregate_id"),
        )

    async def _fetch_unpublished_events(self, db: AsyncSession) -> List[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.published.is_(False))
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(self.batch_size)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def _publish_event(self, event: OutboxEvent) -> bool:
        """
        Dispatch a single event.

        Returns:
            bool: True if dispatched, False if the dispatcher failed
        """
        event_data = {
            "id": event.id,
            "aggregate_id": event.aggregate_id,
            "aggregate_type": event.aggregate_type,
            "event_type": event.event_type,
            "payload": event.payload,
            "created_at": event.created_at.isoformat(),
        }
        try:
            await self.dispatch(event_data)
        except Exception as e:
            # Best-effort: the row stays unpublished and is retried next poll.
            logger.error(
                "outbox_event_publish_failed",
                event_id=event.id,
                event_type=event.event_type,
                error=str(e),
            )
            return False

        logger.info(
            "outbox_event_published",
            event_id=event.id,
            event_type=event.event_type,
            aggregate_id=event.aggregate_id,
        )
        return True

    async def process_batch(self) -> int:
        """
        Process a batch of unpublished events.

        Returns:
            int: Number of events published
        """
        async with self.database.transaction() as db:
            events = await self._fetch_unpublished_events(db)
            if not events:
                return 0

            logger.info("outbox_batch_processing_started", batch_size=len(events))

            published_ids: List[int] = []
            failed_ids: List[int] = []
            for event in events:
                started = asyncio.get_running_loop().time()
                if await self._publish_event(event):
                    published_ids.append(event.id)
                    metrics.record_outbox_event_published(
                        event.event_type, asyncio.get_running_loop().time() - started
                    )
                else:
                    failed_ids.append(event.id)

            if published_ids:
                await db.execute(
                    update(OutboxEvent)
                    .where(OutboxEvent.id.in_(published_ids))
                    .values(published=True, published_at=utcnow())
                )
            if failed_ids:
                await db.execute(
                    update(OutboxEvent)
                    .where(OutboxEvent.id.in_(failed_ids))
                    .values(attempts=OutboxEvent.attempts + 1)
                )

            logger.info(
                "outbox_batch_processed",
                total=len(events),
                published=len(published_ids),
                failed=len(failed_ids),
            )
            return len(published_ids)

    async def start(self) -> None:
        """
        Start the outbox publisher loop.

        Continuously polls for unpublished events and publishes them.
        """
        self._running = True
        logger.info("outbox_publisher_started")

        try:
            while self._running:
                try:
                    published_count = await self.process_batch()
                    metrics.set_outbox_queue_depth(await self.get_pending_count())
                except Exception as e:
                    logger.error("outbox_publisher_error", error=str(e))
                    published_count = 0

                if published_count == 0:
                    await asyncio.sleep(self.poll_interval_seconds)
                else:
                    # Events were processed, check again shortly for more
                    await asyncio.sleep(0.1)
        finally:
            logger.info("outbox_publisher_stopped")

    def stop(self) -> None:
        """Stop the outbox publisher."""
        self._running = False
        logger.info("outbox_publisher_stop_requested")

    async def get_pending_count(self) -> int:
        async with self.database.session() as db:
            stmt = select(func.count(OutboxEvent.id)).where(OutboxEvent.published.is_(False))
            result = await db.execute(stmt)
            return int(result.scalar_one())
