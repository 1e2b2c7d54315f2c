"""
Tests for the transactional outbox and notification dispatch.
"""
import asyncio
import json
from typing import Any, Dict, List

import httpx
import pytest
from sqlalchemy import select

from commerce_sync.core.outbox import OutboxPublisher, OutboxWriter
from commerce_sync.database.models import OutboxEvent
from commerce_sync.integrations.notifications import NotificationDispatcher


async def write_events(database: Any, *event_types: str) -> None:
    writer = OutboxWriter()
    async with database.transaction() as db:
        for index, event_type in enumerate(event_types):
            await writer.add(
                db,
                aggregate_type="order",
                aggregate_id=f"order-{index}",
                event_type=event_type,
                payload={"order_number": f"ORD-{index}"},
            )


async def all_events(database: Any) -> List[OutboxEvent]:
    async with database.session() as db:
        result = await db.execute(select(OutboxEvent).order_by(OutboxEvent.id))
        return list(result.scalars().all())


class TestOutboxPublisher:
    """Test suite for outbox publishing."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_process_batch_publishes_in_order(self, database: Any) -> None:
        """Test that pending events are dispatched oldest first and marked published."""
        await write_events(database, "order.confirmed", "order.shipped")
        delivered: List[Dict[str, Any]] = []

        async def dispatch(event: Dict[str, Any]) -> None:
            delivered.append(event)

        publisher = OutboxPublisher(database, dispatch=dispatch)

        assert await publisher.process_batch() == 2
        assert [e["event_type"] for e in delivered] == ["order.confirmed", "order.shipped"]
        assert delivered[0]["payload"] == {"order_number": "ORD-0"}
        assert await publisher.get_pending_count() == 0
        assert all(e.published_at is not None for e in await all_events(database))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dispatch_failure_is_retried(self, database: Any) -> None:
        """Test that a failing dispatch leaves the event pending with an attempt recorded."""
        await write_events(database, "order.confirmed", "order.cancelled")

        async def dispatch(event: Dict[str, Any]) -> None:
            if event["event_type"] == "order.cancelled":
                raise httpx.ConnectError("notification service down")

        publisher = OutboxPublisher(database, dispatch=dispatch)

        assert await publisher.process_batch() == 1
        events = await all_events(database)
        assert [e.published for e in events] == [True, False]
        assert events[1].attempts == 1
        assert await publisher.get_pending_count() == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_batch_size_limits_work(self, database: Any) -> None:
        """Test that one batch never takes more than batch_size events."""
        await write_events(database, "a", "b", "c")
        publisher = OutboxPublisher(database, batch_size=2)

        assert await publisher.process_batch() == 2
        assert await publisher.process_batch() == 1
        assert await publisher.process_batch() == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_start_and_stop(self, database: Any) -> None:
        """Test that the polling loop drains the outbox and stops on request."""
        await write_events(database, "order.confirmed")
        publisher = OutboxPublisher(database, poll_interval_seconds=0.01)

        task = asyncio.create_task(publisher.start())
        await asyncio.sleep(0.2)
        publisher.stop()
        await asyncio.wait_for(task, timeout=1.0)

        assert await publisher.get_pending_count() == 0


class TestNotificationDispatcher:
    """Test suite for notification delivery."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_posts_event(self) -> None:
        """Test that events are POSTed as JSON to the configured endpoint."""
        received: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(request)
            return httpx.Response(202)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        dispatcher = NotificationDispatcher("https://notify.example.com/events", client=client)

        await dispatcher.dispatch({"event_type": "order.shipped", "aggregate_id": "o-1"})

        assert str(received[0].url) == "https://notify.example.com/events"
        assert json.loads(received[0].content)["event_type"] == "order.shipped"
        await client.aclose()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejection_raises(self) -> None:
        """Test that a non-2xx response surfaces to the publisher."""
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        dispatcher = NotificationDispatcher("https://notify.example.com/events", client=client)

        with pytest.raises(httpx.HTTPStatusError):
            await dispatcher.dispatch({"event_type": "order.shipped"})
        await client.aclose()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_logs_without_endpoint(self) -> None:
        """Test that with no endpoint configured events are only logged."""
        dispatcher = NotificationDispatcher()

        await dispatcher.dispatch({"event_type": "order.confirmed"})

        assert dispatcher._client is None
        await dispatcher.close()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_publisher_with_failing_endpoint(self, database: Any) -> None:
        """Test that endpoint failures keep events pending instead of raising."""
        await write_events(database, "order.refunded")
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503)))
        dispatcher = NotificationDispatcher("https://notify.example.com/events", client=client)
        publisher = OutboxPublisher(database, dispatch=dispatcher.dispatch)

        assert await publisher.process_batch() == 0
        assert await publisher.get_pending_count() == 1
        await client.aclose()
