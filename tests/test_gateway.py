"""
Tests for webhook ingestion: signatures, dedup and endpoint routing.
"""
import json
from typing import Any

import pytest
from sqlalchemy import func, select

from commerce_sync.core.errors import (
    AuthenticationFailure,
    EndpointNotConfigured,
    UnknownChannel,
)
from commerce_sync.core.gateway import EventIngestionGateway, WebhookEndpoint
from commerce_sync.core.routing import RoutingPredicate
from commerce_sync.database.models import Order, WebhookEventRecord
from conftest import (
    LIVE_WEBHOOK_SECRET,
    TEST_IDENTITY,
    TEST_WEBHOOK_SECRET,
    WEBHOOK_SECRET,
    checkout_completed,
    make_event,
    sign_payload,
)


async def dedup_count(database: Any) -> int:
    async with database.session() as db:
        result = await db.execute(select(func.count(WebhookEventRecord.id)))
        return int(result.scalar_one())


async def order_status(database: Any, order_id: str) -> str:
    async with database.session() as db:
        return (await db.get(Order, order_id)).status


class TestSignatureVerification:
    """Test suite for webhook authentication."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_valid_signature_processed(self, services: Any, order: Any) -> None:
        """Test that a correctly signed delivery is applied and acknowledged."""
        payload = checkout_completed(order)

        ack = await services.gateway.ingest(
            payload.encode(), sign_payload(payload, WEBHOOK_SECRET), "stripe"
        )

        assert ack.status == "processed"
        assert ack.result["action"] == "checkout_completed"
        assert await order_status(services.database, order.id) == "confirmed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_signature_rejected_without_side_effects(
        self, services: Any, order: Any
    ) -> None:
        """Test that a bad signature raises and writes nothing, not even a dedup record."""
        payload = checkout_completed(order)

        with pytest.raises(AuthenticationFailure):
            await services.gateway.ingest(
                payload.encode(), sign_payload(payload, "whsec_wrong"), "stripe"
            )

        assert await dedup_count(services.database) == 0
        assert await order_status(services.database, order.id) == "pending"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, services: Any, order: Any) -> None:
        """Test that a delivery without a Stripe-Signature header is rejected."""
        payload = checkout_completed(order)

        with pytest.raises(AuthenticationFailure):
            await services.gateway.ingest(payload.encode(), None, "stripe")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_signature_for_another_endpoint_rejected(
        self, services: Any, order: Any
    ) -> None:
        """Test that each endpoint verifies against its own secret."""
        payload = checkout_completed(order)

        with pytest.raises(AuthenticationFailure):
            await services.gateway.ingest(
                payload.encode(), sign_payload(payload, WEBHOOK_SECRET), "production"
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stale_signature_rejected(self, services: Any, order: Any) -> None:
        """Test that signatures older than the tolerance window are rejected."""
        payload = checkout_completed(order)
        header = sign_payload(payload, WEBHOOK_SECRET, timestamp=1_600_000_000)

        with pytest.raises(AuthenticationFailure):
            await services.gateway.ingest(payload.encode(), header, "stripe")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_endpoint(self, services: Any) -> None:
        """Test that an unconfigured endpoint key raises UnknownChannel."""
        payload = make_event("payment_intent.succeeded", {"id": "pi_1"})

        with pytest.raises(UnknownChannel):
            await services.gateway.ingest(
                payload.encode(), sign_payload(payload, WEBHOOK_SECRET), "nope"
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_endpoint_without_secret(self, services: Any) -> None:
        """Test that an endpoint with no signing secret is reported as misconfigured."""
        gateway = EventIngestionGateway(
            services.database,
            {"stripe": WebhookEndpoint("stripe", None, RoutingPredicate("all"))},
            services.state_machine,
        )
        payload = make_event("payment_intent.succeeded", {"id": "pi_1"})

        with pytest.raises(EndpointNotConfigured):
            await gateway.ingest(payload.encode(), sign_payload(payload, WEBHOOK_SECRET), "stripe")


class TestDeduplication:
    """Test suite for at-most-once event processing."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redelivery_acknowledged_as_duplicate(self, services: Any, order: Any) -> None:
        """Test that the same event id is applied once and acknowledged twice."""
        payload = checkout_completed(order, event_id="evt_dup_1")
        header = sign_payload(payload, WEBHOOK_SECRET)

        first = await services.gateway.ingest(payload.encode(), header, "stripe")
        second = await services.gateway.ingest(payload.encode(), header, "stripe")

        assert first.status == "processed"
        assert second.status == "duplicate"
        assert await dedup_count(services.database) == 1
        async with services.database.session() as db:
            assert await services.loyalty.balance(db, "buyer@example.com") == 2598

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_delivery_loses_on_dedup_insert(
        self, services: Any, order: Any, mocker: Any
    ) -> None:
        """
        Test the losing side of two concurrent deliveries.

        The dedup pre-check passes for both; the second insert must hit the
        unique key and roll back its transition.
        """
        payload = checkout_completed(order, event_id="evt_race_1")
        async with services.database.transaction() as db:
            await services.gateway.ledger.record(
                db, "evt_race_1", "checkout.session.completed", "stripe"
            )
        mocker.patch.object(services.gateway.ledger, "is_processed", return_value=False)

        ack = await services.gateway.ingest(
            payload.encode(), sign_payload(payload, WEBHOOK_SECRET), "stripe"
        )

        assert ack.status == "duplicate"
        assert await order_status(services.database, order.id) == "pending"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_processing_leaves_event_retryable(
        self, services: Any, order: Any, mocker: Any
    ) -> None:
        """Test that a crash inside the state machine rolls back the dedup record."""
        payload = checkout_completed(order, event_id="evt_crash_1")
        header = sign_payload(payload, WEBHOOK_SECRET)
        mocker.patch.object(
            services.state_machine, "apply", side_effect=RuntimeError("database went away")
        )

        with pytest.raises(RuntimeError):
            await services.gateway.ingest(payload.encode(), header, "stripe")

        assert await dedup_count(services.database) == 0


class TestEndpointRouting:
    """Test suite for restricted test/production endpoint pairs."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_test_payer_ignored_by_production(self, services: Any, order: Any) -> None:
        """Test that the production endpoint acknowledges but ignores test payers."""
        payload = checkout_completed(order, email=TEST_IDENTITY)

        ack = await services.gateway.ingest(
            payload.encode(), sign_payload(payload, LIVE_WEBHOOK_SECRET), "production"
        )

        assert ack.status == "ignored"
        assert TEST_IDENTITY in ack.message
        assert await order_status(services.database, order.id) == "pending"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_test_payer_processed_by_test_endpoint(self, services: Any, order: Any) -> None:
        """Test that the restricted endpoint processes its allow-listed payers."""
        payload = checkout_completed(order, email=TEST_IDENTITY)

        ack = await services.gateway.ingest(
            payload.encode(), sign_payload(payload, TEST_WEBHOOK_SECRET), "test"
        )

        assert ack.status == "processed"
        assert ack.endpoint == "test"
        assert await order_status(services.database, order.id) == "confirmed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_same_event_applied_by_exactly_one_endpoint(
        self, services: Any, order: Any
    ) -> None:
        """Test that a customer event delivered to both endpoints is applied once."""
        payload = checkout_completed(order, email="buyer@example.com", event_id="evt_both")

        test_ack = await services.gateway.ingest(
            payload.encode(), sign_payload(payload, TEST_WEBHOOK_SECRET), "test"
        )
        prod_ack = await services.gateway.ingest(
            payload.encode(), sign_payload(payload, LIVE_WEBHOOK_SECRET), "production"
        )

        assert test_ack.status == "ignored"
        assert prod_ack.status == "processed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unhandled_event_type_acknowledged(self, services: Any) -> None:
        """Test that unknown event kinds are acknowledged, not rejected."""
        payload = make_event("customer.created", {"id": "cus_1"})

        ack = await services.gateway.ingest(
            payload.encode(), sign_payload(payload, WEBHOOK_SECRET), "stripe"
        )

        assert ack.status == "unhandled"
        assert ack.to_dict()["received"] is True

    @pytest.mark.unit
    def test_ack_serialization(self) -> None:
        """Test that empty optional fields are omitted from the acknowledgement body."""
        from commerce_sync.core.gateway import Ack

        ack = Ack(status="duplicate", event_id="evt_1", event_type="x", endpoint="stripe")
        body = ack.to_dict()

        assert body == {
            "received": True,
            "status": "duplicate",
            "event_id": "evt_1",
            "event_type": "x",
            "endpoint": "stripe",
        }
        assert json.dumps(body)
