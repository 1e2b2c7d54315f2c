"""
API tests for webhook ingestion, operator endpoints and monitoring.
"""
import asyncio
from typing import Any

import pytest
from httpx import AsyncClient

from commerce_sync.core.errors import PermanentAdapterFailure
from conftest import (
    WEBHOOK_SECRET,
    checkout_completed,
    make_external_order,
    sign_payload,
)


async def post_webhook(client: AsyncClient, payload: str, secret: str = WEBHOOK_SECRET) -> Any:
    return await client.post(
        "/webhooks/stripe",
        content=payload,
        headers={
            "Stripe-Signature": sign_payload(payload, secret),
            "Content-Type": "application/json",
        },
    )


class TestWebhookEndpoint:
    """Integration tests for the webhook endpoint."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_verified_event_is_processed(self, client: AsyncClient, order: Any) -> None:
        """Test that a signed checkout event is acknowledged and applied."""
        response = await post_webhook(client, checkout_completed(order, event_id="evt_api_1"))

        assert response.status_code == 200
        data = response.json()
        assert data["received"] is True
        assert data["status"] == "processed"
        assert data["event_id"] == "evt_api_1"
        assert data["result"]["order_status"] == "confirmed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_duplicate_is_acknowledged(self, client: AsyncClient, order: Any) -> None:
        """Test that a redelivery gets 200 with a duplicate status."""
        payload = checkout_completed(order, event_id="evt_api_dup")

        await post_webhook(client, payload)
        response = await post_webhook(client, payload)

        assert response.status_code == 200
        assert response.json()["status"] == "duplicate"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_bad_signature_rejected(self, client: AsyncClient, order: Any) -> None:
        """Test that an invalid signature returns 400."""
        response = await post_webhook(client, checkout_completed(order), secret="whsec_wrong")

        assert response.status_code == 400

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, client: AsyncClient, order: Any) -> None:
        """Test that a request without Stripe-Signature returns 400."""
        response = await client.post("/webhooks/stripe", content=checkout_completed(order))

        assert response.status_code == 400

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_non_utf8_body_rejected(self, client: AsyncClient) -> None:
        """Test that a body which is not UTF-8 returns 400 instead of a server error."""
        response = await client.post(
            "/webhooks/stripe",
            content=b'{"id": "evt_\xff\xfe"}',
            headers={"Stripe-Signature": "t=1700000000,v1=deadbeef"},
        )

        assert response.status_code == 400

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_endpoint(self, client: AsyncClient, order: Any) -> None:
        """Test that an unconfigured endpoint key returns 404."""
        payload = checkout_completed(order)
        response = await client.post(
            "/webhooks/paypal",
            content=payload,
            headers={"Stripe-Signature": sign_payload(payload, WEBHOOK_SECRET)},
        )

        assert response.status_code == 404


class TestSyncEndpoints:
    """Integration tests for sync operator endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_trigger_and_status(
        self, client: AsyncClient, fake_adapter: Any, product: Any
    ) -> None:
        """Test triggering runs and reading them back."""
        push = await client.post("/sync/fake/catalog-push")
        fake_adapter.add_order(make_external_order("FK-1"))
        pull = await client.post("/sync/fake/order_pull")
        status = await client.get("/sync/fake/status")

        assert push.status_code == 200
        assert push.json()["processed"] == 1
        assert pull.status_code == 200
        assert pull.json()["processed"] == 1
        data = status.json()
        assert status.status_code == 200
        assert [run["operation"] for run in data["runs"]] == ["order_pull", "catalog_push"]
        assert data["running"] == []

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_trigger_while_running_returns_202(
        self, client: AsyncClient, fake_adapter: Any, product: Any
    ) -> None:
        """Test that a concurrent trigger is answered with already_running."""
        fake_adapter.delay("publish_catalog_entry", 0.3)

        first = asyncio.create_task(client.post("/sync/fake/catalog-push"))
        await asyncio.sleep(0.1)
        second = await client.post("/sync/fake/catalog-push")
        await first

        assert second.status_code == 202
        assert second.json()["status"] == "already_running"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_channel_or_operation(self, client: AsyncClient) -> None:
        """Test 404s for unconfigured channels and unsupported operations."""
        assert (await client.post("/sync/etsy/order-pull")).status_code == 404
        assert (await client.post("/sync/fake/inventory-audit")).status_code == 404
        assert (await client.get("/sync/etsy/status")).status_code == 404


class TestPaymentAndOrderEndpoints:
    """Integration tests for refund, fulfillment and loyalty endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_payment(
        self, client: AsyncClient, order: Any, stripe_client: Any
    ) -> None:
        """Test a full refund of a succeeded payment."""
        await post_webhook(client, checkout_completed(order))

        response = await client.post(
            "/payments/pi_test_123/refund", json={"reason": "requested_by_customer"}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["refund_id"] == "re_test_123"
        assert data["full_refund"] is True
        assert data["order_status"] == "refunded"
        stripe_client.create_refund.assert_awaited_once()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_errors(self, client: AsyncClient, order: Any) -> None:
        """Test refund error mapping."""
        missing = await client.post("/payments/pi_missing/refund", json={})
        invalid = await client.post("/payments/pi_test_123/refund", json={"reason": "because"})

        await post_webhook(client, checkout_completed(order))
        too_much = await client.post("/payments/pi_test_123/refund", json={"amount_cents": 9999})

        assert missing.status_code == 404
        assert invalid.status_code == 422
        assert too_much.status_code == 409

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_fulfillment_and_marketplace_refund(
        self, client: AsyncClient, services: Any, fake_adapter: Any, product: Any
    ) -> None:
        """Test fulfillment and marketplace refund endpoints for an imported order."""
        await client.post("/sync/fake/catalog-push")
        fake_adapter.add_order(make_external_order("FK-7"))
        await client.post("/sync/fake/order-pull")

        async with services.database.session() as db:
            mapping = await services.engine.mappings.get_order_mapping_by_external(
                db, "fake", "FK-7"
            )
        fulfilled = await client.post(
            f"/orders/{mapping.order_id}/fulfillments",
            json={"channel": "fake", "tracking_number": "RM1", "carrier": "ROYAL_MAIL"},
        )
        refunded = await client.post(
            f"/orders/{mapping.order_id}/marketplace-refunds",
            json={"channel": "fake", "amount_cents": 500, "line_ref": "FK-7-1"},
        )

        assert fulfilled.status_code == 200
        assert fulfilled.json()["order_status"] == "shipped"
        assert refunded.status_code == 200
        assert refunded.json()["order_status"] == "shipped"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_fulfillment_errors(
        self, client: AsyncClient, services: Any, fake_adapter: Any, product: Any, order: Any
    ) -> None:
        """Test 404 for unmapped orders and 502 for marketplace rejections."""
        body = {"channel": "fake", "tracking_number": "RM1", "carrier": "ROYAL_MAIL"}
        unmapped = await client.post(f"/orders/{order.id}/fulfillments", json=body)

        await client.post("/sync/fake/catalog-push")
        fake_adapter.add_order(make_external_order("FK-8"))
        await client.post("/sync/fake/order-pull")
        async with services.database.session() as db:
            mapping = await services.engine.mappings.get_order_mapping_by_external(
                db, "fake", "FK-8"
            )
        fake_adapter.fail("fulfill_order", "FK-8", PermanentAdapterFailure("HTTP 409"))
        rejected = await client.post(f"/orders/{mapping.order_id}/fulfillments", json=body)

        assert unmapped.status_code == 404
        assert rejected.status_code == 502

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_loyalty_balance(self, client: AsyncClient, order: Any) -> None:
        """Test that the balance reflects credited orders, case-insensitively."""
        await post_webhook(client, checkout_completed(order))

        response = await client.get("/customers/Buyer@Example.com/loyalty")

        assert response.status_code == 200
        assert response.json() == {"customer_ref": "buyer@example.com", "balance": 2598}


class TestAdminKey:
    """Integration tests for the optional operator API key."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_operator_endpoints_require_key(
        self, client: AsyncClient, services: Any
    ) -> None:
        """Test that a configured admin key guards operator routes only."""
        services.settings.admin_api_key = "op-secret"

        denied = await client.get("/sync/fake/status")
        allowed = await client.get("/sync/fake/status", headers={"X-API-Key": "op-secret"})
        health = await client.get("/health/live")

        assert denied.status_code == 401
        assert allowed.status_code == 200
        assert health.status_code == 200


class TestMonitoring:
    """Integration tests for health and metrics endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health_check(self, client: AsyncClient) -> None:
        """Test health check endpoint."""
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"]["status"] == "healthy"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health_reports_sync_freshness(self, client: AsyncClient) -> None:
        """Test that the sync check reports per-operation freshness without failing health."""
        before = (await client.get("/health")).json()
        await client.post("/sync/fake/order-pull")
        after = (await client.get("/health")).json()

        assert before["status"] == "healthy"
        assert before["checks"]["sync"]["channels"]["fake"]["order_pull"] == {
            "last_success_at": None,
            "stale": True,
        }
        pull = after["checks"]["sync"]["channels"]["fake"]["order_pull"]
        assert pull["last_success_at"] is not None
        assert pull["stale"] is False
        assert after["checks"]["sync"]["channels"]["fake"]["catalog_push"]["stale"] is True

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_probes(self, client: AsyncClient) -> None:
        """Test liveness and readiness probes."""
        live = await client.get("/health/live")
        ready = await client.get("/health/ready")

        assert live.json()["status"] == "alive"
        assert ready.status_code == 200

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics_endpoint(self, client: AsyncClient, order: Any) -> None:
        """Test Prometheus metrics endpoint."""
        await post_webhook(client, checkout_completed(order))

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "text/plain" in response.headers["content-type"]
        assert "webhook_events_received_total" in response.text

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_root(self, client: AsyncClient) -> None:
        """Test the root endpoint and request id header."""
        response = await client.get("/")

        assert response.status_code == 200
        assert response.json()["status"] == "operational"
        assert "X-Request-ID" in response.headers
