"""
Pytest configuration and fixtures.
"""
import hashlib
import hmac
import json
import time
import uuid
from datetime import datetime
from typing import Any, AsyncGenerator, Dict, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from commerce_sync.api.main import create_app
from commerce_sync.config import MarketplaceChannelConfig, Settings
from commerce_sync.core.repositories import OrderRepository
from commerce_sync.database.connection import Database
from commerce_sync.database.models import Order, Product
from commerce_sync.integrations.channels.base import (
    ExternalBuyer,
    ExternalOrder,
    ExternalOrderLine,
)
from commerce_sync.integrations.channels.fake import FakeChannelAdapter
from commerce_sync.integrations.stripe_client import StripeClient
from commerce_sync.services import ServiceContainer, build_services

WEBHOOK_SECRET = "whsec_test_general_endpoint"
LIVE_WEBHOOK_SECRET = "whsec_test_production_endpoint"
TEST_WEBHOOK_SECRET = "whsec_test_restricted_endpoint"
TEST_IDENTITY = "qa.tester@example.com"


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests without I/O beyond SQLite")
    config.addinivalue_line("markers", "integration: tests spanning several components")
    config.addinivalue_line("markers", "race: concurrency and duplicate-delivery tests")


def sign_payload(payload: str, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header for a payload."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(
    event_type: str,
    obj: Dict[str, Any],
    event_id: Optional[str] = None,
) -> str:
    """Serialize a processor event the way the processor delivers it."""
    return json.dumps(
        {
            "id": event_id or f"evt_{uuid.uuid4().hex[:24]}",
            "object": "event",
            "type": event_type,
            "created": int(time.time()),
            "livemode": False,
            "data": {"object": obj},
        }
    )


def make_external_order(
    external_id: str,
    sku: Optional[str] = "MUG-001",
    status: str = "paid",
    total_cents: int = 1299,
    modified_at: Optional[datetime] = None,
    email: Optional[str] = "marketplace.buyer@example.com",
    extra_lines: tuple = (),
) -> ExternalOrder:
    created = modified_at or datetime.now().astimezone()
    lines = (
        ExternalOrderLine(
            line_ref=f"{external_id}-1",
            external_sku=sku,
            title="Enamel Mug",
            quantity=1,
            unit_price_cents=total_cents,
        ),
    ) + tuple(extra_lines)
    return ExternalOrder(
        external_id=external_id,
        order_number=external_id.split("-")[-1],
        status=status,
        total_cents=total_cents,
        currency="GBP",
        buyer=ExternalBuyer(username="mugfan", email=email, name="Mug Fan"),
        lines=lines,
        created_at=created,
        modified_at=modified_at,
    )


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings backed by an on-disk SQLite database."""
    return Settings(
        _env_file=None,
        stripe_secret_key="sk_test_fake_key_for_testing",
        stripe_webhook_secret=WEBHOOK_SECRET,
        stripe_webhook_secret_live=LIVE_WEBHOOK_SECRET,
        stripe_webhook_secret_test=TEST_WEBHOOK_SECRET,
        webhook_test_identities=[TEST_IDENTITY],
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'commerce_sync_test.db'}",
        redis_url="",
        marketplace_channels={
            "fake": MarketplaceChannelConfig(
                kind="fake",
                order_number_prefix="FK",
                max_concurrency=1,
                page_size=2,
                sync_interval_seconds=60,
            )
        },
        sync_retry_max_attempts=3,
        sync_retry_base_delay=0,
        sync_retry_max_delay=0,
        adapter_call_timeout_seconds=1.0,
        sync_run_timeout_seconds=30.0,
        app_name="commerce-sync-test",
        app_env="test",
        log_level="DEBUG",
    )


@pytest_asyncio.fixture
async def database(test_settings: Settings) -> AsyncGenerator[Database, Any]:
    """Create a fresh schema for each test."""
    db = Database(test_settings.database_url)
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def fake_adapter() -> FakeChannelAdapter:
    return FakeChannelAdapter("fake", page_size=2)


@pytest.fixture
def stripe_client() -> MagicMock:
    """Stripe client double; signature verification stays real (static method)."""
    client = MagicMock(spec=StripeClient)
    client.create_refund = AsyncMock(
        return_value={"id": "re_test_123", "status": "succeeded", "amount": 2598}
    )
    return client


@pytest.fixture
def services(
    test_settings: Settings,
    database: Database,
    fake_adapter: FakeChannelAdapter,
    stripe_client: MagicMock,
) -> ServiceContainer:
    return build_services(
        test_settings,
        database=database,
        adapters={"fake": fake_adapter},
        stripe_client=stripe_client,
    )


@pytest_asyncio.fixture
async def client(services: ServiceContainer) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    app = create_app(services=services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def product(database: Database) -> Product:
    async with database.transaction() as db:
        mug = Product(
            sku="MUG-001",
            name="Enamel Mug",
            description="Speckled enamel mug, 350ml",
            price_cents=1299,
            currency="GBP",
            stock_quantity=25,
        )
        db.add(mug)
    return mug


@pytest_asyncio.fixture
async def order(database: Database, product: Product) -> Order:
    """A pending order for two mugs (25.98 GBP)."""
    async with database.transaction() as db:
        created = await OrderRepository().create_order(
            db,
            order_number="ORD-1001",
            total_cents=2598,
            currency="GBP",
            customer_ref="buyer@example.com",
            items=[{"product_id": product.id, "quantity": 2, "unit_price_cents": 1299}],
        )
    return created


def checkout_completed(
    order: Order,
    payment_intent: str = "pi_test_123",
    amount: Optional[int] = None,
    email: str = "buyer@example.com",
    event_id: Optional[str] = None,
) -> str:
    return make_event(
        "checkout.session.completed",
        {
            "id": "cs_test_abc",
            "object": "checkout.session",
            "payment_intent": payment_intent,
            "amount_total": order.total_cents if amount is None else amount,
            "currency": "gbp",
            "customer_details": {"email": email},
            "metadata": {"orderId": order.id},
        },
        event_id=event_id,
    )


def payment_intent_event(
    event_type: str,
    order: Order,
    payment_intent: str = "pi_test_123",
    email: str = "buyer@example.com",
    event_id: Optional[str] = None,
) -> str:
    obj: Dict[str, Any] = {
        "id": payment_intent,
        "object": "payment_intent",
        "amount": order.total_cents,
        "amount_received": order.total_cents if event_type.endswith("succeeded") else 0,
        "currency": "gbp",
        "receipt_email": email,
        "latest_charge": "ch_test_123",
        "metadata": {"orderId": order.id},
    }
    if event_type == "payment_intent.payment_failed":
        obj["last_payment_error"] = {"message": "Your card was declined."}
    return make_event(event_type, obj, event_id=event_id)
