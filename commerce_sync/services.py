"""
Service wiring shared by the API process and the workers.

build_services() is the single place components are constructed; tests pass
their own database, adapters and Stripe client to it.
"""
from dataclasses import dataclass, field
from typing import Dict, Optional

import redis.asyncio as aioredis
import structlog

from commerce_sync.config import Settings
from commerce_sync.core.gateway import EventIngestionGateway
from commerce_sync.core.outbox import OutboxWriter
from commerce_sync.core.reconciliation import PaymentReconciliationStateMachine
from commerce_sync.core.repositories import LoyaltyLedger, OrderRepository
from commerce_sync.core.scheduler import InProcessRunLock, ReconciliationScheduler, RedisRunLock
from commerce_sync.core.sync_engine import MarketplaceSyncEngine, SyncPolicy
from commerce_sync.database.connection import Database
from commerce_sync.integrations.channels.base import ChannelAdapter
from commerce_sync.integrations.channels.registry import build_adapters
from commerce_sync.integrations.stripe_client import StripeClient
from commerce_sync.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    database: Database
    state_machine: PaymentReconciliationStateMachine
    gateway: EventIngestionGateway
    engine: MarketplaceSyncEngine
    scheduler: ReconciliationScheduler
    loyalty: LoyaltyLedger
    health: HealthCheck
    adapters: Dict[str, ChannelAdapter] = field(default_factory=dict)
    redis_client: Optional[aioredis.Redis] = None

    async def close(self) -> None:
        for channel, adapter in self.adapters.items():
            try:
                await adapter.close()
            except Exception as e:
                logger.error("channel_adapter_close_failed", channel=channel, error=str(e))
        if self.redis_client is not None:
            await self.redis_client.aclose()
        await self.database.dispose()


def build_services(
    settings: Settings,
    database: Optional[Database] = None,
    adapters: Optional[Dict[str, ChannelAdapter]] = None,
    redis_client: Optional[aioredis.Redis] = None,
    stripe_client: Optional[StripeClient] = None,
) -> ServiceContainer:
    """
    Construct every service from settings.

    Redis backs the sync run lock when settings.redis_url is set; with an
    empty URL the scheduler falls back to an in-process lock.
    """
    database = database or Database.from_settings(settings)
    if redis_client is None and settings.redis_url:
        redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)
    adapters = build_adapters(settings) if adapters is None else adapters
    stripe_client = stripe_client or StripeClient(settings)

    orders = OrderRepository()
    loyalty = LoyaltyLedger(points_per_unit=settings.loyalty_points_per_unit)
    outbox = OutboxWriter()

    state_machine = PaymentReconciliationStateMachine(
        orders=orders,
        loyalty=loyalty,
        outbox=outbox,
        database=database,
        stripe_client=stripe_client,
    )
    gateway = EventIngestionGateway.from_settings(
        database, settings.webhook_endpoints, state_machine
    )
    engine = MarketplaceSyncEngine(
        database,
        adapters,
        settings.marketplace_channels,
        policy=SyncPolicy.from_settings(settings),
        orders=orders,
        outbox=outbox,
    )
    lock = (
        RedisRunLock(redis_client, timeout_seconds=settings.redis_lock_timeout)
        if redis_client is not None
        else InProcessRunLock()
    )
    scheduler = ReconciliationScheduler(
        engine, lock=lock, history_limit=settings.sync_log_history_limit
    )

    logger.info(
        "services_built",
        webhook_endpoints=sorted(settings.webhook_endpoints),
        channels=sorted(adapters),
        run_lock=type(lock).__name__,
    )
    return ServiceContainer(
        settings=settings,
        database=database,
        state_machine=state_machine,
        gateway=gateway,
        engine=engine,
        scheduler=scheduler,
        loyalty=loyalty,
        health=HealthCheck(database, redis_client, settings.marketplace_channels),
        adapters=adapters,
        redis_client=redis_client,
    )
