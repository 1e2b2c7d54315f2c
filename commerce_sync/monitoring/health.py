"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- Redis connectivity (when a Redis client is configured)
- Age of the last successful sync run per marketplace channel
"""
from datetime import timedelta
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import func, select, text

from commerce_sync.config import MarketplaceChannelConfig
from commerce_sync.core.clock import as_utc, utcnow
from commerce_sync.database.connection import Database
from commerce_sync.database.models import SyncLog

logger = structlog.get_logger(__name__)

STALE_INTERVALS = 3


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """Health check service for the database, Redis and marketplace sync freshness."""

    def __init__(
        self,
        database: Database,
        redis_client: Optional[aioredis.Redis] = None,
        channels: Optional[Dict[str, MarketplaceChannelConfig]] = None,
    ):
        self.database = database
        self.redis_client = redis_client
        self.channels = channels or {}

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            async with self.database.session() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}") from e

        return {
            "status": "healthy",
            "service": "database",
            "message": "Database connection successful",
        }

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Raises:
            HealthCheckError: If Redis check fails
        """
        if self.redis_client is None:
            return {
                "status": "healthy",
                "service": "redis",
                "message": "Redis not configured; in-process sync locks in use",
            }
        try:
            await self.redis_client.ping()
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {str(e)}") from e

        return {
            "status": "healthy",
            "service": "redis",
            "message": "Redis connection successful",
        }

    async def check_sync(self) -> Dict[str, Any]:
        """
        Report the last successful run of each scheduled sync operation.

        A channel is stale when its last success is older than
        STALE_INTERVALS sync intervals. Staleness is reported only and never
        makes the check unhealthy.

        Raises:
            HealthCheckError: If the sync log cannot be read
        """
        stmt = (
            select(SyncLog.channel, SyncLog.operation, func.max(SyncLog.ended_at))
            .where(SyncLog.succeeded.is_(True))
            .group_by(SyncLog.channel, SyncLog.operation)
        )
        try:
            async with self.database.session() as db:
                rows = (await db.execute(stmt)).all()
        except Exception as e:
            logger.error("sync_health_check_failed", error=str(e))
            raise HealthCheckError(f"Sync health check failed: {str(e)}") from e

        last_success = {(channel, operation): ended for channel, operation, ended in rows}
        now = utcnow()
        channels: Dict[str, Any] = {}
        for key, config in sorted(self.channels.items()):
            max_age = timedelta(seconds=config.sync_interval_seconds * STALE_INTERVALS)
            enabled = {
                "catalog_push": config.catalog_push_enabled,
                "order_pull": config.order_pull_enabled,
            }
            channels[key] = {}
            for operation, is_enabled in enabled.items():
                if not is_enabled:
                    continue
                ended = as_utc(last_success.get((key, operation)))
                channels[key][operation] = {
                    "last_success_at": ended.isoformat() if ended else None,
                    "stale": ended is None or now - ended > max_age,
                }

        return {
            "status": "healthy",
            "service": "sync",
            "channels": channels,
        }

    async def check_all(self) -> Dict[str, Any]:
        """Run all health checks."""
        checks: Dict[str, Any] = {}
        all_healthy = True

        for name, check in (
            ("database", self.check_database),
            ("redis", self.check_redis),
            ("sync", self.check_sync),
        ):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe: all dependencies must be reachable."""
        return await self.check_all()
