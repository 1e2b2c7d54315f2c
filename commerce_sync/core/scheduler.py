"""
Reconciliation scheduler: periodic and on-demand sync runs.

At most one run per (channel, operation) is in flight at any time. The run
lock is a Redis lock when Redis is configured, so the API process and the
sync worker never overlap; otherwise an in-process lock registry.
"""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple

import structlog
from redis.asyncio import Redis
from redis.exceptions import LockError

from commerce_sync.core.clock import as_utc
from commerce_sync.core.states import SyncOperation
from commerce_sync.core.sync_audit import SyncAuditLog
from commerce_sync.core.sync_engine import MarketplaceSyncEngine, SyncRunSummary
from commerce_sync.monitoring.logging import sync_run_context
from commerce_sync.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class RunLease(Protocol):
    async def release(self) -> None:
        ...


class RunLock(Protocol):
    async def acquire(self, key: str) -> Optional[RunLease]:
        """Try to take the lock without waiting. None if it is held."""
        ...

    async def is_held(self, key: str) -> bool:
        ...


class _InProcessLease:
    def __init__(self, lock: asyncio.Lock):
        self._lock = lock

    async def release(self) -> None:
        if self._lock.locked():
            self._lock.release()


class InProcessRunLock:
    """Run lock for a single process."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    async def acquire(self, key: str) -> Optional[RunLease]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        if lock.locked():
            return None
        await lock.acquire()
        return _InProcessLease(lock)

    async def is_held(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()


class _RedisLease:
    def __init__(self, lock: Any, key: str):
        self._lock = lock
        self._key = key

    async def release(self) -> None:
        try:
            await self._lock.release()
        except LockError:
            # Lock expired before the run finished
            logger.warning("sync_lock_expired_before_release", lock_key=self._key)


class RedisRunLock:
    """Run lock shared by every process pointed at the same Redis."""

    def __init__(self, redis_client: Redis, timeout_seconds: int = 1800, prefix: str = "sync:lock"):
        self.redis = redis_client
        self.timeout_seconds = timeout_seconds
        self.prefix = prefix

    def _name(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def acquire(self, key: str) -> Optional[RunLease]:
        lock = self.redis.lock(self._name(key), timeout=self.timeout_seconds, blocking=False)
        if not await lock.acquire():
            return None
        return _RedisLease(lock, self._name(key))

    async def is_held(self, key: str) -> bool:
        return bool(await self.redis.exists(self._name(key)))


@dataclass
class ScheduleEntry:
    channel: str
    operation: SyncOperation
    interval_seconds: float
    next_run_at: float = field(default=0.0)


class ReconciliationScheduler:
    """
    Triggers sync runs on a per-channel schedule or on demand.

    Example:
        scheduler = ReconciliationScheduler(engine, InProcessRunLock())
        result = await scheduler.trigger("ebay", SyncOperation.ORDER_PULL)
    """

    def __init__(
        self,
        engine: MarketplaceSyncEngine,
        lock: Optional[RunLock] = None,
        audit: Optional[SyncAuditLog] = None,
        history_limit: int = 20,
    ):
        self.engine = engine
        self.lock = lock or InProcessRunLock()
        self.audit = audit or SyncAuditLog()
        self.history_limit = history_limit
        self._running = False

    @staticmethod
    def lock_key(channel: str, operation: SyncOperation) -> str:
        return f"{channel}:{operation.value}"

    async def trigger(self, channel: str, operation: SyncOperation) -> Dict[str, Any]:
        """
        Run one sync now unless the same channel and operation is already running.

        Returns:
            Dict: The run summary, or {"status": "already_running"}

        Raises:
            UnknownChannel: If the channel is not configured
        """
        self.engine.adapter(channel)
        key = self.lock_key(channel, operation)

        lease = await self.lock.acquire(key)
        if lease is None:
            metrics.record_sync_lock("busy")
            logger.info("sync_run_already_running", channel=channel, operation=operation.value)
            return {"status": "already_running", "channel": channel, "operation": operation.value}

        metrics.record_sync_lock("acquired")
        try:
            with sync_run_context(channel, operation.value):
                summary: SyncRunSummary = await self.engine.run(channel, operation)
        finally:
            await lease.release()
        return summary.to_dict()

    async def sync_status(self, channel: str) -> Dict[str, Any]:
        """Recent runs and in-flight operations for one channel."""
        self.engine.adapter(channel)
        async with self.engine.database.session() as db:
            runs = await self.audit.recent_runs(db, channel, self.history_limit)
            summaries = [SyncRunSummary.from_log(run).to_dict() for run in runs]

        running = [
            operation.value
            for operation in SyncOperation
            if await self.lock.is_held(self.lock_key(channel, operation))
        ]
        last_success: Dict[str, Optional[str]] = {}
        for operation in SyncOperation:
            match = next(
                (
                    run for run in runs
                    if run.operation == operation.value and run.succeeded and run.ended_at
                ),
                None,
            )
            last_success[operation.value] = as_utc(match.ended_at).isoformat() if match else None

        return {
            "channel": channel,
            "running": running,
            "last_success": last_success,
            "runs": summaries,
        }

    # Periodic loop

    def schedule(self) -> List[ScheduleEntry]:
        entries: List[ScheduleEntry] = []
        for channel in self.engine.channels:
            config = self.engine.config(channel)
            if config.order_pull_enabled:
                entries.append(
                    ScheduleEntry(channel, SyncOperation.ORDER_PULL, config.sync_interval_seconds)
                )
            if config.catalog_push_enabled:
                entries.append(
                    ScheduleEntry(channel, SyncOperation.CATALOG_PUSH, config.sync_interval_seconds)
                )
        return entries

    async def run_due(
        self, entries: List[ScheduleEntry], now: Optional[float] = None
    ) -> List[Tuple[ScheduleEntry, Dict[str, Any]]]:
        """Trigger every entry whose next run time has passed."""
        now = time.monotonic() if now is None else now
        results = []
        for entry in entries:
            if entry.next_run_at > now:
                continue
            entry.next_run_at = now + entry.interval_seconds
            try:
                result = await self.trigger(entry.channel, entry.operation)
            except Exception as e:
                logger.error(
                    "scheduled_sync_failed",
                    channel=entry.channel,
                    operation=entry.operation.value,
                    error=str(e),
                    exc_info=True,
                )
                continue
            results.append((entry, result))
        return results

    async def run_forever(self, tick_seconds: float = 5.0) -> None:
        """Loop until stop() is called."""
        self._running = True
        entries = self.schedule()
        logger.info(
            "sync_scheduler_started",
            entries=[f"{e.channel}:{e.operation.value}" for e in entries],
        )
        while self._running:
            await self.run_due(entries)
            await asyncio.sleep(tick_seconds)
        logger.info("sync_scheduler_stopped")

    def stop(self) -> None:
        self._running = False
