"""
Tests for the reconciliation scheduler and its run locks.
"""
import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import LockError

from commerce_sync.core.errors import UnknownChannel
from commerce_sync.core.scheduler import (
    InProcessRunLock,
    ReconciliationScheduler,
    RedisRunLock,
    ScheduleEntry,
)
from commerce_sync.core.states import SyncOperation


class TestTrigger:
    """Test suite for on-demand runs."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_second_trigger_reports_already_running(
        self, services: Any, fake_adapter: Any, product: Any
    ) -> None:
        """Test that at most one run per channel and operation is in flight."""
        fake_adapter.delay("publish_catalog_entry", 0.3)
        scheduler = services.scheduler

        first = asyncio.create_task(scheduler.trigger("fake", SyncOperation.CATALOG_PUSH))
        await asyncio.sleep(0.1)
        busy = await scheduler.trigger("fake", SyncOperation.CATALOG_PUSH)
        status = await scheduler.sync_status("fake")
        result = await first

        assert busy == {
            "status": "already_running",
            "channel": "fake",
            "operation": "catalog_push",
        }
        assert status["running"] == ["catalog_push"]
        assert result["status"] == "succeeded"
        assert result["processed"] == 1
        assert fake_adapter.call_count("publish_catalog_entry") == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_different_operations_run_concurrently(
        self, services: Any, fake_adapter: Any, product: Any
    ) -> None:
        """Test that the lock is scoped to (channel, operation)."""
        fake_adapter.delay("publish_catalog_entry", 0.2)

        push, pull = await asyncio.gather(
            services.scheduler.trigger("fake", SyncOperation.CATALOG_PUSH),
            services.scheduler.trigger("fake", SyncOperation.ORDER_PULL),
        )

        assert push["operation"] == "catalog_push"
        assert pull["operation"] == "order_pull"
        assert pull["status"] == "succeeded"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_lock_released_after_failure(self, services: Any, mocker: Any) -> None:
        """Test that a crashed run does not leave its lock held."""
        mocker.patch.object(services.engine, "run", side_effect=RuntimeError("boom"))

        with pytest.raises(RuntimeError):
            await services.scheduler.trigger("fake", SyncOperation.ORDER_PULL)

        assert not await services.scheduler.lock.is_held("fake:order_pull")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_channel(self, services: Any) -> None:
        """Test that triggering an unconfigured channel raises UnknownChannel."""
        with pytest.raises(UnknownChannel):
            await services.scheduler.trigger("etsy", SyncOperation.ORDER_PULL)


class TestSyncStatus:
    """Test suite for operator status reporting."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_status_lists_recent_runs(self, services: Any, product: Any) -> None:
        """Test that status reports history and the last successful run per operation."""
        await services.scheduler.trigger("fake", SyncOperation.CATALOG_PUSH)
        await services.scheduler.trigger("fake", SyncOperation.ORDER_PULL)

        status = await services.scheduler.sync_status("fake")

        assert status["channel"] == "fake"
        assert status["running"] == []
        assert [run["operation"] for run in status["runs"]] == ["order_pull", "catalog_push"]
        assert status["last_success"]["catalog_push"] == status["runs"][1]["ended_at"]
        assert status["last_success"]["order_pull"] is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_status_without_history(self, services: Any) -> None:
        """Test status for a channel that never ran."""
        status = await services.scheduler.sync_status("fake")

        assert status["runs"] == []
        assert status["last_success"] == {"catalog_push": None, "order_pull": None}


class TestPeriodicSchedule:
    """Test suite for the periodic loop."""

    @pytest.mark.unit
    def test_schedule_from_channel_config(self, services: Any) -> None:
        """Test that every enabled operation of every channel is scheduled."""
        entries = services.scheduler.schedule()

        assert {(e.channel, e.operation) for e in entries} == {
            ("fake", SyncOperation.ORDER_PULL),
            ("fake", SyncOperation.CATALOG_PUSH),
        }
        assert all(e.interval_seconds == 60 for e in entries)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_run_due_respects_interval(self, services: Any) -> None:
        """Test that entries run when due and are rescheduled by their interval."""
        entries = [ScheduleEntry("fake", SyncOperation.ORDER_PULL, 60)]

        first = await services.scheduler.run_due(entries, now=1000.0)
        second = await services.scheduler.run_due(entries, now=1030.0)
        third = await services.scheduler.run_due(entries, now=1061.0)

        assert len(first) == 1
        assert second == []
        assert len(third) == 1
        assert entries[0].next_run_at == 1121.0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_run_due_survives_failures(self, services: Any, mocker: Any) -> None:
        """Test that one failing run does not stop the loop."""
        mocker.patch.object(services.engine, "run", side_effect=RuntimeError("boom"))
        entries = [
            ScheduleEntry("fake", SyncOperation.ORDER_PULL, 60),
            ScheduleEntry("etsy", SyncOperation.ORDER_PULL, 60),
        ]

        results = await services.scheduler.run_due(entries, now=0.0)

        assert results == []
        assert all(e.next_run_at == 60.0 for e in entries)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_run_forever_stops(self, services: Any, mocker: Any) -> None:
        """Test that stop() ends the loop after the current tick."""
        scheduler = services.scheduler
        run_due = mocker.patch.object(scheduler, "run_due", return_value=[])

        task = asyncio.create_task(scheduler.run_forever(tick_seconds=0.01))
        await asyncio.sleep(0.05)
        scheduler.stop()
        await asyncio.wait_for(task, timeout=1.0)

        assert run_due.await_count >= 1


class TestRunLocks:
    """Test suite for lock implementations."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_in_process_lock(self) -> None:
        """Test acquire, contention and release of the in-process lock."""
        lock = InProcessRunLock()

        lease = await lock.acquire("fake:order_pull")
        assert lease is not None
        assert await lock.acquire("fake:order_pull") is None
        assert await lock.is_held("fake:order_pull")

        await lease.release()
        assert not await lock.is_held("fake:order_pull")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redis_lock_contention(self) -> None:
        """Test that a held Redis lock yields no lease."""
        redis_lock = MagicMock()
        redis_lock.acquire = AsyncMock(return_value=False)
        redis_client = MagicMock()
        redis_client.lock.return_value = redis_lock

        lock = RedisRunLock(redis_client, timeout_seconds=600)

        assert await lock.acquire("ebay:order_pull") is None
        redis_client.lock.assert_called_once_with(
            "sync:lock:ebay:order_pull", timeout=600, blocking=False
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redis_lease_release_tolerates_expiry(self) -> None:
        """Test that releasing an expired Redis lock is logged, not raised."""
        redis_lock = MagicMock()
        redis_lock.acquire = AsyncMock(return_value=True)
        redis_lock.release = AsyncMock(side_effect=LockError("expired"))
        redis_client = MagicMock()
        redis_client.lock.return_value = redis_lock
        redis_client.exists = AsyncMock(return_value=1)

        lock = RedisRunLock(redis_client)
        lease = await lock.acquire("ebay:catalog_push")

        await lease.release()
        assert await lock.is_held("ebay:catalog_push")
