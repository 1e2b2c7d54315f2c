"""
Tests for sync run logging and order-pull watermarks.
"""
from datetime import timedelta
from typing import Any

import pytest

from commerce_sync.core.clock import as_utc, utcnow
from commerce_sync.core.states import SyncOperation, SyncRunStatus
from commerce_sync.core.sync_audit import SyncAuditLog, SyncCounts

LOOKBACK = timedelta(hours=24)


async def finished_run(
    database: Any,
    audit: SyncAuditLog,
    status: SyncRunStatus,
    operation: SyncOperation = SyncOperation.ORDER_PULL,
) -> Any:
    async with database.transaction() as db:
        log = await audit.start_run(db, "fake", operation)
        return await audit.finish_run(db, log.id, status, SyncCounts(processed=1))


class TestSyncAuditLog:
    """Test suite for SyncLog bookkeeping."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_finish_records_counts(self, database: Any) -> None:
        """Test that a finished run carries its counts, duration and details."""
        audit = SyncAuditLog()
        counts = SyncCounts(processed=3, failed=1, skipped=2, api_calls=7, unmapped_lines=1)
        counts.record_error("SKU-9: HTTP 400")

        async with database.transaction() as db:
            log = await audit.start_run(db, "fake", SyncOperation.CATALOG_PUSH)
            assert log.status == "in_progress"
            log = await audit.finish_run(
                db, log.id, SyncRunStatus.SUCCEEDED, counts, details={"items": 6}
            )

        assert log.succeeded is True
        assert log.records_processed == 3
        assert log.records_failed == 1
        assert log.records_skipped == 2
        assert log.api_call_count == 7
        assert log.duration_ms >= 0
        assert log.details == {"items": 6, "unmapped_lines": 1, "errors": ["SKU-9: HTTP 400"]}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_counts_as_successful(self, database: Any) -> None:
        """Test that partial runs are successful and failed runs are not."""
        audit = SyncAuditLog()

        partial = await finished_run(database, audit, SyncRunStatus.PARTIAL)
        failed = await finished_run(database, audit, SyncRunStatus.FAILED)

        assert partial.succeeded is True
        assert failed.succeeded is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_finish_unknown_run(self, database: Any) -> None:
        """Test that finishing a missing SyncLog raises LookupError."""
        with pytest.raises(LookupError):
            async with database.transaction() as db:
                await SyncAuditLog().finish_run(db, 12345, SyncRunStatus.FAILED, SyncCounts())

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_recent_runs_newest_first(self, database: Any) -> None:
        """Test that status history is ordered newest first and limited."""
        audit = SyncAuditLog()
        for _ in range(3):
            await finished_run(database, audit, SyncRunStatus.SUCCEEDED)

        async with database.session() as db:
            runs = await audit.recent_runs(db, "fake", limit=2)

        assert len(runs) == 2
        assert runs[0].id > runs[1].id


class TestWatermark:
    """Test suite for the order-pull watermark."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_first_pull_uses_default_lookback(self, database: Any) -> None:
        """Test that with no history the watermark is now minus the lookback."""
        now = utcnow()

        async with database.session() as db:
            watermark = await SyncAuditLog().compute_watermark(db, "fake", LOOKBACK, now=now)

        assert watermark == now - LOOKBACK

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_watermark_is_last_successful_end_time(self, database: Any) -> None:
        """Test that the watermark is the ended_at of the last successful pull."""
        audit = SyncAuditLog()
        succeeded = await finished_run(database, audit, SyncRunStatus.SUCCEEDED)
        await finished_run(database, audit, SyncRunStatus.FAILED)

        async with database.session() as db:
            watermark = await audit.compute_watermark(db, "fake", LOOKBACK)

        assert watermark == as_utc(succeeded.ended_at)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_catalog_runs_do_not_move_watermark(self, database: Any) -> None:
        """Test that only order pulls contribute to the watermark."""
        audit = SyncAuditLog()
        await finished_run(database, audit, SyncRunStatus.SUCCEEDED, SyncOperation.CATALOG_PUSH)
        now = utcnow()

        async with database.session() as db:
            watermark = await audit.compute_watermark(db, "fake", LOOKBACK, now=now)

        assert watermark == now - LOOKBACK

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stale_success_bounded_by_lookback(self, database: Any) -> None:
        """Test that a success older than the lookback window never widens the pull."""
        audit = SyncAuditLog()
        await finished_run(database, audit, SyncRunStatus.SUCCEEDED)
        later = utcnow() + timedelta(days=3)

        async with database.session() as db:
            watermark = await audit.compute_watermark(db, "fake", LOOKBACK, now=later)

        assert watermark == later - LOOKBACK
