"""
Sync audit log: one SyncLog row per synchronization run.

Used for watermarking the next order pull and for operator visibility.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync.core.clock import as_utc, utcnow
from commerce_sync.core.states import SyncOperation, SyncRunStatus
from commerce_sync.database.models import SyncLog

logger = structlog.get_logger(__name__)


@dataclass
class SyncCounts:
    """Per-run outcome counters, accumulated as items finish."""

    processed: int = 0
    failed: int = 0
    skipped: int = 0
    api_calls: int = 0
    unmapped_lines: int = 0
    errors: List[str] = field(default_factory=list)

    def record_error(self, message: str, limit: int = 50) -> None:
        if len(self.errors) < limit:
            self.errors.append(message)


class SyncAuditLog:
    """Append-only writer and reader for SyncLog rows."""

    async def start_run(
        self,
        db: AsyncSession,
        channel: str,
        operation: SyncOperation,
        watermark: Optional[datetime] = None,
    ) -> SyncLog:
        log = SyncLog(
            channel=channel,
            operation=operation.value,
            status=SyncRunStatus.IN_PROGRESS.value,
            succeeded=False,
            started_at=utcnow(),
            watermark=watermark,
        )
        db.add(log)
        await db.flush()

        logger.info(
            "sync_run_started",
            sync_log_id=log.id,
            channel=channel,
            operation=operation.value,
            watermark=watermark.isoformat() if watermark else None,
        )
        return log

    async def finish_run(
        self,
        db: AsyncSession,
        log_id: int,
        status: SyncRunStatus,
        counts: SyncCounts,
        error_message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> SyncLog:
        """
        Finalize a run with whatever counts were accumulated.

        Succeeded and partial runs both count as successful for watermarking:
        their ended_at is the actual completion time of the work recorded.
        """
        log = await db.get(SyncLog, log_id)
        if log is None:
            raise LookupError(f"SyncLog {log_id} not found")

        ended_at = utcnow()
        log.status = status.value
        log.succeeded = status in (SyncRunStatus.SUCCEEDED, SyncRunStatus.PARTIAL)
        log.ended_at = ended_at
        log.duration_ms = int((ended_at - as_utc(log.started_at)).total_seconds() * 1000)
        log.records_processed = counts.processed
        log.records_failed = counts.failed
        log.records_skipped = counts.skipped
        log.api_call_count = counts.api_calls
        log.error_message = error_message
        merged = dict(details or {})
        if counts.unmapped_lines:
            merged["unmapped_lines"] = counts.unmapped_lines
        if counts.errors:
            merged["errors"] = list(counts.errors)
        log.details = merged or None
        await db.flush()

        logger.info(
            "sync_run_finished",
            sync_log_id=log.id,
            channel=log.channel,
            operation=log.operation,
            status=log.status,
            processed=counts.processed,
            failed=counts.failed,
            skipped=counts.skipped,
            duration_ms=log.duration_ms,
        )
        return log

    async def last_successful_run(
        self, db: AsyncSession, channel: str, operation: SyncOperation
    ) -> Optional[SyncLog]:
        stmt = (
            select(SyncLog)
            .where(
                SyncLog.channel == channel,
                SyncLog.operation == operation.value,
                SyncLog.succeeded.is_(True),
                SyncLog.ended_at.is_not(None),
            )
            .order_by(SyncLog.ended_at.desc())
            .limit(1)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def compute_watermark(
        self,
        db: AsyncSession,
        channel: str,
        default_lookback: timedelta,
        now: Optional[datetime] = None,
    ) -> datetime:
        """
        Since-timestamp for the next order pull.

        max(end time of the last successful pull, now - default lookback).
        """
        floor = (now or utcnow()) - default_lookback
        last = await self.last_successful_run(db, channel, SyncOperation.ORDER_PULL)
        if last is None:
            return floor
        return max(as_utc(last.ended_at), floor)

    async def recent_runs(
        self, db: AsyncSession, channel: str, limit: int = 20
    ) -> List[SyncLog]:
        stmt = (
            select(SyncLog)
            .where(SyncLog.channel == channel)
            .order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
            .limit(limit)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())
