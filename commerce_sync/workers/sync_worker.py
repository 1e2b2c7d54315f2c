"""
Marketplace sync background worker.

Runs catalog push and order pull for every configured channel on its
interval. One failed run is logged and never stops the loop.
"""
import argparse
import asyncio
import signal
from typing import Any, Optional

import structlog

from commerce_sync.config import get_settings
from commerce_sync.core.states import SyncOperation
from commerce_sync.monitoring.logging import setup_logging
from commerce_sync.services import build_services

logger = structlog.get_logger(__name__)


async def run_once(channel: Optional[str] = None, operation: Optional[str] = None) -> None:
    """Run the selected operations once and exit."""
    settings = get_settings()
    setup_logging(settings)
    services = build_services(settings)

    operations = [SyncOperation(operation)] if operation else list(SyncOperation)
    channels = [channel] if channel else services.engine.channels

    try:
        await services.database.create_all()
        for name in channels:
            for op in operations:
                result = await services.scheduler.trigger(name, op)
                logger.info(
                    "sync_worker_run_finished",
                    channel=name,
                    operation=op.value,
                    status=result.get("status"),
                    processed=result.get("processed"),
                    failed=result.get("failed"),
                )
    finally:
        await services.close()


async def start_sync_worker(tick_seconds: float = 5.0) -> None:
    """
    Start the sync worker.

    Runs every channel's operations on their configured interval until a
    shutdown signal arrives.
    """
    settings = get_settings()
    setup_logging(settings)

    logger.info("sync_worker_starting", tick_seconds=tick_seconds)

    services = build_services(settings)
    scheduler = services.scheduler

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("sync_worker_shutdown_signal_received", signal=sig)
        scheduler.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await services.database.create_all()
        await scheduler.run_forever(tick_seconds=tick_seconds)
    except Exception as e:
        logger.error("sync_worker_error", error=str(e))
        raise
    finally:
        await services.close()
        logger.info("sync_worker_stopped")


def main() -> None:
    parser = argparse.ArgumentParser(description="Marketplace sync worker")
    parser.add_argument(
        "--once", action="store_true", help="Run each operation once and exit"
    )
    parser.add_argument("--channel", default=None, help="Only this channel (with --once)")
    parser.add_argument(
        "--operation",
        choices=[op.value for op in SyncOperation],
        default=None,
        help="Only this operation (with --once)",
    )
    parser.add_argument(
        "--tick", type=float, default=5.0, help="Seconds between schedule checks"
    )
    args = parser.parse_args()

    if args.once:
        asyncio.run(run_once(channel=args.channel, operation=args.operation))
    else:
        asyncio.run(start_sync_worker(tick_seconds=args.tick))


if __name__ == "__main__":
    main()
