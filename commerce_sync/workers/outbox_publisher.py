"""
Outbox publisher background worker.

Delivers order, payment and dispute notifications written to the outbox
table by the state machine and the sync engine.
"""
import asyncio
import signal
from typing import Any

import structlog

from commerce_sync.config import get_settings
from commerce_sync.core.outbox import OutboxPublisher
from commerce_sync.database.connection import Database
from commerce_sync.integrations.notifications import NotificationDispatcher
from commerce_sync.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_outbox_publisher() -> None:
    """
    Start the outbox publisher worker.

    Runs continuously until stopped.
    """
    settings = get_settings()
    setup_logging(settings)

    logger.info("outbox_publisher_worker_starting")

    database = Database.from_settings(settings)
    dispatcher = NotificationDispatcher(
        endpoint_url=settings.notification_webhook_url,
        timeout_seconds=settings.notification_timeout_seconds,
    )
    publisher = OutboxPublisher(
        database,
        dispatch=dispatcher.dispatch,
        batch_size=settings.outbox_batch_size,
        poll_interval_seconds=settings.outbox_poll_interval_seconds,
    )

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("outbox_publisher_worker_shutdown_signal_received", signal=sig)
        publisher.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await publisher.start()
    except Exception as e:
        logger.error("outbox_publisher_worker_error", error=str(e))
        raise
    finally:
        await dispatcher.close()
        await database.dispose()
        logger.info("outbox_publisher_worker_stopped")


def main() -> None:
    asyncio.run(start_outbox_publisher())


if __name__ == "__main__":
    main()
