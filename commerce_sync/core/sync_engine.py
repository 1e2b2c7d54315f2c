"""
Marketplace synchronization engine.

Implements:
- Outbound catalog push with per-item failure isolation
- Inbound order pull with watermarking and replay-safe import
- Bounded concurrency, retry with backoff, per-call timeouts
- Run deadlines that finalize the SyncLog with partial counts

No database transaction is held across a network call: each item reads in one
short session, calls the adapter, then writes its outcome in another.
"""
import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from commerce_sync.config import MarketplaceChannelConfig, Settings
from commerce_sync.core.clock import as_utc, utcnow
from commerce_sync.core.errors import (
    AdapterError,
    AdapterErrorType,
    MappingConflictError,
    ReconciliationConflict,
    SyncOperationError,
    TransientAdapterFailure,
    UnknownChannel,
    UnmappedLineItem,
)
from commerce_sync.core.mapping_store import MappingStore
from commerce_sync.core.outbox import OutboxWriter
from commerce_sync.core.repositories import OrderRepository
from commerce_sync.core.states import MappingStatus, OrderStatus, SyncOperation, SyncRunStatus
from commerce_sync.core.sync_audit import SyncAuditLog, SyncCounts
from commerce_sync.database.connection import Database
from commerce_sync.database.models import OrderMapping, Product, ProductMapping, SyncLog
from commerce_sync.integrations.channels.base import (
    CatalogEntry,
    ChannelAdapter,
    ExternalBuyer,
    ExternalOrder,
    ExternalRef,
    RejectedOrder,
    TrackingInfo,
)
from commerce_sync.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Statuses the marketplace is authoritative for on replayed orders
SHIPPING_STATUSES = frozenset({OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED})


@dataclass(frozen=True)
class SyncPolicy:
    """Retry, timeout and deadline policy shared by all channels."""

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 16.0
    run_timeout_seconds: float = 900.0
    call_timeout_seconds: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "SyncPolicy":
        return cls(
            max_attempts=settings.sync_retry_max_attempts,
            base_delay=settings.sync_retry_base_delay,
            max_delay=settings.sync_retry_max_delay,
            run_timeout_seconds=settings.sync_run_timeout_seconds,
            call_timeout_seconds=settings.adapter_call_timeout_seconds,
        )


@dataclass(frozen=True)
class SyncRunSummary:
    sync_log_id: int
    channel: str
    operation: str
    status: str
    succeeded: bool
    processed: int
    failed: int
    skipped: int
    api_calls: int
    started_at: datetime
    ended_at: Optional[datetime]
    watermark: Optional[datetime]
    duration_ms: Optional[int]
    error_message: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    @classmethod
    def from_log(cls, log: SyncLog) -> "SyncRunSummary":
        return cls(
            sync_log_id=log.id,
            channel=log.channel,
            operation=log.operation,
            status=log.status,
            succeeded=log.succeeded,
            processed=log.records_processed,
            failed=log.records_failed,
            skipped=log.records_skipped,
            api_calls=log.api_call_count,
            started_at=as_utc(log.started_at),
            ended_at=as_utc(log.ended_at) if log.ended_at else None,
            watermark=as_utc(log.watermark) if log.watermark else None,
            duration_ms=log.duration_ms,
            error_message=log.error_message,
            details=log.details,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("started_at", "ended_at", "watermark"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


@dataclass(frozen=True)
class CatalogWorkItem:
    entry: CatalogEntry
    existing: Optional[ExternalRef]
    end_listing: bool = False
    relist: bool = False


WorkHandler = Callable[[Any, SyncCounts], Awaitable[None]]
WorkLoader = Callable[[SyncCounts], Awaitable[Sequence[Any]]]


def needs_push(product: Product, mapping: Optional[ProductMapping]) -> bool:
    """An active product is pushed when unmapped, inactive there, or edited since its last push."""
    if mapping is None or mapping.status != MappingStatus.ACTIVE.value:
        return True
    if mapping.last_sync_at is None:
        return True
    return as_utc(product.updated_at) > as_utc(mapping.last_sync_at)


def customer_ref_for(channel: str, buyer: ExternalBuyer) -> str:
    if buyer.email:
        return buyer.email.strip().lower()
    return f"{channel}:{buyer.username or 'unknown'}"


class MarketplaceSyncEngine:
    """
    Orchestrates catalog push and order pull per channel.

    Example:
        engine = MarketplaceSyncEngine(database, adapters, settings.marketplace_channels)
        summary = await engine.pull_orders("ebay")
    """

    def __init__(
        self,
        database: Database,
        adapters: Mapping[str, ChannelAdapter],
        channel_configs: Mapping[str, MarketplaceChannelConfig],
        policy: Optional[SyncPolicy] = None,
        mappings: Optional[MappingStore] = None,
        audit: Optional[SyncAuditLog] = None,
        orders: Optional[OrderRepository] = None,
        outbox: Optional[OutboxWriter] = None,
    ):
        self.database = database
        self.adapters = dict(adapters)
        self.channel_configs = dict(channel_configs)
        self.policy = policy or SyncPolicy()
        self.mappings = mappings or MappingStore()
        self.audit = audit or SyncAuditLog()
        self.orders = orders or OrderRepository()
        self.outbox = outbox or OutboxWriter()

        logger.info(
            "sync_engine_initialized",
            channels=sorted(self.adapters),
            max_attempts=self.policy.max_attempts,
            run_timeout_seconds=self.policy.run_timeout_seconds,
        )

    @property
    def channels(self) -> List[str]:
        return sorted(self.adapters)

    def adapter(self, channel: str) -> ChannelAdapter:
        adapter = self.adapters.get(channel)
        if adapter is None or channel not in self.channel_configs:
            raise UnknownChannel(f"Unknown marketplace channel {channel!r}")
        return adapter

    def config(self, channel: str) -> MarketplaceChannelConfig:
        self.adapter(channel)
        return self.channel_configs[channel]

    async def run(self, channel: str, operation: SyncOperation) -> SyncRunSummary:
        if operation is SyncOperation.CATALOG_PUSH:
            return await self.push_catalog(channel)
        if operation is SyncOperation.ORDER_PULL:
            return await self.pull_orders(channel)
        raise SyncOperationError(f"Unsupported sync operation {operation!r}")

    # Adapter calls

    def _before_sleep(self, channel: str, operation: str) -> Callable[[RetryCallState], None]:
        def log_retry(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "adapter_call_retrying",
                channel=channel,
                operation=operation,
                attempt=retry_state.attempt_number,
                wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
                error=str(error),
            )

        return log_retry

    async def _call(
        self,
        channel: str,
        operation: str,
        counts: SyncCounts,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
        bounded: bool = True,
    ) -> Any:
        """
        Invoke an adapter method with timeout and retry.

        Transient failures (including per-call timeouts) are retried with
        exponential backoff; permanent failures and exhausted retries raise.
        """
        call_timeout = self.policy.call_timeout_seconds if bounded else None
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.policy.max_attempts),
            wait=wait_exponential(multiplier=self.policy.base_delay, max=self.policy.max_delay),
            retry=retry_if_exception_type(TransientAdapterFailure),
            before_sleep=self._before_sleep(channel, operation),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                counts.api_calls += 1
                try:
                    return await asyncio.wait_for(func(*args), timeout=call_timeout)
                except asyncio.TimeoutError as e:
                    metrics.record_adapter_error(channel, AdapterErrorType.TRANSIENT.value)
                    raise TransientAdapterFailure(
                        f"{channel} {operation} exceeded {call_timeout}s", original_error=e
                    ) from e
                except AdapterError as e:
                    metrics.record_adapter_error(channel, e.error_type.value)
                    raise

    # Run lifecycle

    def _remaining(self, deadline: float) -> float:
        return max(0.0, deadline - asyncio.get_running_loop().time())

    async def _execute(
        self,
        channel: str,
        operation: SyncOperation,
        load: WorkLoader,
        handle: WorkHandler,
        watermark: Optional[datetime] = None,
    ) -> SyncRunSummary:
        counts = SyncCounts()
        deadline = asyncio.get_running_loop().time() + self.policy.run_timeout_seconds

        async with self.database.transaction() as db:
            log = await self.audit.start_run(db, channel, operation, watermark)
            log_id = log.id

        status = SyncRunStatus.SUCCEEDED
        error_message: Optional[str] = None
        details: Dict[str, Any] = {}
        loaded = False

        try:
            try:
                items = await asyncio.wait_for(load(counts), timeout=self._remaining(deadline))
                loaded = True
            except asyncio.TimeoutError:
                items = []
                status = SyncRunStatus.FAILED
                error_message = "Run deadline reached while loading work"
            except AdapterError as e:
                items = []
                status = SyncRunStatus.FAILED
                error_message = str(e)
                logger.error(
                    "sync_run_load_failed",
                    channel=channel,
                    operation=operation.value,
                    error=str(e),
                )

            details["items"] = len(items)
            if items:
                completed = await self._run_bounded(channel, items, handle, counts, deadline)
                if not completed:
                    status = SyncRunStatus.PARTIAL
                    error_message = "Run deadline reached; partial counts recorded"
                    logger.warning(
                        "sync_run_deadline_reached",
                        channel=channel,
                        operation=operation.value,
                        processed=counts.processed,
                        remaining=len(items) - counts.processed - counts.failed - counts.skipped,
                    )
        except asyncio.CancelledError:
            # Only a run whose work list was fetched may move the watermark forward
            if loaded:
                cancelled_status = SyncRunStatus.PARTIAL
                cancelled_message = "Run cancelled; partial counts recorded"
            else:
                cancelled_status = SyncRunStatus.FAILED
                cancelled_message = "Run cancelled before work was loaded"
            await asyncio.shield(
                self._finish(
                    log_id, channel, operation, cancelled_status, counts,
                    cancelled_message, details,
                )
            )
            raise
        except Exception as e:
            logger.error(
                "sync_run_failed",
                channel=channel,
                operation=operation.value,
                error=str(e),
                exc_info=True,
            )
            return await self._finish(
                log_id, channel, operation, SyncRunStatus.FAILED, counts, str(e), details
            )

        return await self._finish(
            log_id, channel, operation, status, counts, error_message, details
        )

    async def _run_bounded(
        self,
        channel: str,
        items: Sequence[Any],
        handle: WorkHandler,
        counts: SyncCounts,
        deadline: float,
    ) -> bool:
        """
        Run handle(item) for each item with at most max_concurrency in flight.

        Returns:
            bool: False if the deadline cancelled outstanding items
        """
        semaphore = asyncio.Semaphore(self.config(channel).max_concurrency)

        async def guarded(item: Any) -> None:
            async with semaphore:
                await handle(item, counts)

        tasks = [asyncio.create_task(guarded(item)) for item in items]
        try:
            done, pending = await asyncio.wait(tasks, timeout=self._remaining(deadline))
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.error(
                    "sync_item_crashed",
                    channel=channel,
                    error=str(task.exception()),
                )
        return not pending

    async def _finish(
        self,
        log_id: int,
        channel: str,
        operation: SyncOperation,
        status: SyncRunStatus,
        counts: SyncCounts,
        error_message: Optional[str],
        details: Optional[Dict[str, Any]] = None,
    ) -> SyncRunSummary:
        async with self.database.transaction() as db:
            log = await self.audit.finish_run(db, log_id, status, counts, error_message, details)
            summary = SyncRunSummary.from_log(log)

        metrics.record_sync_run(
            channel,
            operation.value,
            status.value,
            counts.processed,
            counts.failed,
            counts.skipped,
            (summary.duration_ms or 0) / 1000,
        )
        return summary

    # Catalog push

    async def push_catalog(self, channel: str) -> SyncRunSummary:
        """
        Push new, edited and previously failed products; end listings of inactive ones.

        A failure on one product marks its mapping as error and never aborts
        the run.
        """
        adapter = self.adapter(channel)

        async def load(counts: SyncCounts) -> List[CatalogWorkItem]:
            return await self._load_catalog_work(channel)

        async def handle(item: CatalogWorkItem, counts: SyncCounts) -> None:
            await self._push_item(channel, adapter, item, counts)

        return await self._execute(channel, SyncOperation.CATALOG_PUSH, load, handle)

    async def _load_catalog_work(self, channel: str) -> List[CatalogWorkItem]:
        async with self.database.session() as db:
            products = await self.orders.list_products(db)
            mappings = {
                mapping.product_id: mapping
                for mapping in await self.mappings.list_product_mappings(db, channel)
            }

        currency = self.config(channel).currency
        work: List[CatalogWorkItem] = []
        for product in products:
            mapping = mappings.get(product.id)
            existing = None
            if mapping is not None and mapping.external_id:
                existing = ExternalRef(
                    external_id=mapping.external_id,
                    external_sku=mapping.external_sku,
                    url=mapping.external_url,
                    data=dict(mapping.platform_data or {}),
                )
            entry = CatalogEntry(
                product_id=product.id,
                sku=product.sku,
                title=product.name,
                description=product.description,
                price_cents=product.price_cents,
                currency=product.currency or currency,
                quantity=product.stock_quantity,
            )

            if product.is_active:
                if needs_push(product, mapping):
                    # An ended or failed listing must be published again, not just updated
                    relist = existing is not None and mapping.status != MappingStatus.ACTIVE.value
                    work.append(CatalogWorkItem(entry=entry, existing=existing, relist=relist))
            elif (
                mapping is not None
                and mapping.status == MappingStatus.ACTIVE.value
                and existing is not None
            ):
                work.append(CatalogWorkItem(entry=entry, existing=existing, end_listing=True))

        logger.info(
            "catalog_work_loaded",
            channel=channel,
            products=len(products),
            work_items=len(work),
        )
        return work

    async def _push_item(
        self,
        channel: str,
        adapter: ChannelAdapter,
        item: CatalogWorkItem,
        counts: SyncCounts,
    ) -> None:
        entry = item.entry
        log = logger.bind(channel=channel, product_id=entry.product_id, sku=entry.sku)
        try:
            if item.end_listing:
                await self._call(
                    channel, "end_listing", counts,
                    adapter.end_listing, item.existing, "NOT_AVAILABLE",
                )
                async with self.database.transaction() as db:
                    await self.mappings.mark_product_ended(db, entry.product_id, channel)
                log.info("catalog_listing_ended")
            else:
                ref = await self._call(
                    channel, "publish_catalog_entry", counts,
                    adapter.publish_catalog_entry, entry, item.existing, item.relist,
                )
                if item.existing is not None:
                    await self._call(
                        channel, "update_stock", counts, adapter.update_stock, ref, entry.quantity
                    )
                    await self._call(
                        channel, "update_price", counts,
                        adapter.update_price, ref, entry.price_cents, entry.currency,
                    )
                async with self.database.transaction() as db:
                    await self.mappings.record_product_synced(
                        db,
                        entry.product_id,
                        channel,
                        external_id=ref.external_id,
                        external_sku=ref.external_sku or entry.sku,
                        external_url=ref.url,
                        platform_data=ref.data or None,
                    )
                log.info("catalog_item_pushed", external_id=ref.external_id)
            counts.processed += 1
        except AdapterError as e:
            counts.failed += 1
            counts.record_error(f"{entry.sku}: {e}")
            log.warning("catalog_item_failed", error=str(e), error_type=e.error_type.value)
            await self._record_push_failure(channel, entry, str(e))
        except Exception as e:
            counts.failed += 1
            counts.record_error(f"{entry.sku}: {e}")
            log.error("catalog_item_crashed", error=str(e), exc_info=True)
            await self._record_push_failure(channel, entry, str(e))

    async def _record_push_failure(self, channel: str, entry: CatalogEntry, error: str) -> None:
        try:
            async with self.database.transaction() as db:
                await self.mappings.record_product_failure(db, entry.product_id, channel, error)
        except Exception:
            logger.error(
                "product_mapping_failure_not_recorded",
                channel=channel,
                product_id=entry.product_id,
                exc_info=True,
            )

    # Order pull

    async def pull_orders(self, channel: str, now: Optional[datetime] = None) -> SyncRunSummary:
        """
        Import orders changed since the watermark.

        An external order already mapped on this channel is a replay: no new
        canonical order, only a forward-only shipping status update.
        """
        adapter = self.adapter(channel)
        lookback = timedelta(hours=self.config(channel).default_lookback_hours)

        async with self.database.session() as db:
            watermark = await self.audit.compute_watermark(db, channel, lookback, now=now)

        async def load(counts: SyncCounts) -> List[ExternalOrder]:
            fetched = await self._call(
                channel, "fetch_orders_since", counts,
                adapter.fetch_orders_since, watermark, bounded=False,
            )
            orders = []
            for order in fetched:
                if isinstance(order, RejectedOrder):
                    counts.failed += 1
                    counts.record_error(f"{order.external_id or 'unknown'}: {order.error}")
                    logger.error(
                        "order_payload_rejected",
                        channel=channel,
                        external_id=order.external_id,
                        error=order.error,
                    )
                else:
                    orders.append(order)
            return sorted(orders, key=lambda order: as_utc(order.sort_key))

        async def handle(order: ExternalOrder, counts: SyncCounts) -> None:
            await self._import_order(channel, adapter, order, counts)

        return await self._execute(channel, SyncOperation.ORDER_PULL, load, handle, watermark)

    async def _import_order(
        self,
        channel: str,
        adapter: ChannelAdapter,
        external: ExternalOrder,
        counts: SyncCounts,
    ) -> None:
        log = logger.bind(channel=channel, external_order_id=external.external_id)
        try:
            async with self.database.transaction() as db:
                outcome, unmapped = await self._apply_external_order(db, channel, adapter, external)
        except MappingConflictError:
            # Imported by a concurrent run between our read and write
            counts.skipped += 1
            log.info("order_import_raced")
            return
        except Exception as e:
            counts.failed += 1
            counts.record_error(f"{external.external_id}: {e}")
            log.error("order_import_failed", error=str(e), exc_info=True)
            return

        counts.unmapped_lines += unmapped
        if outcome == "created":
            counts.processed += 1
        else:
            counts.skipped += 1
        log.info("order_import_finished", outcome=outcome, unmapped_lines=unmapped)

    async def _apply_external_order(
        self,
        db: Any,
        channel: str,
        adapter: ChannelAdapter,
        external: ExternalOrder,
    ) -> Tuple[str, int]:
        mapping = await self.mappings.get_order_mapping_by_external(
            db, channel, external.external_id
        )
        if mapping is not None:
            await self._reconcile_replay(db, channel, adapter, mapping, external)
            return "replayed", 0

        items: List[Dict[str, Any]] = []
        unmapped = 0
        for line in external.lines:
            product_mapping = await self.mappings.find_product_by_external_sku(
                db, channel, line.external_sku
            )
            if product_mapping is None:
                unmapped += 1
                logger.warning(
                    "order_line_unmapped",
                    channel=channel,
                    external_order_id=external.external_id,
                    line_ref=line.line_ref,
                    error=str(UnmappedLineItem(channel, line.external_sku)),
                )
                continue
            items.append(
                {
                    "product_id": product_mapping.product_id,
                    "quantity": line.quantity,
                    "unit_price_cents": line.unit_price_cents,
                    "title": line.title,
                    "external_line_ref": line.line_ref,
                }
            )

        if not items:
            logger.warning(
                "order_import_skipped_no_mapped_lines",
                channel=channel,
                external_order_id=external.external_id,
                lines=len(external.lines),
            )
            return "no_mapped_lines", unmapped

        status = adapter.translate_status(external.status)
        order = await self.orders.create_order(
            db,
            order_number=f"{self.config(channel).order_number_prefix}-{external.order_number}",
            total_cents=external.total_cents,
            currency=external.currency,
            customer_ref=customer_ref_for(channel, external.buyer),
            items=items,
            status=status,
            source_channel=channel,
            created_at=as_utc(external.created_at),
        )
        await self.mappings.create_order_mapping(
            db,
            order.id,
            channel,
            external_id=external.external_id,
            external_number=external.order_number,
            platform_status=external.status,
            platform_total_cents=external.total_cents,
        )
        await self.outbox.add(
            db,
            aggregate_type="order",
            aggregate_id=order.id,
            event_type="order.imported",
            payload={
                "order_id": order.id,
                "order_number": order.order_number,
                "channel": channel,
                "external_id": external.external_id,
                "status": order.status,
                "total_cents": order.total_cents,
                "currency": order.currency,
            },
        )
        metrics.record_transition("order", order.status)
        return "created", unmapped

    async def _reconcile_replay(
        self,
        db: Any,
        channel: str,
        adapter: ChannelAdapter,
        mapping: OrderMapping,
        external: ExternalOrder,
    ) -> None:
        order = await self.orders.get_order(db, mapping.order_id, for_update=True)
        if order is None:
            logger.error("mapped_order_missing", channel=channel, order_id=mapping.order_id)
            return

        target = adapter.translate_status(external.status)
        if target in SHIPPING_STATUSES:
            moved = await self.orders.advance_order(order, target, cause=f"{channel}_order_pull")
            if moved:
                metrics.record_transition("order", target.value)
                if target is OrderStatus.SHIPPED:
                    await self.outbox.add(
                        db,
                        aggregate_type="order",
                        aggregate_id=order.id,
                        event_type="order.shipped",
                        payload={"order_id": order.id, "order_number": order.order_number},
                    )

        if order.total_cents != external.total_cents:
            conflict = ReconciliationConflict(
                "order", "total_cents", order.total_cents, external.total_cents
            )
            logger.warning(
                "reconciliation_conflict",
                channel=channel,
                order_id=order.id,
                external_order_id=external.external_id,
                detail=str(conflict),
            )
            metrics.record_conflict("order", "total_cents")

        mapping.platform_status = external.status
        mapping.platform_total_cents = external.total_cents
        mapping.last_sync_at = utcnow()
        await db.flush()

    # Explicit operations

    async def _require_order_mapping(self, order_id: str, channel: str) -> str:
        async with self.database.session() as db:
            mapping = await self.mappings.get_order_mapping(db, order_id, channel)
            if mapping is None:
                raise LookupError(f"Order {order_id} is not mapped on channel {channel}")
            return mapping.external_id

    async def push_fulfillment(
        self, order_id: str, channel: str, tracking: TrackingInfo
    ) -> Dict[str, Any]:
        """
        Send tracking to the marketplace, then mark the canonical order shipped.

        Raises:
            LookupError: If the order has no mapping on the channel
            AdapterError: If the marketplace rejects the fulfillment
        """
        adapter = self.adapter(channel)
        external_id = await self._require_order_mapping(order_id, channel)

        await self._call(
            channel, "fulfill_order", SyncCounts(), adapter.fulfill_order, external_id, tracking
        )

        async with self.database.transaction() as db:
            mapping = await self.mappings.get_order_mapping(db, order_id, channel)
            order = await self.orders.get_order(db, order_id, for_update=True)
            if mapping is not None:
                mapping.tracking_number = tracking.tracking_number
                mapping.shipping_carrier = tracking.carrier
                mapping.last_sync_at = utcnow()
            status = None
            if order is not None:
                if await self.orders.advance_order(
                    order, OrderStatus.SHIPPED, "fulfillment_pushed"
                ):
                    metrics.record_transition("order", OrderStatus.SHIPPED.value)
                    await self.outbox.add(
                        db,
                        aggregate_type="order",
                        aggregate_id=order.id,
                        event_type="order.shipped",
                        payload={
                            "order_id": order.id,
                            "order_number": order.order_number,
                            "tracking_number": tracking.tracking_number,
                            "carrier": tracking.carrier,
                        },
                    )
                status = order.status

        logger.info(
            "fulfillment_pushed",
            channel=channel,
            order_id=order_id,
            external_order_id=external_id,
            tracking_number=tracking.tracking_number,
        )
        return {
            "order_id": order_id,
            "channel": channel,
            "external_id": external_id,
            "tracking_number": tracking.tracking_number,
            "carrier": tracking.carrier,
            "order_status": status,
        }

    async def refund_marketplace_order(
        self,
        order_id: str,
        channel: str,
        amount_cents: int,
        reason: str,
        line_ref: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Issue a refund through the marketplace.

        A refund covering the order total moves the canonical order to refunded.

        Raises:
            SyncOperationError: If the amount is not positive
            LookupError: If the order has no mapping on the channel
            AdapterError: If the marketplace rejects the refund
        """
        if amount_cents <= 0:
            raise SyncOperationError("Refund amount must be positive")

        adapter = self.adapter(channel)
        external_id = await self._require_order_mapping(order_id, channel)

        result = await self._call(
            channel, "issue_refund", SyncCounts(),
            adapter.issue_refund, external_id, line_ref, amount_cents, reason,
        )

        async with self.database.transaction() as db:
            order = await self.orders.get_order(db, order_id, for_update=True)
            status = None
            if order is not None:
                if amount_cents >= order.total_cents and await self.orders.advance_order(
                    order, OrderStatus.REFUNDED, "marketplace_refund"
                ):
                    metrics.record_transition("order", OrderStatus.REFUNDED.value)
                    await self.outbox.add(
                        db,
                        aggregate_type="order",
                        aggregate_id=order.id,
                        event_type="order.refunded",
                        payload={
                            "order_id": order.id,
                            "order_number": order.order_number,
                            "amount_cents": amount_cents,
                            "channel": channel,
                        },
                    )
                status = order.status

        logger.info(
            "marketplace_refund_issued",
            channel=channel,
            order_id=order_id,
            external_order_id=external_id,
            amount_cents=amount_cents,
        )
        return {
            "order_id": order_id,
            "channel": channel,
            "external_id": external_id,
            "refund": result,
            "order_status": status,
        }
