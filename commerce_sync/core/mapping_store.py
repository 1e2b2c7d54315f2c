"""
Mapping store: canonical <-> external identity per channel.

Mappings are never deleted. A delisted product keeps its row with status
"ended"; a failed push keeps its row with status "error".
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync.core.clock import utcnow
from commerce_sync.core.errors import MappingConflictError
from commerce_sync.core.states import MappingStatus
from commerce_sync.database.models import OrderMapping, ProductMapping

logger = structlog.get_logger(__name__)


class MappingStore:
    """
    Reads and writes ProductMapping / OrderMapping rows.

    Every method works inside the caller's session so mapping writes commit
    atomically with the canonical writes they accompany.
    """

    # Product mappings

    async def get_product_mapping(
        self, db: AsyncSession, product_id: str, channel: str
    ) -> Optional[ProductMapping]:
        stmt = select(ProductMapping).where(
            ProductMapping.product_id == product_id,
            ProductMapping.channel == channel,
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_product_mapping_by_external_id(
        self, db: AsyncSession, channel: str, external_id: str
    ) -> Optional[ProductMapping]:
        stmt = select(ProductMapping).where(
            ProductMapping.external_id == external_id,
            ProductMapping.channel == channel,
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def find_product_by_external_sku(
        self, db: AsyncSession, channel: str, external_sku: Optional[str]
    ) -> Optional[ProductMapping]:
        """
        Resolve an inbound order line's SKU to a product mapping.

        Ended mappings still resolve (an order may arrive after delisting);
        mappings in error state never had a confirmed listing and do not.
        """
        if not external_sku:
            return None
        stmt = (
            select(ProductMapping)
            .where(
                ProductMapping.channel == channel,
                ProductMapping.external_sku == external_sku,
                ProductMapping.status != MappingStatus.ERROR.value,
            )
            .order_by(ProductMapping.id)
            .limit(1)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_product_mappings(
        self, db: AsyncSession, channel: str
    ) -> List[ProductMapping]:
        stmt = (
            select(ProductMapping)
            .where(ProductMapping.channel == channel)
            .order_by(ProductMapping.product_id)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def create_product_mapping(
        self,
        db: AsyncSession,
        product_id: str,
        channel: str,
        external_id: Optional[str] = None,
        external_sku: Optional[str] = None,
        external_url: Optional[str] = None,
        status: MappingStatus = MappingStatus.ACTIVE,
        platform_data: Optional[Dict[str, Any]] = None,
    ) -> ProductMapping:
        """
        Insert a new product mapping.

        Raises:
            MappingConflictError: If the product is already mapped on this
                channel, or the external id already belongs to another product
        """
        if await self.get_product_mapping(db, product_id, channel) is not None:
            raise MappingConflictError(
                f"Product {product_id} already mapped on channel {channel}"
            )
        if external_id is not None:
            existing = await self.get_product_mapping_by_external_id(db, channel, external_id)
            if existing is not None:
                raise MappingConflictError(
                    f"External id {external_id} on channel {channel} already mapped to "
                    f"product {existing.product_id}"
                )

        now = utcnow()
        mapping = ProductMapping(
            product_id=product_id,
            channel=channel,
            external_id=external_id,
            external_sku=external_sku,
            external_url=external_url,
            status=status.value,
            last_sync_at=now if status is MappingStatus.ACTIVE else None,
            sync_attempts=1,
            last_sync_attempt_at=now,
            platform_data=platform_data,
        )
        db.add(mapping)
        try:
            await db.flush()
        except IntegrityError as e:
            raise MappingConflictError(
                f"Product mapping ({product_id}, {channel}) violates uniqueness"
            ) from e

        logger.info(
            "product_mapping_created",
            product_id=product_id,
            channel=channel,
            external_id=external_id,
            status=status.value,
        )
        return mapping

    async def record_product_synced(
        self,
        db: AsyncSession,
        product_id: str,
        channel: str,
        external_id: str,
        external_sku: Optional[str],
        external_url: Optional[str] = None,
        platform_data: Optional[Dict[str, Any]] = None,
        synced_at: Optional[datetime] = None,
    ) -> ProductMapping:
        """Upsert the mapping after a successful push: status active, lastSyncAt now."""
        now = synced_at or utcnow()
        mapping = await self.get_product_mapping(db, product_id, channel)
        if mapping is None:
            mapping = await self.create_product_mapping(
                db,
                product_id,
                channel,
                external_id=external_id,
                external_sku=external_sku,
                external_url=external_url,
                platform_data=platform_data,
            )
            mapping.last_sync_at = now
            return mapping

        if mapping.external_id not in (None, external_id):
            # Canonical identity wins; the channel reassigned the listing id.
            logger.warning(
                "product_mapping_external_id_changed",
                product_id=product_id,
                channel=channel,
                old_external_id=mapping.external_id,
                new_external_id=external_id,
            )
        mapping.external_id = external_id
        mapping.external_sku = external_sku
        if external_url is not None:
            mapping.external_url = external_url
        if platform_data is not None:
            mapping.platform_data = platform_data
        mapping.status = MappingStatus.ACTIVE.value
        mapping.last_sync_at = now
        mapping.last_sync_attempt_at = now
        mapping.sync_attempts += 1
        mapping.last_error = None
        await db.flush()
        return mapping

    async def record_product_failure(
        self, db: AsyncSession, product_id: str, channel: str, error: str
    ) -> ProductMapping:
        """Upsert the mapping with status error after a failed push."""
        mapping = await self.get_product_mapping(db, product_id, channel)
        if mapping is None:
            mapping = await self.create_product_mapping(
                db, product_id, channel, status=MappingStatus.ERROR
            )
        else:
            mapping.status = MappingStatus.ERROR.value
            mapping.sync_attempts += 1
            mapping.last_sync_attempt_at = utcnow()
        mapping.last_error = error
        await db.flush()

        logger.warning(
            "product_mapping_marked_error",
            product_id=product_id,
            channel=channel,
            error=error,
        )
        return mapping

    async def mark_product_ended(
        self, db: AsyncSession, product_id: str, channel: str
    ) -> Optional[ProductMapping]:
        mapping = await self.get_product_mapping(db, product_id, channel)
        if mapping is None:
            return None
        mapping.status = MappingStatus.ENDED.value
        mapping.last_sync_at = utcnow()
        mapping.last_sync_attempt_at = mapping.last_sync_at
        mapping.last_error = None
        await db.flush()
        logger.info("product_mapping_ended", product_id=product_id, channel=channel)
        return mapping

    # Order mappings

    async def get_order_mapping(
        self, db: AsyncSession, order_id: str, channel: str
    ) -> Optional[OrderMapping]:
        stmt = select(OrderMapping).where(
            OrderMapping.order_id == order_id,
            OrderMapping.channel == channel,
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_order_mapping_by_external(
        self, db: AsyncSession, channel: str, external_id: str
    ) -> Optional[OrderMapping]:
        stmt = select(OrderMapping).where(
            OrderMapping.external_id == external_id,
            OrderMapping.channel == channel,
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def create_order_mapping(
        self,
        db: AsyncSession,
        order_id: str,
        channel: str,
        external_id: str,
        external_number: Optional[str] = None,
        platform_status: Optional[str] = None,
        platform_total_cents: Optional[int] = None,
    ) -> OrderMapping:
        """
        Insert a new order mapping.

        Raises:
            MappingConflictError: If either side of the mapping already exists
        """
        if await self.get_order_mapping_by_external(db, channel, external_id) is not None:
            raise MappingConflictError(
                f"External order {external_id} already imported on channel {channel}"
            )
        if await self.get_order_mapping(db, order_id, channel) is not None:
            raise MappingConflictError(f"Order {order_id} already mapped on channel {channel}")

        mapping = OrderMapping(
            order_id=order_id,
            channel=channel,
            external_id=external_id,
            external_number=external_number,
            status=MappingStatus.ACTIVE.value,
            platform_status=platform_status,
            platform_total_cents=platform_total_cents,
            last_sync_at=utcnow(),
        )
        db.add(mapping)
        try:
            await db.flush()
        except IntegrityError as e:
            raise MappingConflictError(
                f"Order mapping ({external_id}, {channel}) violates uniqueness"
            ) from e

        logger.info(
            "order_mapping_created",
            order_id=order_id,
            channel=channel,
            external_id=external_id,
        )
        return mapping
