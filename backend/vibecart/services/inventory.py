from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from vibecart.core.config import settings
from vibecart.core.errors import ConcurrentModificationError, InsufficientStockError, NotFoundError
from vibecart.models.catalog import Category, Product, ProductVariant

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VariantSnapshot:
    """Point-in-time view of a sellable size, read straight from the table."""

    variant_id: UUID
    product_id: UUID
    product_name: str
    category: str
    size: str
    price: Decimal
    stock: int
    version: int


def _normalize_size(size: str) -> str:
    return (size or "").strip()


async def get_product_variant(
    session: AsyncSession, product_id: UUID, size: str, *, active_only: bool = True
) -> VariantSnapshot:
    # Column selects skip the identity map, so counters are never stale.
    filters = [ProductVariant.product_id == product_id, ProductVariant.size == _normalize_size(size)]
    if active_only:
        filters.append(Product.is_active.is_(True))
    stmt = (
        select(
            ProductVariant.id,
            ProductVariant.product_id,
            Product.name,
            Category.slug,
            ProductVariant.size,
            ProductVariant.price,
            ProductVariant.stock_quantity,
            ProductVariant.version,
        )
        .join(Product, Product.id == ProductVariant.product_id)
        .join(Category, Category.id == Product.category_id)
        .where(*filters)
    )
    row = (await session.execute(stmt)).one_or_none()
    if row is None:
        raise NotFoundError(f"Product {product_id} is not available in size {size}")
    return VariantSnapshot(
        variant_id=row[0],
        product_id=row[1],
        product_name=row[2],
        category=row[3],
        size=row[4],
        price=Decimal(row[5]),
        stock=int(row[6]),
        version=int(row[7]),
    )


async def compare_and_set_stock(session: AsyncSession, variant: VariantSnapshot, new_stock: int) -> bool:
    """Write ``new_stock`` only if nobody changed the variant since ``variant`` was read."""
    result = await session.execute(
        update(ProductVariant)
        .where(ProductVariant.id == variant.variant_id, ProductVariant.version == variant.version)
        .values(stock_quantity=new_stock, version=variant.version + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def adjust_stock(
    session: AsyncSession,
    product_id: UUID,
    size: str,
    delta: int,
    *,
    attempts: int | None = None,
) -> int:
    """Add ``delta`` (negative to reserve) to a variant's stock and return the new level.

    Each attempt re-reads the variant and writes back with a version check.
    Raises ``InsufficientStockError`` when the stock would go negative and
    ``ConcurrentModificationError`` once the retries are used up. Restocking
    (positive ``delta``) also works for products that were deactivated since
    the sale. The caller owns the transaction.
    """
    max_attempts = max(1, int(attempts or settings.stock_retry_attempts))
    for attempt in range(1, max_attempts + 1):
        variant = await get_product_variant(session, product_id, size, active_only=delta < 0)
        new_stock = variant.stock + int(delta)
        if new_stock < 0:
            raise InsufficientStockError(
                [
                    {
                        "product_id": str(variant.product_id),
                        "product_name": variant.product_name,
                        "size": variant.size,
                        "requested": -int(delta),
                        "available": variant.stock,
                    }
                ]
            )
        if await compare_and_set_stock(session, variant, new_stock):
            return new_stock
        logger.info(
            "stock_update_conflict",
            extra={"product_id": str(product_id), "size": variant.size, "attempt": attempt},
        )
    raise ConcurrentModificationError(f"Stock for product {product_id} ({size}) changed concurrently; please retry")
