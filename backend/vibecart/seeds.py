from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import TypedDict

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from vibecart.models.catalog import Category, Product, ProductVariant
from vibecart.models.coupon import Coupon, CouponDiscountType


class SeedSize(TypedDict):
    size: str
    price: Decimal
    stock_quantity: int


class SeedProduct(TypedDict):
    slug: str
    name: str
    category_slug: str
    description: str
    sizes: list[SeedSize]


SEED_CATEGORIES: dict[str, str] = {
    "tshirts": "T-Shirts",
    "hoodies": "Hoodies",
    "accessories": "Accessories",
}

SEED_PRODUCTS: list[SeedProduct] = [
    {
        "slug": "oversized-graphic-tee",
        "name": "Oversized Graphic Tee",
        "category_slug": "tshirts",
        "description": "Heavyweight cotton tee with a front print.",
        "sizes": [
            {"size": "S", "price": Decimal("799.00"), "stock_quantity": 25},
            {"size": "M", "price": Decimal("799.00"), "stock_quantity": 40},
            {"size": "L", "price": Decimal("849.00"), "stock_quantity": 30},
        ],
    },
    {
        "slug": "zip-up-hoodie",
        "name": "Zip-Up Hoodie",
        "category_slug": "hoodies",
        "description": "Brushed fleece hoodie with a full zip.",
        "sizes": [
            {"size": "M", "price": Decimal("1999.00"), "stock_quantity": 12},
            {"size": "L", "price": Decimal("1999.00"), "stock_quantity": 8},
        ],
    },
    {
        "slug": "canvas-tote",
        "name": "Canvas Tote",
        "category_slug": "accessories",
        "description": "Everyday tote bag.",
        "sizes": [{"size": "ONE", "price": Decimal("499.00"), "stock_quantity": 50}],
    },
]


async def _ensure_category(session: AsyncSession, slug: str, name: str) -> Category:
    existing = (await session.execute(select(Category).where(Category.slug == slug))).scalar_one_or_none()
    if existing:
        return existing
    category = Category(slug=slug, name=name)
    session.add(category)
    await session.flush()
    return category


async def _ensure_product(session: AsyncSession, data: SeedProduct, category: Category) -> Product:
    existing = (await session.execute(select(Product).where(Product.slug == data["slug"]))).scalar_one_or_none()
    if existing:
        return existing
    product = Product(
        slug=data["slug"],
        name=data["name"],
        description=data["description"],
        category_id=category.id,
        variants=[
            ProductVariant(size=s["size"], price=s["price"], stock_quantity=s["stock_quantity"]) for s in data["sizes"]
        ],
    )
    session.add(product)
    await session.flush()
    return product


async def _ensure_welcome_coupon(session: AsyncSession) -> None:
    existing = (await session.execute(select(Coupon).where(Coupon.code == "VIBE10"))).scalar_one_or_none()
    if existing:
        return
    now = datetime.now(timezone.utc)
    session.add(
        Coupon(
            code="VIBE10",
            description="10% off your order",
            discount=Decimal("10.00"),
            discount_type=CouponDiscountType.percentage,
            applicable_categories=[],
            min_order_amount=Decimal("0.00"),
            valid_from=now,
            valid_until=now + timedelta(days=365),
        )
    )


async def seed(session: AsyncSession) -> None:
    categories = {slug: await _ensure_category(session, slug, name) for slug, name in SEED_CATEGORIES.items()}
    for data in SEED_PRODUCTS:
        await _ensure_product(session, data, categories[data["category_slug"]])
    await _ensure_welcome_coupon(session)
    await session.commit()
