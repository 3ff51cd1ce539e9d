import asyncio

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from vibecart import seeds
from vibecart.models import Base
from vibecart.models.catalog import Product, ProductVariant
from vibecart.models.coupon import Coupon


def test_seed_is_idempotent():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

    async def run():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with SessionLocal() as session:
            await seeds.seed(session)
        async with SessionLocal() as session:
            await seeds.seed(session)
            products = (await session.execute(select(func.count()).select_from(Product))).scalar_one()
            variants = (await session.execute(select(func.count()).select_from(ProductVariant))).scalar_one()
            coupons = (await session.execute(select(Coupon.code))).scalars().all()
        assert products == len(seeds.SEED_PRODUCTS)
        assert variants == sum(len(p["sizes"]) for p in seeds.SEED_PRODUCTS)
        assert coupons == ["VIBE10"]

    asyncio.run(run())
