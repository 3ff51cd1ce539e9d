import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict
from uuid import UUID

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from vibecart.core.security import create_access_token
from vibecart.db.session import get_session
from vibecart.main import app
from vibecart.models import Base
from vibecart.models.catalog import Category, Product, ProductVariant
from vibecart.models.user import User, UserRole


@pytest.fixture
def test_app() -> Dict[str, object]:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())

    async def override_get_session():
        async with SessionLocal() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    client = TestClient(app)
    yield {"client": client, "session_factory": SessionLocal}
    client.close()
    app.dependency_overrides.clear()


def auth_headers(user_id: UUID) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(str(user_id))}"}


def seed(session_factory) -> Dict[str, UUID]:
    async def run() -> Dict[str, UUID]:
        async with session_factory() as session:
            buyer = User(email="buyer@example.com", name="Buyer", role=UserRole.customer)
            admin = User(email="admin@example.com", name="Admin", role=UserRole.admin)
            hoodie = Product(
                slug="zip-hoodie",
                name="Zip Hoodie",
                category=Category(slug="hoodies", name="Hoodies"),
                variants=[ProductVariant(size="M", price=Decimal("1000.00"), stock_quantity=5)],
            )
            cap = Product(
                slug="dad-cap",
                name="Dad Cap",
                category=Category(slug="accessories", name="Accessories"),
                variants=[ProductVariant(size="ONE", price=Decimal("300.00"), stock_quantity=5)],
            )
            session.add_all([buyer, admin, hoodie, cap])
            await session.commit()
            return {"buyer": buyer.id, "admin": admin.id, "hoodie": hoodie.id, "cap": cap.id}

    return asyncio.run(run())


def coupon_body(code: str = "VIBE10", **extra) -> dict:
    now = datetime.now(timezone.utc)
    body = {
        "code": code,
        "discount": "10",
        "discount_type": "percentage",
        "valid_from": (now - timedelta(days=1)).isoformat(),
        "valid_until": (now + timedelta(days=30)).isoformat(),
    }
    body.update(extra)
    return body


def create_coupon(client: TestClient, ids: Dict[str, UUID], **kwargs) -> dict:
    res = client.post("/api/v1/coupons/admin", json=coupon_body(**kwargs), headers=auth_headers(ids["admin"]))
    assert res.status_code == 201, res.text
    return res.json()


def test_coupon_admin_crud(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    ids = seed(test_app["session_factory"])
    admin = auth_headers(ids["admin"])

    created = create_coupon(client, ids, code=" summer25 ", applicable_categories=["Hoodies", "hoodies "])
    assert created["code"] == "SUMMER25"
    assert created["applicable_categories"] == ["hoodies"]
    assert created["used_count"] == 0

    res = client.post("/api/v1/coupons/admin", json=coupon_body("SUMMER25"), headers=admin)
    assert res.status_code == 422
    assert res.json()["code"] == "validation_error"

    res = client.patch(f"/api/v1/coupons/admin/{created['id']}", json={"is_active": False}, headers=admin)
    assert res.status_code == 200
    assert res.json()["is_active"] is False

    listing = client.get("/api/v1/coupons/admin", params={"status": "inactive"}, headers=admin).json()
    assert [row["code"] for row in listing["items"]] == ["SUMMER25"]
    assert client.get("/api/v1/coupons/admin", params={"status": "active"}, headers=admin).json()["items"] == []

    res = client.delete(f"/api/v1/coupons/admin/{created['id']}", headers=admin)
    assert res.status_code == 204
    res = client.get(f"/api/v1/coupons/admin/{created['id']}", headers=admin)
    assert res.status_code == 404


def test_coupon_admin_rejects_bad_ranges(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    ids = seed(test_app["session_factory"])
    admin = auth_headers(ids["admin"])

    res = client.post("/api/v1/coupons/admin", json=coupon_body(discount="120"), headers=admin)
    assert res.status_code == 422

    now = datetime.now(timezone.utc)
    res = client.post(
        "/api/v1/coupons/admin",
        json=coupon_body(valid_from=now.isoformat(), valid_until=(now - timedelta(days=1)).isoformat()),
        headers=admin,
    )
    assert res.status_code == 422

    created = create_coupon(client, ids)
    res = client.patch(
        f"/api/v1/coupons/admin/{created['id']}",
        json={"valid_until": (now - timedelta(days=5)).isoformat()},
        headers=admin,
    )
    assert res.status_code == 422
    assert res.json()["code"] == "validation_error"


def test_coupon_admin_requires_admin(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    ids = seed(test_app["session_factory"])

    assert client.get("/api/v1/coupons/admin").status_code == 401
    res = client.post("/api/v1/coupons/admin", json=coupon_body(), headers=auth_headers(ids["buyer"]))
    assert res.status_code == 403


def test_validate_coupon_preview(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    ids = seed(test_app["session_factory"])
    create_coupon(client, ids, max_discount="50")

    res = client.post(
        "/api/v1/coupons/validate",
        json={"code": "vibe10", "items": [{"product_id": str(ids["hoodie"]), "size": "M", "quantity": 1}]},
    )
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["valid"] is True
    assert body["code"] == "VIBE10"
    assert Decimal(body["discount_amount"]) == Decimal("50.00")
    assert Decimal(body["total"]) == Decimal("950.00")


def test_validate_coupon_rejections(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    ids = seed(test_app["session_factory"])
    create_coupon(client, ids, code="HOODIE20", discount="20", applicable_categories=["hoodies"])
    create_coupon(client, ids, code="BIGSPEND", min_order_amount="5000")
    cap_items = [{"product_id": str(ids["cap"]), "size": "ONE", "quantity": 1}]

    res = client.post("/api/v1/coupons/validate", json={"code": "NOPE", "items": cap_items})
    assert res.status_code == 400
    assert res.json()["code"] == "coupon_rejected"
    assert res.json()["errors"] == {"reason": "not_found"}

    res = client.post("/api/v1/coupons/validate", json={"code": "HOODIE20", "items": cap_items})
    assert res.json()["errors"] == {"reason": "no_eligible_items"}

    res = client.post("/api/v1/coupons/validate", json={"code": "BIGSPEND", "items": cap_items})
    assert res.json()["errors"] == {"reason": "min_order_not_met"}


def test_redeemed_coupon_cannot_be_deleted(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    ids = seed(test_app["session_factory"])
    coupon = create_coupon(client, ids)

    res = client.post(
        "/api/v1/orders",
        json={
            "items": [{"product_id": str(ids["hoodie"]), "size": "M", "quantity": 1}],
            "shipping_address": {
                "full_name": "Asha Rao",
                "line1": "12 MG Road",
                "city": "Bengaluru",
                "postal_code": "560001",
                "phone": "9876543210",
            },
            "payment_method": "upi",
            "coupon_code": "VIBE10",
        },
        headers=auth_headers(ids["buyer"]),
    )
    assert res.status_code == 201, res.text
    assert Decimal(res.json()["total_amount"]) == Decimal("900.00")

    admin = auth_headers(ids["admin"])
    assert client.get(f"/api/v1/coupons/admin/{coupon['id']}", headers=admin).json()["used_count"] == 1

    res = client.delete(f"/api/v1/coupons/admin/{coupon['id']}", headers=admin)
    assert res.status_code == 409
    assert res.json()["code"] == "invalid_state"
