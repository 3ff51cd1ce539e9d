import asyncio
from decimal import Decimal
from typing import Dict
from uuid import UUID

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from vibecart.core.config import settings
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
            stranger = User(email="stranger@example.com", name="Stranger", role=UserRole.customer)
            admin = User(email="admin@example.com", name="Admin", role=UserRole.admin)
            product = Product(
                slug="oversized-tee",
                name="Oversized Tee",
                category=Category(slug="tshirts", name="T-Shirts"),
                variants=[
                    ProductVariant(size="M", price=Decimal("500.00"), stock_quantity=3),
                    ProductVariant(size="L", price=Decimal("550.00"), stock_quantity=0),
                ],
            )
            session.add_all([buyer, stranger, admin, product])
            await session.commit()
            return {"buyer": buyer.id, "stranger": stranger.id, "admin": admin.id, "product": product.id}

    return asyncio.run(run())


def order_body(product_id: UUID, size: str = "M", quantity: int = 1, **extra) -> dict:
    body = {
        "items": [{"product_id": str(product_id), "size": size, "quantity": quantity}],
        "shipping_address": {
            "full_name": "Asha Rao",
            "line1": "12 MG Road",
            "city": "Bengaluru",
            "postal_code": "560001",
            "phone": "9876543210",
        },
        "payment_method": "card",
    }
    body.update(extra)
    return body


def place_order(client: TestClient, ids: Dict[str, UUID], **kwargs) -> dict:
    res = client.post("/api/v1/orders", json=order_body(ids["product"], **kwargs), headers=auth_headers(ids["buyer"]))
    assert res.status_code == 201, res.text
    return res.json()


def test_checkout_requires_authentication(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    ids = seed(test_app["session_factory"])

    res = client.post("/api/v1/orders", json=order_body(ids["product"]))
    assert res.status_code == 401
    assert res.json()["detail"] == "Not authenticated"

    res = client.post(
        "/api/v1/orders", json=order_body(ids["product"]), headers={"Authorization": "Bearer not-a-token"}
    )
    assert res.status_code == 401


def test_checkout_and_order_views(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    ids = seed(test_app["session_factory"])

    order = place_order(client, ids, quantity=2)
    assert order["status"] == "pending"
    assert order["payment_status"] == "pending"
    assert Decimal(order["total_amount"]) == Decimal("1000.00")
    assert order["currency"] == settings.currency
    assert order["items"][0]["product_name"] == "Oversized Tee"
    assert order["shipping_address"]["country"] == "IN"
    assert [e["event"] for e in order["events"]] == ["created"]

    res = client.get(f"/api/v1/orders/{order['id']}", headers=auth_headers(ids["buyer"]))
    assert res.status_code == 200
    assert res.json()["order_number"] == order["order_number"]

    res = client.get(f"/api/v1/orders/{order['id']}", headers=auth_headers(ids["stranger"]))
    assert res.status_code == 404
    assert res.json()["code"] == "not_found"

    listing = client.get("/api/v1/orders", headers=auth_headers(ids["buyer"])).json()
    assert listing["meta"]["total_items"] == 1
    assert listing["items"][0]["id"] == order["id"]
    assert client.get("/api/v1/orders", headers=auth_headers(ids["stranger"])).json()["meta"]["total_items"] == 0


def test_out_of_stock_checkout_reports_offenders(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    ids = seed(test_app["session_factory"])

    body = order_body(ids["product"], quantity=4)
    body["items"].append({"product_id": str(ids["product"]), "size": "L", "quantity": 1})
    res = client.post("/api/v1/orders", json=body, headers=auth_headers(ids["buyer"]))
    assert res.status_code == 409
    payload = res.json()
    assert payload["code"] == "insufficient_stock"
    assert {(o["size"], o["requested"], o["available"]) for o in payload["errors"]} == {("M", 4, 3), ("L", 1, 0)}


def test_invalid_payload_is_rejected(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    ids = seed(test_app["session_factory"])

    res = client.post(
        "/api/v1/orders", json=order_body(ids["product"], quantity=0), headers=auth_headers(ids["buyer"])
    )
    assert res.status_code == 422
    assert res.json()["code"] == "validation_error"

    res = client.post(
        "/api/v1/orders", json=order_body(ids["product"], size="XS"), headers=auth_headers(ids["buyer"])
    )
    assert res.status_code == 404


def test_admin_routes_require_admin(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    ids = seed(test_app["session_factory"])
    order = place_order(client, ids)

    res = client.get("/api/v1/orders/admin", headers=auth_headers(ids["buyer"]))
    assert res.status_code == 403
    res = client.patch(
        f"/api/v1/orders/admin/{order['id']}/status", json={"status": "shipped"}, headers=auth_headers(ids["buyer"])
    )
    assert res.status_code == 403


def test_cancel_request_flow(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    ids = seed(test_app["session_factory"])
    order = place_order(client, ids, quantity=3)

    res = client.post(
        f"/api/v1/orders/{order['id']}/cancel-request",
        json={"reason": "changed_mind", "description": "No longer needed"},
        headers=auth_headers(ids["buyer"]),
    )
    assert res.status_code == 200, res.text
    assert res.json()["requests"][0]["status"] == "pending"

    res = client.post(
        f"/api/v1/orders/{order['id']}/cancel-request",
        json={"reason": "other"},
        headers=auth_headers(ids["buyer"]),
    )
    assert res.status_code == 409
    assert res.json()["code"] == "invalid_state"

    res = client.post(
        f"/api/v1/orders/admin/{order['id']}/cancel-request",
        json={"approved": True, "notes": "Cancelled as asked"},
        headers=auth_headers(ids["admin"]),
    )
    assert res.status_code == 200, res.text
    cancelled = res.json()
    assert cancelled["status"] == "cancelled"
    assert cancelled["requests"][0]["status"] == "approved"
    assert Decimal(cancelled["requests"][0]["refund_amount"]) == Decimal("0")

    # All three units are back on the shelf.
    again = place_order(client, ids, quantity=3)
    assert again["status"] == "pending"


def test_cancel_after_shipping_is_refused(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    ids = seed(test_app["session_factory"])
    order = place_order(client, ids)

    res = client.patch(
        f"/api/v1/orders/admin/{order['id']}/status",
        json={"status": "shipped", "note": "Courier picked up"},
        headers=auth_headers(ids["admin"]),
    )
    assert res.status_code == 200
    assert res.json()["status"] == "shipped"

    res = client.post(
        f"/api/v1/orders/{order['id']}/cancel-request",
        json={"reason": "changed_mind"},
        headers=auth_headers(ids["buyer"]),
    )
    assert res.status_code == 409
    assert res.json()["code"] == "invalid_state"

    res = client.patch(
        f"/api/v1/orders/admin/{order['id']}/status", json={"status": "pending"}, headers=auth_headers(ids["admin"])
    )
    assert res.status_code == 409
    assert res.json()["code"] == "invalid_transition"


def test_return_and_refund_flow(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    ids = seed(test_app["session_factory"])
    order = place_order(client, ids, quantity=2)
    admin = auth_headers(ids["admin"])

    res = client.patch(f"/api/v1/orders/admin/{order['id']}/status", json={"status": "delivered"}, headers=admin)
    assert res.status_code == 200
    assert res.json()["delivered_at"] is not None

    res = client.post(
        f"/api/v1/orders/{order['id']}/return-request",
        json={"reason": "size_issue"},
        headers=auth_headers(ids["buyer"]),
    )
    assert res.status_code == 200, res.text

    res = client.post(f"/api/v1/orders/admin/{order['id']}/return-request", json={"approved": True}, headers=admin)
    assert res.status_code == 422

    res = client.post(
        f"/api/v1/orders/admin/{order['id']}/return-request",
        json={"approved": True, "refund_amount": "1200.00", "refund_method": "original_payment"},
        headers=admin,
    )
    assert res.status_code == 422
    assert res.json()["code"] == "validation_error"

    res = client.post(
        f"/api/v1/orders/admin/{order['id']}/return-request",
        json={"approved": True, "refund_amount": "1000.00", "refund_method": "bank_transfer"},
        headers=admin,
    )
    assert res.status_code == 200, res.text
    assert res.json()["status"] == "returned"

    res = client.post(f"/api/v1/orders/admin/{order['id']}/refund", headers=admin)
    assert res.status_code == 200, res.text
    assert res.json()["status"] == "refunded"
    assert res.json()["requests"][0]["refunded_at"] is not None


def test_admin_list_search_and_filter(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    ids = seed(test_app["session_factory"])
    first = place_order(client, ids)
    place_order(client, ids)
    admin = auth_headers(ids["admin"])
    client.patch(f"/api/v1/orders/admin/{first['id']}/status", json={"status": "confirmed"}, headers=admin)

    res = client.get("/api/v1/orders/admin", params={"status": "confirmed"}, headers=admin)
    assert res.status_code == 200
    assert [row["id"] for row in res.json()["items"]] == [first["id"]]

    res = client.get("/api/v1/orders/admin", params={"search": first["order_number"]}, headers=admin)
    assert res.json()["meta"]["total_items"] == 1

    res = client.get("/api/v1/orders/admin", params={"limit": 1}, headers=admin)
    meta = res.json()["meta"]
    assert meta["total_items"] == 2
    assert meta["total_pages"] == 2


def test_mock_payment_confirms_order(test_app: Dict[str, object], monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "payments_provider", "mock")
    monkeypatch.setattr(settings, "environment", "local")
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    ids = seed(test_app["session_factory"])
    order = place_order(client, ids)

    res = client.post(f"/api/v1/orders/{order['id']}/pay", headers=auth_headers(ids["buyer"]))
    assert res.status_code == 200, res.text
    assert res.json()["payment_status"] == "paid"
    assert res.json()["status"] == "confirmed"

    res = client.post(f"/api/v1/orders/{order['id']}/pay", headers=auth_headers(ids["buyer"]))
    assert res.status_code == 200
    assert res.json()["payment_status"] == "paid"
