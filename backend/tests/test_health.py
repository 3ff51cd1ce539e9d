import asyncio
import json
import logging

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from vibecart.core.logging_config import JsonFormatter, RequestIdFilter, request_id_ctx_var
from vibecart.db.session import get_session
from vibecart.main import app
from vibecart.models import Base


@pytest.fixture
def client() -> TestClient:
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
    test_client = TestClient(app)
    yield test_client
    test_client.close()
    app.dependency_overrides.clear()


def test_healthcheck(client: TestClient) -> None:
    response = client.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_readiness(client: TestClient) -> None:
    response = client.get("/api/v1/health/ready")
    assert response.status_code == 200
    assert response.json() == {"status": "ready"}


def test_request_id_header(client: TestClient) -> None:
    response = client.get("/api/v1/health")
    assert response.headers.get("X-Request-ID")


def test_request_id_is_propagated(client: TestClient) -> None:
    response = client.get("/api/v1/health", headers={"X-Request-ID": "checkout-trace-1"})
    assert response.headers["X-Request-ID"] == "checkout-trace-1"


def test_json_formatter_includes_request_id_and_extras() -> None:
    token = request_id_ctx_var.set("req-42")
    try:
        record = logging.LogRecord("vibecart.test", logging.INFO, __file__, 1, "order_created", None, None)
        record.order_number = "VC260101ABC123"
        RequestIdFilter().filter(record)
        payload = json.loads(JsonFormatter().format(record))
    finally:
        request_id_ctx_var.reset(token)
    assert payload["message"] == "order_created"
    assert payload["request_id"] == "req-42"
    assert payload["order_number"] == "VC260101ABC123"
