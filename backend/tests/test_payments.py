import asyncio
import uuid
from decimal import Decimal

import pytest

from vibecart.models.order import Order, PaymentMethod, PaymentStatus
from vibecart.services import payments


def _order(method: PaymentMethod) -> Order:
    return Order(
        id=uuid.uuid4(),
        order_number="VC260101PAY001",
        user_id=uuid.uuid4(),
        payment_method=method,
        payment_status=PaymentStatus.pending,
        total_amount=Decimal("500.00"),
    )


@pytest.fixture(autouse=True)
def _local_env(monkeypatch):
    monkeypatch.setattr(payments.settings, "environment", "local")


def test_mock_provider_marks_card_and_upi_paid(monkeypatch):
    monkeypatch.setattr(payments.settings, "payments_provider", "mock")
    assert asyncio.run(payments.charge_order(_order(PaymentMethod.card))) == PaymentStatus.paid
    assert asyncio.run(payments.charge_order(_order(PaymentMethod.upi))) == PaymentStatus.paid


def test_cash_on_delivery_stays_pending(monkeypatch):
    monkeypatch.setattr(payments.settings, "payments_provider", "mock")
    assert asyncio.run(payments.charge_order(_order(PaymentMethod.cod))) == PaymentStatus.pending


def test_manual_provider_leaves_payment_pending(monkeypatch):
    monkeypatch.setattr(payments.settings, "payments_provider", "manual")
    assert payments.is_mock_payments() is False
    assert asyncio.run(payments.charge_order(_order(PaymentMethod.card))) == PaymentStatus.pending


def test_mock_provider_is_disabled_in_production(monkeypatch):
    monkeypatch.setattr(payments.settings, "payments_provider", "mock")
    monkeypatch.setattr(payments.settings, "environment", "production")
    assert payments.payments_provider() == "manual"


def test_slow_provider_times_out_as_pending(monkeypatch):
    async def slow_charge(order):
        await asyncio.sleep(1)
        return PaymentStatus.paid

    monkeypatch.setattr(payments, "_charge", slow_charge)
    monkeypatch.setattr(payments.settings, "payment_timeout_seconds", 0.01)
    assert asyncio.run(payments.charge_order(_order(PaymentMethod.card))) == PaymentStatus.pending
