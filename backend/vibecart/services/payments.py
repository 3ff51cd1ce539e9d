from __future__ import annotations

import asyncio
import logging
from typing import Literal

from vibecart.core.config import settings
from vibecart.models.order import Order, PaymentMethod, PaymentStatus

logger = logging.getLogger(__name__)

PaymentsProvider = Literal["mock", "manual"]


def payments_provider() -> PaymentsProvider:
    raw = (settings.payments_provider or "manual").strip().lower()
    if raw in {"mock", "test"}:
        env = (settings.environment or "").strip().lower()
        if env in {"prod", "production"}:
            return "manual"
        return "mock"
    return "manual"


def is_mock_payments() -> bool:
    return payments_provider() == "mock"


async def _charge(order: Order) -> PaymentStatus:
    if order.payment_method == PaymentMethod.cod:
        return PaymentStatus.pending
    if is_mock_payments():
        return PaymentStatus.paid
    # Manual mode: an admin reconciles the payment out of band.
    return PaymentStatus.pending


async def charge_order(order: Order) -> PaymentStatus:
    """Ask the payment provider to collect the order total.

    Cash on delivery always stays ``pending``. A provider that does not answer
    within ``payment_timeout_seconds`` leaves the payment ``pending`` as well,
    since the charge may still land.
    """
    try:
        outcome = await asyncio.wait_for(_charge(order), timeout=settings.payment_timeout_seconds)
    except asyncio.TimeoutError:
        logger.warning("Payment charge timed out for order %s", order.order_number)
        return PaymentStatus.pending
    logger.info(
        "payment_charged",
        extra={"order_number": order.order_number, "provider": payments_provider(), "outcome": outcome.value},
    )
    return outcome
