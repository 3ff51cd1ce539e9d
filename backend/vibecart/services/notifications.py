from __future__ import annotations

import asyncio
import logging

from vibecart.core.config import settings
from vibecart.services import email as email_service
from vibecart.services.order_state import OrderDomainEvent

logger = logging.getLogger(__name__)


async def _deliver(event: OrderDomainEvent, recipient: str | None) -> None:
    payload = event.as_payload()
    logger.info("order_event", extra={"order_event": event.name, "order_number": event.order_number})
    if recipient:
        await email_service.send_order_event(recipient, payload)


async def emit(event: OrderDomainEvent, *, recipient: str | None = None) -> bool:
    """Hand an order event to the notification channels.

    Runs after the order change is committed. Failures and timeouts are
    logged and reported as ``False``; they never reach the caller.
    """
    if not settings.notifications_enabled:
        return False
    try:
        await asyncio.wait_for(_deliver(event, recipient), timeout=settings.notification_timeout_seconds)
        return True
    except asyncio.TimeoutError:
        logger.warning("Notification timed out: %s %s", event.name, event.order_number)
    except Exception as exc:
        logger.warning("Notification failed: %s %s: %s", event.name, event.order_number, exc)
    return False


async def emit_all(events: list[OrderDomainEvent], *, recipient: str | None = None) -> None:
    for event in events:
        await emit(event, recipient=recipient)
