import logging
import smtplib
from email.message import EmailMessage

import anyio

from vibecart.core.config import settings

logger = logging.getLogger(__name__)


SUBJECTS: dict[str, str] = {
    "order_created": "Order received {order_number}",
    "order_confirmed": "Order confirmed {order_number}",
    "order_processing": "We are packing your order {order_number}",
    "order_shipped": "Order shipped {order_number}",
    "order_delivered": "Order delivered {order_number}",
    "order_cancelled": "Order cancelled {order_number}",
    "order_returned": "Return accepted for {order_number}",
    "order_refunded": "Refund issued for {order_number}",
    "cancel_requested": "Cancellation requested for {order_number}",
    "return_requested": "Return requested for {order_number}",
    "cancel_rejected": "Cancellation declined for {order_number}",
    "return_rejected": "Return declined for {order_number}",
}


def _build_message(to_email: str, subject: str, text_body: str) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = settings.smtp_from_email or "no-reply@vibecart.local"
    msg["To"] = to_email
    msg.set_content(text_body)
    return msg


def _send_blocking(msg: EmailMessage) -> None:
    with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as smtp:
        if settings.smtp_use_tls:
            smtp.starttls()
        if settings.smtp_username and settings.smtp_password:
            smtp.login(settings.smtp_username, settings.smtp_password)
        smtp.send_message(msg)


async def send_email(to_email: str, subject: str, text_body: str) -> bool:
    if not settings.smtp_enabled:
        return False
    msg = _build_message(to_email, subject, text_body)
    try:
        # Abandoned on cancel, so a caller timeout is not held up by the server.
        await anyio.to_thread.run_sync(_send_blocking, msg, abandon_on_cancel=True)
        return True
    except (smtplib.SMTPException, OSError) as exc:
        logger.warning("Email send failed: %s", exc)
        return False


def render_order_event(payload: dict) -> tuple[str, str]:
    """Plain-text subject and body for an order event payload."""
    event = payload.get("event", "")
    order_number = payload.get("order_number", "")
    subject = SUBJECTS.get(event, "Order update {order_number}").format(order_number=order_number)
    lines = [f"Order {order_number} is now {payload.get('status', '')}."]
    if payload.get("total_amount") is not None:
        lines.append(f"Total: {payload['total_amount']} {payload.get('currency', settings.currency)}")
    if payload.get("refund_amount") is not None:
        lines.append(f"Refund: {payload['refund_amount']} via {payload.get('refund_method', 'original_payment')}")
    if payload.get("note"):
        lines.append(str(payload["note"]))
    return subject, "\n".join(lines)


async def send_order_event(to_email: str, payload: dict) -> bool:
    subject, body = render_order_event(payload)
    return await send_email(to_email, subject, body)
