"""Order status transitions and cancel/return request guards.

All rules about which status may follow which live here. Functions take the
order (or just its status) and raise one of the ``vibecart.core.errors``
exceptions when a move is not allowed; nothing in this module touches the
database.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

from vibecart.core.errors import InvalidStateError, InvalidTransitionError, WindowExpiredError
from vibecart.models.order import Order, OrderRequestStatus, OrderRequestType, OrderStatus


HAPPY_PATH: tuple[OrderStatus, ...] = (
    OrderStatus.pending,
    OrderStatus.confirmed,
    OrderStatus.processing,
    OrderStatus.shipped,
    OrderStatus.delivered,
)

TERMINAL: frozenset[OrderStatus] = frozenset({OrderStatus.cancelled, OrderStatus.returned, OrderStatus.refunded})

CANCELLABLE: frozenset[OrderStatus] = frozenset({OrderStatus.pending, OrderStatus.confirmed, OrderStatus.processing})

# Forward jumps along the happy path are allowed (pending -> shipped). The
# terminal statuses are only reachable through the request workflow and
# mark_refunded.
ALLOWED_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    status: set(HAPPY_PATH[idx + 1 :]) for idx, status in enumerate(HAPPY_PATH)
}
ALLOWED_TRANSITIONS.update(
    {
        OrderStatus.cancelled: {OrderStatus.refunded},
        OrderStatus.returned: {OrderStatus.refunded},
        OrderStatus.refunded: set(),
    }
)

# Extra edges used by the request workflow, never by set_status.
WORKFLOW_TRANSITIONS: dict[OrderRequestType, tuple[frozenset[OrderStatus], OrderStatus]] = {
    OrderRequestType.cancel: (CANCELLABLE, OrderStatus.cancelled),
    OrderRequestType.return_: (frozenset({OrderStatus.delivered}), OrderStatus.returned),
}

STATUS_EVENTS: dict[OrderStatus, str] = {
    OrderStatus.confirmed: "order_confirmed",
    OrderStatus.processing: "order_processing",
    OrderStatus.shipped: "order_shipped",
    OrderStatus.delivered: "order_delivered",
    OrderStatus.cancelled: "order_cancelled",
    OrderStatus.returned: "order_returned",
    OrderStatus.refunded: "order_refunded",
}


@dataclass(frozen=True)
class OrderDomainEvent:
    name: str
    order_id: UUID
    order_number: str
    user_id: UUID
    status: OrderStatus
    occurred_at: datetime
    data: dict[str, Any] = field(default_factory=dict)

    def as_payload(self) -> dict[str, Any]:
        return {
            "event": self.name,
            "order_id": str(self.order_id),
            "order_number": self.order_number,
            "user_id": str(self.user_id),
            "status": self.status.value,
            "occurred_at": self.occurred_at.isoformat(),
            **self.data,
        }


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL


def _ensure_no_pending_request(order: Order) -> None:
    pending = order.pending_request
    if pending is not None:
        raise InvalidStateError(f"Order already has a pending {pending.type.value} request")


def ensure_can_request_cancel(order: Order) -> None:
    if order.status not in CANCELLABLE:
        raise InvalidStateError(f"Order cannot be cancelled once it is {order.status.value}")
    _ensure_no_pending_request(order)


def return_deadline(order: Order, window_days: int) -> datetime | None:
    if order.delivered_at is None:
        return None
    return _as_utc(order.delivered_at) + timedelta(days=int(window_days))


def ensure_can_request_return(order: Order, *, now: datetime, window_days: int) -> None:
    if order.status != OrderStatus.delivered:
        raise InvalidStateError("Only delivered orders can be returned")
    _ensure_no_pending_request(order)
    deadline = return_deadline(order, window_days)
    if deadline is None:
        raise InvalidStateError("Order has no delivery date recorded")
    if _as_utc(now) > deadline:
        raise WindowExpiredError(f"Return window of {window_days} days has expired")


def check_status_transition(order: Order, new_status: OrderStatus) -> None:
    """Validate a manual status change made by an admin."""
    current = order.status
    if new_status == current:
        raise InvalidTransitionError(f"Order is already {current.value}")
    if new_status in TERMINAL:
        raise InvalidTransitionError(
            f"{new_status.value} can only be reached through the cancel, return or refund workflow"
        )
    if new_status not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(f"Cannot change status from {current.value} to {new_status.value}")
    _ensure_no_pending_request(order)


def check_request_resolution(order: Order, request_type: OrderRequestType) -> OrderStatus:
    """Return the status an approved request moves the order to."""
    allowed_from, target = WORKFLOW_TRANSITIONS[request_type]
    if order.status not in allowed_from:
        raise InvalidStateError(f"Order in status {order.status.value} cannot be {target.value}")
    return target


def check_refund(order: Order) -> None:
    if OrderStatus.refunded not in ALLOWED_TRANSITIONS.get(order.status, set()):
        raise InvalidTransitionError(f"Cannot refund an order that is {order.status.value}")


def pending_request_of_type(order: Order, request_type: OrderRequestType):
    pending = order.pending_request
    if pending is None or pending.type != request_type:
        raise InvalidStateError(f"Order has no pending {request_type.value} request")
    if pending.status != OrderRequestStatus.pending:
        raise InvalidStateError("Request has already been processed")
    return pending


def build_event(
    order: Order,
    name: str,
    *,
    status: OrderStatus | None = None,
    now: datetime | None = None,
    **data: Any,
) -> OrderDomainEvent:
    return OrderDomainEvent(
        name=name,
        order_id=order.id,
        order_number=order.order_number,
        user_id=order.user_id,
        status=status or order.status,
        occurred_at=now or datetime.now(timezone.utc),
        data={k: v for k, v in data.items() if v is not None},
    )


def status_event(order: Order, new_status: OrderStatus, *, now: datetime | None = None, **data: Any) -> OrderDomainEvent:
    return build_event(order, STATUS_EVENTS[new_status], status=new_status, now=now, **data)
