"""
Order status state machine.

Three independent writers touch an order's status: the gateway webhook, the
success-page verification call and staff. None of them hold a lock. Instead
every write is a conditional UPDATE on the row's `version` column, and
gateway writes go through a guard table keyed by (current status, event) so
that concurrent deliveries converge on the same terminal value whatever
order they land in.

Staff edits bypass the guard: any status may be set directly.
"""
import os
import uuid
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from storefront.models import (
    Order,
    OrderStatus,
    OrderStatusHistory,
    PaymentStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

STATUS_WRITE_RETRIES = int(os.getenv("STATUS_WRITE_RETRIES", "3"))

PAYMENT_SUCCEEDED = "payment.succeeded"
PAYMENT_FAILED = "payment.failed"
PAYMENT_CANCELLED = "payment.cancelled"
PAYMENT_PENDING = "payment.pending"  # verification only, never sent by the webhook

WEBHOOK_EVENTS = (PAYMENT_SUCCEEDED, PAYMENT_FAILED, PAYMENT_CANCELLED)

# Statuses from which the gateway may still move an order
_AWAITING_PAYMENT = (
    OrderStatus.pending,
    OrderStatus.processing,
    OrderStatus.payment_pending,
)

# event -> (target status, payment status, statuses the event applies from)
GATEWAY_TRANSITIONS = {
    PAYMENT_SUCCEEDED: (OrderStatus.confirmed, PaymentStatus.paid, _AWAITING_PAYMENT),
    PAYMENT_FAILED: (OrderStatus.payment_failed, PaymentStatus.failed, _AWAITING_PAYMENT),
    PAYMENT_CANCELLED: (OrderStatus.cancelled, PaymentStatus.cancelled, _AWAITING_PAYMENT),
    PAYMENT_PENDING: (OrderStatus.payment_pending, None, (OrderStatus.pending,)),
}

# Gateway session state -> event, for synchronous verification
_STATE_EVENTS = {
    "captured": PAYMENT_SUCCEEDED,
    "completed": PAYMENT_SUCCEEDED,
    "failed": PAYMENT_FAILED,
    "cancelled": PAYMENT_CANCELLED,
}


class StaleOrderError(Exception):
    """The order row changed underneath a conditional write."""


class OrderNotFound(Exception):
    pass


@dataclass
class TransitionResult:
    order: Order
    applied: bool
    status: OrderStatus


def event_for_state(state: Optional[str]) -> str:
    return _STATE_EVENTS.get((state or "").lower(), PAYMENT_PENDING)


def is_known_event(event: Optional[str]) -> bool:
    return event in WEBHOOK_EVENTS


def resolve_transition(current: OrderStatus, event: str) -> Optional[OrderStatus]:
    """
    Target status for `event` on an order in `current`, or None for a no-op.

    An event whose target is already the current status is a no-op too; the
    caller still reports that status, which is what makes redelivery safe.
    """
    rule = GATEWAY_TRANSITIONS.get(event)
    if rule is None:
        return None
    target, _, allowed_from = rule
    if current == target or current not in allowed_from:
        return None
    return target


def _status_retry():
    return retry(
        reraise=True,
        stop=stop_after_attempt(STATUS_WRITE_RETRIES),
        wait=wait_exponential(multiplier=0.05, min=0.05, max=0.5),
        retry=retry_if_exception_type(StaleOrderError),
    )


def load_order(db: Session, order_id: uuid.UUID) -> Order:
    order = (
        db.query(Order)
        .filter(Order.id == order_id)
        .populate_existing()
        .first()
    )
    if not order:
        raise OrderNotFound(str(order_id))
    return order


def write_status(
    db: Session,
    order: Order,
    new_status: OrderStatus,
    *,
    source: str,
    payment_status: Optional[PaymentStatus] = None,
    changed_by: Optional[uuid.UUID] = None,
    reason: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> Order:
    """
    Conditional status write. Raises StaleOrderError when the row's version
    no longer matches the one this writer read.
    """
    version = order.version if expected_version is None else expected_version
    old_status = order.status

    values = {
        Order.status: new_status,
        Order.version: version + 1,
        Order.updated_at: utcnow(),
    }
    if payment_status is not None:
        values[Order.payment_status] = payment_status

    rowcount = (
        db.query(Order)
        .filter(Order.id == order.id, Order.version == version)
        .update(values, synchronize_session=False)
    )
    if rowcount == 0:
        db.rollback()
        logger.warning(
            "Version conflict on order %s (expected version %s, source=%s)",
            order.id, version, source,
        )
        raise StaleOrderError(f"Order {order.id} was modified concurrently")

    db.add(OrderStatusHistory(
        order_id=order.id,
        old_status=old_status.value if old_status else None,
        new_status=new_status.value,
        source=source,
        changed_by=changed_by,
        reason=reason,
    ))
    db.commit()
    db.refresh(order)

    logger.info(
        "Order %s status %s -> %s (%s, version %s)",
        order.order_number, old_status.value if old_status else None,
        new_status.value, source, order.version,
    )
    return order


@_status_retry()
def apply_gateway_event(
    db: Session,
    order_id: uuid.UUID,
    event: str,
    source: str,
    reason: Optional[str] = None,
) -> TransitionResult:
    """
    Apply a gateway event through the guard table. Unknown events and
    disallowed transitions leave the row untouched.
    """
    order = load_order(db, order_id)
    target = resolve_transition(order.status, event)
    if target is None:
        logger.info(
            "Order %s: %s ignored in status %s (%s)",
            order.order_number, event, order.status.value, source,
        )
        return TransitionResult(order=order, applied=False, status=order.status)

    _, payment_status, _ = GATEWAY_TRANSITIONS[event]
    write_status(
        db, order, target,
        source=source,
        payment_status=payment_status,
        reason=reason or event,
    )
    return TransitionResult(order=order, applied=True, status=order.status)


@_status_retry()
def _staff_write_latest(db, order_id, new_status, changed_by, reason, source):
    order = load_order(db, order_id)
    return write_status(db, order, new_status, source=source, changed_by=changed_by, reason=reason)


def staff_set_status(
    db: Session,
    order_id: uuid.UUID,
    new_status: OrderStatus,
    changed_by: Optional[uuid.UUID] = None,
    reason: Optional[str] = None,
    expected_version: Optional[int] = None,
    source: str = "staff",
) -> Order:
    """
    Unrestricted staff override. With `expected_version` the write fails on
    a concurrent change; without it the latest row is overwritten.
    """
    if expected_version is None:
        return _staff_write_latest(db, order_id, new_status, changed_by, reason, source)

    order = load_order(db, order_id)
    return write_status(
        db, order, new_status,
        source=source,
        changed_by=changed_by,
        reason=reason,
        expected_version=expected_version,
    )


def record_initial_status(db: Session, order: Order, source: str = "checkout") -> None:
    """History row for a freshly inserted order. Caller commits."""
    db.add(OrderStatusHistory(
        order_id=order.id,
        old_status=None,
        new_status=order.status.value,
        source=source,
        changed_by=order.user_id,
        reason=f"Order placed ({order.payment_method.value})",
    ))
