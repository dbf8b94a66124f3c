import os
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from storefront.models import (
    Order,
    OrderStatus,
    Return,
    ReturnItem,
    ReturnStatus,
)

logger = logging.getLogger(__name__)

# any      - every Return row removes its order from revenue (legacy behaviour)
# accepted - only approved/completed returns do
RETURNS_EXCLUSION_MODE = os.getenv("RETURNS_EXCLUSION_MODE", "any")

EXCLUSION_MODES = {
    "any": None,
    "accepted": (ReturnStatus.approved, ReturnStatus.completed),
}


class ReturnNotAllowed(Exception):
    pass


def find_order_by_number(db: Session, order_number: str) -> Optional[Order]:
    return (
        db.query(Order)
        .options(joinedload(Order.items))
        .filter(Order.order_number == order_number.strip())
        .first()
    )


def can_return(order: Order) -> bool:
    return order.status == OrderStatus.delivered


def create_return(db: Session, order: Order, reason: str) -> Return:
    """
    Snapshot a delivered order and its lines into a pending Return.

    The Order row itself is not modified. A second return against the same
    order is not prevented here.
    """
    if not can_return(order):
        raise ReturnNotAllowed("Only delivered orders can be returned.")
    if not reason or not reason.strip():
        raise ReturnNotAllowed("Please provide a reason for the return.")

    return_request = Return(
        order_id=order.id,
        order_number=order.order_number,
        customer_name=order.customer_name,
        customer_email=order.customer_email,
        customer_phone=order.customer_phone,
        customer_address=order.customer_address,
        total_amount=order.total_amount,
        reason=reason.strip(),
        status=ReturnStatus.pending,
    )
    return_request.items = [
        ReturnItem(
            product_name=i.product_name,
            product_price=i.product_price,
            quantity=i.quantity,
        )
        for i in order.items
    ]
    db.add(return_request)
    db.commit()
    db.refresh(return_request)

    logger.info("Return %s requested for order %s", return_request.id, order.order_number)
    return return_request


def returned_order_ids(mode: Optional[str] = None):
    """
    SELECT of order ids excluded from revenue.

    Exclusion follows the existence of a Return row, not the order's own
    status; `mode` narrows it to accepted returns when configured.
    """
    mode = mode or RETURNS_EXCLUSION_MODE
    if mode not in EXCLUSION_MODES:
        raise ValueError(f"Unknown returns exclusion mode: {mode!r}")

    query = select(Return.order_id)
    statuses = EXCLUSION_MODES[mode]
    if statuses:
        query = query.where(Return.status.in_(statuses))
    return query


def serialize_return(r: Return, include_items: bool = True) -> dict:
    data = {
        "id": str(r.id),
        "order_id": str(r.order_id),
        "order_number": r.order_number,
        "customer_name": r.customer_name,
        "customer_email": r.customer_email,
        "customer_phone": r.customer_phone,
        "customer_address": r.customer_address,
        "total_amount": r.total_amount,
        "reason": r.reason,
        "status": r.status,
        "created_at": r.created_at,
        "updated_at": r.updated_at,
    }
    if include_items:
        data["items"] = [
            {
                "product_name": i.product_name,
                "product_price": i.product_price,
                "quantity": i.quantity,
            }
            for i in r.items
        ]
    return data
