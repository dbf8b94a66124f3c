import os
import uuid
import logging
from typing import Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storefront.models import Order, OrderItem, OrderStatus, OrderStatusHistory, utcnow

logger = logging.getLogger(__name__)

BULK_DELETE_ATOMIC = os.getenv("BULK_DELETE_ATOMIC", "true").lower() not in ("0", "false", "no")


class PartialDeleteError(Exception):
    """Order items were removed but the orders themselves were not."""

    def __init__(self, items_deleted: int, order_ids: list):
        super().__init__(
            f"Deleted {items_deleted} order items but failed to delete {len(order_ids)} orders"
        )
        self.items_deleted = items_deleted
        self.order_ids = order_ids


def bulk_update_status(
    db: Session,
    order_ids: Iterable[uuid.UUID],
    new_status: OrderStatus,
    changed_by: Optional[uuid.UUID] = None,
) -> int:
    """
    Staff override applied to many orders in one transaction. Each row's
    version is bumped so single-order writers holding an older read fail
    their conditional update instead of silently reverting this one.
    """
    ids = list(dict.fromkeys(order_ids))
    if not ids:
        return 0

    previous = dict(db.query(Order.id, Order.status).filter(Order.id.in_(ids)).all())
    if not previous:
        return 0

    count = (
        db.query(Order)
        .filter(Order.id.in_(list(previous)))
        .update(
            {
                Order.status: new_status,
                Order.version: Order.version + 1,
                Order.updated_at: utcnow(),
            },
            synchronize_session=False,
        )
    )
    for order_id, old_status in previous.items():
        db.add(OrderStatusHistory(
            order_id=order_id,
            old_status=old_status.value if old_status else None,
            new_status=new_status.value,
            source="bulk",
            changed_by=changed_by,
            reason="Bulk status update",
        ))
    db.commit()

    logger.info("Bulk status update: %s orders -> %s", count, new_status.value)
    return count


def _delete_order_items(db: Session, order_ids: list) -> int:
    return (
        db.query(OrderItem)
        .filter(OrderItem.order_id.in_(order_ids))
        .delete(synchronize_session=False)
    )


def _delete_orders(db: Session, order_ids: list) -> int:
    return (
        db.query(Order)
        .filter(Order.id.in_(order_ids))
        .delete(synchronize_session=False)
    )


def bulk_delete_orders(
    db: Session,
    order_ids: Iterable[uuid.UUID],
    atomic: Optional[bool] = None,
) -> dict:
    """
    Delete orders together with their line items, items first.

    Atomic mode runs both deletes in one transaction. Best-effort mode
    commits the item delete before attempting the order delete; if the
    second step fails the orders survive without items and
    PartialDeleteError is raised so the operator can clean up.
    """
    ids = list(dict.fromkeys(order_ids))
    if not ids:
        return {"items_deleted": 0, "orders_deleted": 0}

    if atomic is None:
        atomic = BULK_DELETE_ATOMIC

    if atomic:
        try:
            items_deleted = _delete_order_items(db, ids)
            orders_deleted = _delete_orders(db, ids)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Bulk delete rolled back for %s orders", len(ids))
            raise
    else:
        items_deleted = _delete_order_items(db, ids)
        db.commit()
        try:
            orders_deleted = _delete_orders(db, ids)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception(
                "Bulk delete left %s orders without items; manual cleanup required",
                len(ids),
            )
            raise PartialDeleteError(items_deleted, ids)

    logger.info("Bulk delete: %s orders, %s items", orders_deleted, items_deleted)
    return {"items_deleted": items_deleted, "orders_deleted": orders_deleted}
