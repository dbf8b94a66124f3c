import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from storefront.bulk_ops import PartialDeleteError, bulk_delete_orders, bulk_update_status
from storefront.checkout import serialize_order
from storefront.database import get_db
from storefront.dependencies import require_admin
from storefront.models import Order, OrderStatus, OrderStatusHistory, PaymentMethod, User
from storefront.order_status import OrderNotFound, StaleOrderError, staff_set_status

router = APIRouter(prefix="/admin/orders", tags=["admin-orders"])


# =====================================================
# SCHEMAS
# =====================================================

class StatusOverridePayload(BaseModel):
    status: OrderStatus
    reason: Optional[str] = None
    expected_version: Optional[int] = None


class BulkStatusPayload(BaseModel):
    order_ids: List[uuid.UUID]
    status: OrderStatus


class BulkDeletePayload(BaseModel):
    order_ids: List[uuid.UUID]


# =====================================================
# LIST + DETAIL
# =====================================================

@router.get("", dependencies=[Depends(require_admin)])
def admin_list_orders(
    db: Session = Depends(get_db),
    status_filter: Optional[str] = Query(None, alias="status"),
    payment_method: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
):
    query = db.query(Order)
    if status_filter:
        try:
            query = query.filter(Order.status == OrderStatus(status_filter))
        except ValueError:
            raise HTTPException(400, f"Invalid status: '{status_filter}'")
    if payment_method:
        try:
            query = query.filter(Order.payment_method == PaymentMethod(payment_method))
        except ValueError:
            raise HTTPException(400, f"Invalid payment method: '{payment_method}'")
    if search:
        term = f"%{search.strip()}%"
        query = query.filter(or_(
            Order.order_number.ilike(term),
            Order.customer_name.ilike(term),
            Order.customer_email.ilike(term),
            Order.customer_phone.ilike(term),
        ))

    total = query.count()
    orders = query.order_by(Order.created_at.desc()).offset((page - 1) * per_page).limit(per_page).all()

    stats = {
        s.value: count
        for s, count in db.query(Order.status, func.count()).group_by(Order.status).all()
    }

    return {
        "total": total,
        "page": page,
        "per_page": per_page,
        "pages": (total + per_page - 1) // per_page,
        "stats": stats,
        "results": [serialize_order(o, include_items=False) for o in orders],
    }


def _get_order(db: Session, order_id: uuid.UUID) -> Order:
    order = (
        db.query(Order)
        .options(joinedload(Order.items))
        .filter(Order.id == order_id)
        .first()
    )
    if not order:
        raise HTTPException(404, "Order not found")
    return order


@router.get("/{order_id}", dependencies=[Depends(require_admin)])
def admin_get_order(order_id: uuid.UUID, db: Session = Depends(get_db)):
    return serialize_order(_get_order(db, order_id))


@router.get("/{order_id}/history", dependencies=[Depends(require_admin)])
def admin_order_history(order_id: uuid.UUID, db: Session = Depends(get_db)):
    _get_order(db, order_id)
    rows = (
        db.query(OrderStatusHistory)
        .filter(OrderStatusHistory.order_id == order_id)
        .order_by(OrderStatusHistory.created_at)
        .all()
    )
    return [
        {
            "id": str(h.id),
            "old_status": h.old_status,
            "new_status": h.new_status,
            "source": h.source,
            "changed_by": str(h.changed_by) if h.changed_by else None,
            "reason": h.reason,
            "created_at": h.created_at,
        }
        for h in rows
    ]


# =====================================================
# STATUS OVERRIDE
# =====================================================

@router.patch("/{order_id}/status", status_code=status.HTTP_200_OK)
def admin_set_status(
    order_id: uuid.UUID,
    payload: StatusOverridePayload,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    """Any status may be set; pass expected_version to fail on a concurrent change."""
    try:
        order = staff_set_status(
            db, order_id, payload.status,
            changed_by=admin.id,
            reason=payload.reason,
            expected_version=payload.expected_version,
        )
    except OrderNotFound:
        raise HTTPException(404, "Order not found")
    except StaleOrderError:
        raise HTTPException(409, "Order was modified by someone else. Reload and try again.")

    return {"message": "Order status updated", "order": serialize_order(order, include_items=False)}


# =====================================================
# DELETE
# =====================================================

def _run_delete(db: Session, order_ids: list) -> dict:
    try:
        return bulk_delete_orders(db, order_ids)
    except PartialDeleteError as e:
        raise HTTPException(500, {
            "message": "Order items were deleted but the orders could not be removed",
            "items_deleted": e.items_deleted,
            "order_ids": [str(i) for i in e.order_ids],
        })
    except SQLAlchemyError:
        raise HTTPException(500, "Delete failed; no changes were made")


@router.delete("/{order_id}", status_code=status.HTTP_200_OK, dependencies=[Depends(require_admin)])
def admin_delete_order(order_id: uuid.UUID, db: Session = Depends(get_db)):
    _get_order(db, order_id)
    result = _run_delete(db, [order_id])
    return {"message": "Order permanently deleted", **result}


# =====================================================
# BULK
# =====================================================

@router.post("/bulk-status", status_code=status.HTTP_200_OK)
def admin_bulk_status(
    payload: BulkStatusPayload,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    if not payload.order_ids:
        raise HTTPException(400, "No orders selected")
    updated = bulk_update_status(db, payload.order_ids, payload.status, changed_by=admin.id)
    return {"message": f"{updated} orders updated", "updated": updated}


@router.post("/bulk-delete", status_code=status.HTTP_200_OK, dependencies=[Depends(require_admin)])
def admin_bulk_delete(payload: BulkDeletePayload, db: Session = Depends(get_db)):
    if not payload.order_ids:
        raise HTTPException(400, "No orders selected")
    result = _run_delete(db, payload.order_ids)
    return {"message": f"{result['orders_deleted']} orders deleted", **result}
