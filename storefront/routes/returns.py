import uuid
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy import or_
from sqlalchemy.orm import Session, joinedload

from storefront.checkout import serialize_order
from storefront.database import get_db
from storefront.dependencies import require_admin
from storefront.models import Return, ReturnStatus, User, utcnow
from storefront.returns import (
    ReturnNotAllowed,
    can_return,
    create_return,
    find_order_by_number,
    serialize_return,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["returns"])


class ReturnRequestPayload(BaseModel):
    order_number: str
    reason: str


class ReturnStatusPayload(BaseModel):
    status: ReturnStatus


# =====================================================
# PUBLIC: RETURN FORM
# =====================================================

@router.get("/returns/lookup/{order_number}")
def lookup_order_for_return(order_number: str, db: Session = Depends(get_db)):
    order = find_order_by_number(db, order_number)
    if not order:
        raise HTTPException(404, "Order not found")

    return {
        "order": serialize_order(order),
        "can_return": can_return(order),
    }


@router.post("/returns", status_code=status.HTTP_201_CREATED)
def request_return(payload: ReturnRequestPayload, db: Session = Depends(get_db)):
    order = find_order_by_number(db, payload.order_number)
    if not order:
        raise HTTPException(404, "Order not found")

    try:
        return_request = create_return(db, order, payload.reason)
    except ReturnNotAllowed as e:
        raise HTTPException(400, str(e))

    return {
        "message": "Return request submitted",
        "return": serialize_return(return_request),
    }


# =====================================================
# ADMIN: RETURNS
# =====================================================

@router.get("/admin/returns", dependencies=[Depends(require_admin)])
def admin_list_returns(
    db: Session = Depends(get_db),
    status_filter: Optional[str] = Query(None, alias="status"),
    search: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
):
    query = db.query(Return)
    if status_filter:
        try:
            query = query.filter(Return.status == ReturnStatus(status_filter))
        except ValueError:
            raise HTTPException(400, f"Invalid status: '{status_filter}'")
    if search:
        term = f"%{search.strip()}%"
        query = query.filter(or_(
            Return.order_number.ilike(term),
            Return.customer_name.ilike(term),
            Return.customer_email.ilike(term),
        ))

    total = query.count()
    returns = query.order_by(Return.created_at.desc()).offset((page - 1) * per_page).limit(per_page).all()

    return {
        "total": total,
        "page": page,
        "per_page": per_page,
        "results": [serialize_return(r, include_items=False) for r in returns],
    }


def _get_return(db: Session, return_id: uuid.UUID) -> Return:
    return_request = (
        db.query(Return)
        .options(joinedload(Return.items))
        .filter(Return.id == return_id)
        .first()
    )
    if not return_request:
        raise HTTPException(404, "Return not found")
    return return_request


@router.get("/admin/returns/{return_id}", dependencies=[Depends(require_admin)])
def admin_get_return(return_id: uuid.UUID, db: Session = Depends(get_db)):
    return serialize_return(_get_return(db, return_id))


@router.patch("/admin/returns/{return_id}/status")
def admin_update_return_status(
    return_id: uuid.UUID,
    payload: ReturnStatusPayload,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    return_request = _get_return(db, return_id)
    old_status = return_request.status
    return_request.status = payload.status
    return_request.updated_at = utcnow()
    db.commit()
    db.refresh(return_request)

    logger.info(
        "Return %s status %s -> %s by %s",
        return_request.id, old_status.value, payload.status.value, admin.email,
    )
    return {"message": "Return status updated", "return": serialize_return(return_request)}
