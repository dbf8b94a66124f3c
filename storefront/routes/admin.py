from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from storefront.database import get_db
from storefront.dependencies import require_admin
from storefront.models import User
from storefront.reports import build_report
from storefront.returns import EXCLUSION_MODES
from storefront.shipping import get_shipping_rate, set_shipping_rate, shipping_history

router = APIRouter(tags=["admin"])


class ShippingSettingsPayload(BaseModel):
    shipping_charges: float


# =====================================================
# PUBLIC: SHIPPING
# =====================================================

@router.get("/settings/shipping")
def get_shipping_settings(db: Session = Depends(get_db)):
    return {"shipping_charges": get_shipping_rate(db)}


# =====================================================
# ADMIN: SHIPPING
# =====================================================

@router.put("/admin/settings/shipping")
def update_shipping_settings(
    payload: ShippingSettingsPayload,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    row = set_shipping_rate(db, payload.shipping_charges, changed_by=admin.id)
    return {
        "message": "Shipping charges updated",
        "shipping_charges": float(row.value),
        "version": row.version,
        "updated_at": row.updated_at,
    }


@router.get("/admin/settings/shipping/history", dependencies=[Depends(require_admin)])
def get_shipping_history(
    db: Session = Depends(get_db),
    limit: int = Query(50, ge=1, le=500),
):
    return [
        {
            "value": float(h.value),
            "version": h.version,
            "changed_by": str(h.changed_by) if h.changed_by else None,
            "created_at": h.created_at,
        }
        for h in shipping_history(db, limit)
    ]


# =====================================================
# ADMIN: DASHBOARD REPORT
# =====================================================

@router.get("/admin/reports", dependencies=[Depends(require_admin)])
def admin_reports(
    db: Session = Depends(get_db),
    exclusion: str = Query(None, description="Returns exclusion mode: any | accepted"),
):
    if exclusion and exclusion not in EXCLUSION_MODES:
        raise HTTPException(400, f"Invalid exclusion mode: '{exclusion}'")
    return build_report(db, mode=exclusion)
