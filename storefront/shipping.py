import os
import time
import logging
import uuid
from typing import Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from storefront.models import Setting, SettingHistory

logger = logging.getLogger(__name__)

SHIPPING_KEY = "shipping_charges"
SHIPPING_CACHE_TTL = float(os.getenv("SHIPPING_CACHE_TTL", "60"))

# module-level cache, resets on every server restart
_rate_cache: dict = {"value": None, "ts": 0.0}


def invalidate_cache() -> None:
    _rate_cache["value"] = None
    _rate_cache["ts"] = 0.0


def _parse_amount(raw: Optional[str]) -> float:
    try:
        return max(float(raw), 0.0)
    except (TypeError, ValueError):
        return 0.0


def get_shipping_rate(db: Session) -> float:
    """
    Global flat shipping fee. A missing row means free shipping.
    """
    now = time.time()
    if _rate_cache["value"] is not None and (now - _rate_cache["ts"]) < SHIPPING_CACHE_TTL:
        return _rate_cache["value"]

    row = db.query(Setting).filter(Setting.key == SHIPPING_KEY).first()
    rate = _parse_amount(row.value) if row else 0.0

    _rate_cache["value"] = rate
    _rate_cache["ts"] = now
    return rate


def set_shipping_rate(db: Session, amount: float, changed_by: Optional[uuid.UUID] = None) -> Setting:
    if amount < 0:
        raise HTTPException(status_code=400, detail="Shipping charges cannot be negative")

    value = f"{amount:.2f}"
    row = db.query(Setting).filter(Setting.key == SHIPPING_KEY).first()
    if row:
        row.value = value
        row.version += 1
    else:
        row = Setting(key=SHIPPING_KEY, value=value, version=1)
        db.add(row)
        db.flush()

    db.add(SettingHistory(
        key=SHIPPING_KEY,
        value=value,
        version=row.version,
        changed_by=changed_by,
    ))
    db.commit()
    db.refresh(row)
    invalidate_cache()

    logger.info("Shipping charges set to %s (version %s)", value, row.version)
    return row


def shipping_history(db: Session, limit: int = 50):
    return (
        db.query(SettingHistory)
        .filter(SettingHistory.key == SHIPPING_KEY)
        .order_by(SettingHistory.version.desc())
        .limit(limit)
        .all()
    )
