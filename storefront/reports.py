from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from storefront.models import Order, OrderItem, Return
from storefront.returns import returned_order_ids


def total_revenue(db: Session, mode: Optional[str] = None) -> float:
    """
    Sum of order totals, minus orders with a qualifying Return row.

    The order's own status plays no part: a cancelled order still counts
    unless it has also been returned.
    """
    total = (
        db.query(func.sum(Order.total_amount))
        .filter(Order.id.not_in(returned_order_ids(mode)))
        .scalar()
    )
    return round(total or 0, 2)


def _count_by_status(db: Session, column) -> list:
    rows = db.query(column, func.count()).group_by(column).all()
    return [
        {"status": status.value if hasattr(status, "value") else status, "count": count}
        for status, count in rows
    ]


def build_report(db: Session, now: Optional[datetime] = None, mode: Optional[str] = None) -> dict:
    now = now or datetime.now(timezone.utc)
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    start_of_month = start_of_day.replace(day=1)

    top_products = (
        db.query(OrderItem.product_name, func.sum(OrderItem.quantity).label("total_sold"))
        .group_by(OrderItem.product_name)
        .order_by(func.sum(OrderItem.quantity).desc())
        .limit(5)
        .all()
    )

    return {
        "total_orders": db.query(Order).count(),
        "total_returns": db.query(Return).count(),
        "total_revenue": total_revenue(db, mode),
        "orders_today": db.query(Order).filter(Order.created_at >= start_of_day).count(),
        "orders_this_month": db.query(Order).filter(Order.created_at >= start_of_month).count(),
        "returns_this_month": db.query(Return).filter(Return.created_at >= start_of_month).count(),
        "orders_by_status": _count_by_status(db, Order.status),
        "returns_by_status": _count_by_status(db, Return.status),
        "top_selling_products": [
            {"product_name": name, "total_sold": int(sold or 0)}
            for name, sold in top_products
        ],
    }
