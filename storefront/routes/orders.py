import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, EmailStr, field_validator
from sqlalchemy.orm import Session, joinedload

from storefront.cart_store import CartStore
from storefront.checkout import place_order, start_online_payment, serialize_order
from storefront.database import get_db
from storefront.dependencies import CartOwner, get_cart_owner, get_current_user
from storefront.models import Order, OrderStatus, PaymentMethod, User
from storefront.notifications import schedule_order_notifications
from storefront.order_status import StaleOrderError
from storefront.safepay_client import SafepayClient, GatewayError, get_gateway

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])

# Online orders in these statuses can still be sent to the gateway
AWAITING_PAYMENT = (OrderStatus.pending, OrderStatus.payment_pending, OrderStatus.payment_failed)


# =====================================================
# PYDANTIC SCHEMAS
# =====================================================

class CheckoutPayload(BaseModel):
    name: str
    email: EmailStr
    phone: str
    address: str
    city: Optional[str] = None
    payment_method: PaymentMethod
    payment_credentials: Optional[dict] = None
    idempotency_key: Optional[str] = None

    @field_validator("name", "phone", "address")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be blank")
        return v.strip()


# =====================================================
# HELPERS
# =====================================================

def gateway_failure(order: Order, error: GatewayError) -> HTTPException:
    """502 carrying enough for the client to retry payment on the same order."""
    logger.error("Order %s: gateway session failed: %s", order.order_number, error)
    return HTTPException(
        status_code=502,
        detail={
            "message": f"Payment could not be started: {error}",
            "order_id": str(order.id),
            "order_number": order.order_number,
        },
    )


# =====================================================
# CHECKOUT
# =====================================================

@router.post("", status_code=201)
def checkout(
    payload: CheckoutPayload,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    owner: CartOwner = Depends(get_cart_owner),
    gateway: SafepayClient = Depends(get_gateway),
    idempotency_header: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    """
    Freeze the cart into an order.

    COD orders are placed immediately. Online orders get a hosted payment
    session; the order stays pending until the gateway reports back. The
    cart is only emptied once the order is placed and, for online orders,
    the session exists.
    """
    if payload.payment_method == PaymentMethod.online and not payload.payment_credentials:
        raise HTTPException(400, "Payment details are required for online payment")

    idempotency_key = idempotency_header or payload.idempotency_key
    customer = {
        "name": payload.name,
        "email": payload.email,
        "phone": payload.phone,
        "address": payload.address,
        "city": payload.city,
    }
    # payment_credentials are only checked for presence; never stored or forwarded
    order, created = place_order(db, owner, customer, payload.payment_method, idempotency_key)
    status_code = 201 if created else 200

    if order.payment_method == PaymentMethod.cod:
        if created:
            CartStore(db, owner).clear()
            schedule_order_notifications(background_tasks, order)
        return JSONResponse(
            status_code=status_code,
            content=jsonable_encoder({
                "message": "Order placed successfully",
                "order": serialize_order(order),
            }),
        )

    if not created and order.status not in AWAITING_PAYMENT:
        return JSONResponse(
            status_code=status_code,
            content=jsonable_encoder({"message": "Order already processed", "order": serialize_order(order)}),
        )

    try:
        session = start_online_payment(db, order, gateway)
    except GatewayError as e:
        raise gateway_failure(order, e)
    except StaleOrderError:
        raise HTTPException(409, "Order was modified concurrently, please retry")

    CartStore(db, owner).clear()
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({
            "message": "Redirect to payment",
            "order": serialize_order(order),
            "checkout_url": session.checkout_url,
            "session_token": session.session_token,
        }),
    )


# =====================================================
# USER: MY ORDERS (paginated)
# =====================================================

@router.get("/my")
def my_orders(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
):
    query = (
        db.query(Order)
        .options(joinedload(Order.items))
        .filter(Order.user_id == user.id)
    )
    if status_filter:
        try:
            query = query.filter(Order.status == OrderStatus(status_filter))
        except ValueError:
            raise HTTPException(400, f"Invalid status: '{status_filter}'")

    total = query.count()
    orders = query.order_by(Order.created_at.desc()).offset((page - 1) * per_page).limit(per_page).all()

    return {
        "total": total,
        "page": page,
        "per_page": per_page,
        "pages": (total + per_page - 1) // per_page,
        "results": [serialize_order(o) for o in orders],
    }


# =====================================================
# PUBLIC: TRACK ORDER
# =====================================================

@router.get("/track/{order_number}")
def track_order(order_number: str, db: Session = Depends(get_db)):
    order = (
        db.query(Order)
        .options(joinedload(Order.items))
        .filter(Order.order_number == order_number.strip())
        .first()
    )
    if not order:
        raise HTTPException(404, "Order not found")

    return {
        "order_number": order.order_number,
        "status": order.status,
        "payment_status": order.payment_status,
        "payment_method": order.payment_method,
        "customer_name": order.customer_name,
        "customer_city": order.customer_city,
        "total_amount": order.total_amount,
        "created_at": order.created_at,
        "updated_at": order.updated_at,
        "items": [
            {
                "product_name": i.product_name,
                "product_price": i.product_price,
                "quantity": i.quantity,
                "selected_color": i.selected_color,
                "selected_size": i.selected_size,
            }
            for i in order.items
        ],
    }
