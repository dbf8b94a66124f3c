import os
import time
import logging
import threading
import uuid
from typing import Optional

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storefront.cart_store import CartStore
from storefront.dependencies import CartOwner
from storefront.models import (
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
)
from storefront.order_status import record_initial_status, write_status, StaleOrderError
from storefront.safepay_client import SafepayClient, CheckoutSession, GatewayError, STORE_CURRENCY
from storefront.shipping import get_shipping_rate

logger = logging.getLogger(__name__)

ORDER_NUMBER_PREFIX = os.getenv("ORDER_NUMBER_PREFIX", "ALH")

_last_stamp = 0
_stamp_lock = threading.Lock()


def generate_order_number() -> str:
    """Prefix plus a microsecond timestamp, strictly increasing within a process."""
    global _last_stamp
    with _stamp_lock:
        stamp = max(time.time_ns() // 1000, _last_stamp + 1)
        _last_stamp = stamp
    return f"{ORDER_NUMBER_PREFIX}-{stamp}"


def scoped_idempotency_key(owner: CartOwner, key: Optional[str]) -> Optional[str]:
    """Stored form of a client key; the same key from another shopper never matches."""
    if not key:
        return None
    scope = f"user:{owner.user_id}" if owner.user_id is not None else f"session:{owner.session_id}"
    return f"{scope}:{key}"


def find_by_idempotency_key(db: Session, key: Optional[str]) -> Optional[Order]:
    if not key:
        return None
    return db.query(Order).filter(Order.idempotency_key == key).first()


def place_order(
    db: Session,
    owner: CartOwner,
    customer: dict,
    payment_method: PaymentMethod,
    idempotency_key: Optional[str] = None,
) -> tuple[Order, bool]:
    """
    Freeze the cart into an Order plus one OrderItem per line.

    The order and its items are committed together. Returns (order, created);
    `created` is False when the idempotency key matched an earlier order.
    The cart is left untouched; clearing it is the caller's decision.
    """
    idempotency_key = scoped_idempotency_key(owner, idempotency_key)
    existing = find_by_idempotency_key(db, idempotency_key)
    if existing:
        logger.info("Checkout replay for key %s -> order %s", idempotency_key, existing.order_number)
        return existing, False

    lines = CartStore(db, owner).list_items()
    if not lines:
        raise HTTPException(status_code=400, detail="Cart is empty")

    subtotal = round(sum(line.unit_price * line.quantity for line in lines), 2)
    shipping = get_shipping_rate(db)

    order = Order(
        order_number=generate_order_number(),
        user_id=owner.user_id,
        customer_name=customer["name"],
        customer_email=customer["email"],
        customer_phone=customer["phone"],
        customer_address=customer["address"],
        customer_city=customer.get("city"),
        subtotal=subtotal,
        shipping_amount=shipping,
        total_amount=round(subtotal + shipping, 2),
        payment_method=payment_method,
        status=OrderStatus.pending,
        payment_status=PaymentStatus.pending,
        idempotency_key=idempotency_key,
        version=1,
    )
    db.add(order)
    db.flush()

    for line in lines:
        db.add(OrderItem(
            order_id=order.id,
            product_id=line.product_id,
            variant_id=line.variant_id,
            product_name=line.product.name if line.product else "Unknown Product",
            product_price=line.unit_price,
            selected_color=line.selected_color,
            selected_size=line.selected_size,
            quantity=line.quantity,
        ))

    record_initial_status(db, order)

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = find_by_idempotency_key(db, idempotency_key)
        if existing:
            return existing, False
        raise

    db.refresh(order)
    logger.info(
        "Order %s placed: %s items, total %.2f (%s)",
        order.order_number, len(lines), order.total_amount, payment_method.value,
    )
    return order, True


def start_online_payment(db: Session, order: Order, gateway: SafepayClient) -> CheckoutSession:
    """
    Open a hosted payment session for `order`.

    A payment_failed order is moved back to payment_pending first, so the
    result of the new session can still confirm it. On a gateway failure the
    order is only marked payment_pending (its items and total are untouched)
    and GatewayError propagates to the caller. StaleOrderError propagates if
    the order changed underneath the retry.
    """
    if order.status == OrderStatus.payment_failed:
        # back into the set the gateway may still confirm
        write_status(
            db, order, OrderStatus.payment_pending,
            source="checkout",
            payment_status=PaymentStatus.pending,
            reason="Payment retried",
        )

    try:
        session = gateway.create_session(
            order_id=str(order.id),
            amount=order.total_amount,
            currency=STORE_CURRENCY,
            customer_name=order.customer_name,
            customer_email=order.customer_email,
            customer_phone=order.customer_phone,
            description=f"Order {order.order_number}",
        )
    except GatewayError:
        if order.status == OrderStatus.pending:
            try:
                write_status(
                    db, order, OrderStatus.payment_pending,
                    source="checkout",
                    reason="Payment session could not be created",
                )
            except StaleOrderError:
                logger.warning("Order %s changed while recording gateway failure", order.order_number)
        raise

    order.payment_session_token = session.session_token
    db.commit()
    db.refresh(order)
    return session


def serialize_order(order: Order, include_items: bool = True) -> dict:
    data = {
        "id": str(order.id),
        "order_number": order.order_number,
        "status": order.status,
        "payment_status": order.payment_status,
        "payment_method": order.payment_method,
        "customer_name": order.customer_name,
        "customer_email": order.customer_email,
        "customer_phone": order.customer_phone,
        "customer_address": order.customer_address,
        "customer_city": order.customer_city,
        "subtotal": order.subtotal,
        "shipping_amount": order.shipping_amount,
        "total_amount": order.total_amount,
        "version": order.version,
        "created_at": order.created_at,
        "updated_at": order.updated_at,
    }
    if include_items:
        data["items"] = [
            {
                "id": str(i.id),
                "product_id": str(i.product_id) if i.product_id else None,
                "product_name": i.product_name,
                "product_price": i.product_price,
                "selected_color": i.selected_color,
                "selected_size": i.selected_size,
                "quantity": i.quantity,
                "subtotal": i.line_total,
            }
            for i in order.items
        ]
    return data


def parse_order_id(value) -> uuid.UUID:
    try:
        return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
    except (ValueError, TypeError):
        raise HTTPException(status_code=400, detail="Invalid order id")
