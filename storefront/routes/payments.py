import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storefront.checkout import parse_order_id, start_online_payment, serialize_order
from storefront.database import get_db
from storefront.models import Order, OrderStatus, PaymentMethod
from storefront.notifications import schedule_order_notifications
from storefront.order_status import (
    PAYMENT_SUCCEEDED,
    OrderNotFound,
    StaleOrderError,
    apply_gateway_event,
    event_for_state,
    is_known_event,
)
from storefront.routes.orders import AWAITING_PAYMENT, gateway_failure
from storefront.safepay_client import SafepayClient, GatewayError, get_gateway

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


class VerifyPaymentPayload(BaseModel):
    session_token: str
    order_id: str


def _extract_order_id(payload: dict) -> Optional[str]:
    data = payload.get("data") or {}
    metadata = data.get("metadata") or {}
    return metadata.get("order_id") or data.get("order_id")


def _apply_webhook(db: Session, background_tasks: BackgroundTasks, order_id, event: str) -> dict:
    try:
        result = apply_gateway_event(db, order_id, event, source="webhook")
    except OrderNotFound:
        logger.warning("Webhook for unknown order %s | event=%s", order_id, event)
        raise HTTPException(404, "Order not found")
    except (StaleOrderError, SQLAlchemyError):
        logger.exception("Webhook processing failed | order=%s | event=%s", order_id, event)
        raise HTTPException(500, "Webhook processing failed")

    if event == PAYMENT_SUCCEEDED and result.status == OrderStatus.confirmed:
        schedule_order_notifications(background_tasks, result.order)

    return {
        "received": True,
        "applied": result.applied,
        "order_number": result.order.order_number,
        "status": result.status,
    }


# =====================================================
# GATEWAY WEBHOOK
# =====================================================

@router.post("/webhook")
async def payment_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    """
    Asynchronous payment result from the gateway.

    Every delivery is applied through the status guard, so redelivered or
    out-of-order events cannot regress an order. A succeeded event queues the
    order notifications on every delivery, duplicates included.
    """
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("Webhook rejected: body is not JSON")
        raise HTTPException(400, "Invalid JSON body")

    if not isinstance(payload, dict):
        raise HTTPException(400, "Invalid webhook payload")

    event = payload.get("event")
    raw_order_id = _extract_order_id(payload)
    if not raw_order_id:
        logger.warning("Webhook rejected: no order id | event=%s", event)
        raise HTTPException(400, "Missing order id in webhook metadata")

    order_id = parse_order_id(raw_order_id)

    if not is_known_event(event):
        logger.info("Webhook event %s acknowledged without action | order=%s", event, order_id)
        return {"received": True, "applied": False}

    # database work runs on the threadpool, off the event loop
    return await run_in_threadpool(_apply_webhook, db, background_tasks, order_id, event)


# =====================================================
# SUCCESS-PAGE VERIFICATION
# =====================================================

@router.post("/verify")
def verify_payment(
    payload: VerifyPaymentPayload,
    db: Session = Depends(get_db),
    gateway: SafepayClient = Depends(get_gateway),
):
    order_id = parse_order_id(payload.order_id)
    order = db.query(Order).filter(Order.id == order_id).first()
    if not order:
        raise HTTPException(404, "Order not found")
    if not order.payment_session_token or order.payment_session_token != payload.session_token:
        logger.warning("Verify rejected: session token does not belong to order %s", order.order_number)
        raise HTTPException(400, "Session token does not match this order")

    try:
        state = gateway.fetch_session_state(payload.session_token)
    except GatewayError as e:
        raise HTTPException(502, str(e))

    event = event_for_state(state)
    try:
        result = apply_gateway_event(db, order_id, event, source="verify", reason=f"Gateway state: {state}")
    except StaleOrderError:
        raise HTTPException(409, "Order was modified concurrently, please retry")

    return {
        "order_id": str(result.order.id),
        "order_number": result.order.order_number,
        "gateway_state": state,
        "status": result.status,
        "payment_status": result.order.payment_status,
        "applied": result.applied,
    }


# =====================================================
# RETRY PAYMENT SESSION
# =====================================================

@router.post("/{order_id}/session")
def retry_payment_session(
    order_id: str,
    db: Session = Depends(get_db),
    gateway: SafepayClient = Depends(get_gateway),
):
    order = db.query(Order).filter(Order.id == parse_order_id(order_id)).first()
    if not order:
        raise HTTPException(404, "Order not found")
    if order.payment_method != PaymentMethod.online:
        raise HTTPException(400, "This order is not paid online.")
    if order.status not in AWAITING_PAYMENT:
        raise HTTPException(400, f"Cannot start payment for an order in status '{order.status.value}'.")

    try:
        session = start_online_payment(db, order, gateway)
    except GatewayError as e:
        raise gateway_failure(order, e)
    except StaleOrderError:
        raise HTTPException(409, "Order was modified concurrently, please retry")

    return {
        "order": serialize_order(order, include_items=False),
        "checkout_url": session.checkout_url,
        "session_token": session.session_token,
    }
