import os
import logging

from fastapi import BackgroundTasks

from storefront.models import Order
from storefront.utils.outbound import send_email, send_sms

logger = logging.getLogger(__name__)

ADMIN_NOTIFICATION_EMAIL = os.getenv("ADMIN_NOTIFICATION_EMAIL")
ADMIN_NOTIFICATION_PHONE = os.getenv("ADMIN_NOTIFICATION_PHONE")
STORE_NAME = os.getenv("EMAIL_FROM_NAME", "A&Z Fabrics")
STORE_CURRENCY = os.getenv("STORE_CURRENCY", "PKR")


def order_snapshot(order: Order) -> dict:
    """Plain copy of the order, safe to hand to a task after the session closes."""
    return {
        "id": str(order.id),
        "order_number": order.order_number,
        "customer_name": order.customer_name,
        "customer_email": order.customer_email,
        "customer_phone": order.customer_phone,
        "customer_address": order.customer_address,
        "customer_city": order.customer_city,
        "total_amount": order.total_amount,
        "payment_method": order.payment_method.value,
        "status": order.status.value,
        "items": [
            {
                "product_name": i.product_name,
                "quantity": i.quantity,
                "product_price": i.product_price,
            }
            for i in order.items
        ],
    }


def _items_html(order: dict) -> str:
    rows = "".join(
        f"<tr><td>{i['product_name']}</td><td>{i['quantity']}</td>"
        f"<td>{STORE_CURRENCY} {i['product_price']:,.2f}</td></tr>"
        for i in order["items"]
    )
    return f"<table><tr><th>Item</th><th>Qty</th><th>Price</th></tr>{rows}</table>"


def send_order_email(order: dict) -> bool:
    html = (
        f"<h2>Thank you for your order, {order['customer_name']}!</h2>"
        f"<p>Order number: <strong>{order['order_number']}</strong></p>"
        f"{_items_html(order)}"
        f"<p>Total: {STORE_CURRENCY} {order['total_amount']:,.2f}</p>"
        f"<p>Delivery to: {order['customer_address']}, {order.get('customer_city') or ''}</p>"
    )
    sent = send_email(
        order["customer_email"],
        f"Order Confirmation - {order['order_number']}",
        html,
        tag="order-placed",
    )
    if ADMIN_NOTIFICATION_EMAIL:
        send_email(
            ADMIN_NOTIFICATION_EMAIL,
            f"New Order Received - {order['order_number']}",
            html,
            tag="order-placed-admin",
        )
    return sent


def send_order_sms(order: dict) -> bool:
    body = (
        f"{STORE_NAME} - NEW ORDER\n"
        f"Order: {order['order_number']}\n"
        f"Customer: {order['customer_name']}\n"
        f"Phone: {order['customer_phone']}\n"
        f"Amount: {STORE_CURRENCY} {order['total_amount']:,.2f}\n"
        f"Address: {order['customer_address']}, {order.get('customer_city') or ''}"
    )
    return send_sms(ADMIN_NOTIFICATION_PHONE or order["customer_phone"], body)


def schedule_order_notifications(background_tasks: BackgroundTasks, order: Order) -> None:
    """
    Queue the email and SMS for after the response is sent. Delivery
    failures are logged by the senders and never reach the caller.

    Every call queues a fresh pair: a redelivered webhook re-sends.
    """
    snapshot = order_snapshot(order)
    background_tasks.add_task(send_order_email, snapshot)
    background_tasks.add_task(send_order_sms, snapshot)
    logger.info("Queued notifications for order %s", snapshot["order_number"])
