"""
Shared fixtures: in-memory SQLite, a TestClient bound to the test session,
a gateway driven by httpx.MockTransport and recorded notifications.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("STORE_BASE_URL", "https://shop.test")
os.environ.setdefault("PUBLIC_API_URL", "https://api.shop.test")

import httpx
import pytest
from fastapi.testclient import TestClient

from storefront import notifications, shipping
from storefront.database import Base, SessionLocal, engine, get_db
from storefront.main import app
from storefront.models import (
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Product,
    ProductVariant,
    User,
)
from storefront.safepay_client import SafepayClient, get_gateway
from storefront.security import create_token

CHECKOUT_URL = "https://gateway.test/checkout/create"
API_URL = "https://gateway.test/api"
CART_SESSION = "anon-session-1"


# ============================================================================
# Database
# ============================================================================


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    shipping.invalidate_cache()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        shipping.invalidate_cache()


# ============================================================================
# Gateway
# ============================================================================


class GatewayStub:
    """Scriptable behaviour for the MockTransport handler."""

    def __init__(self):
        self.fail_with = None      # HTTP status to return on session creation
        self.raise_timeout = False
        self.state = "captured"
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "POST" and str(request.url) == CHECKOUT_URL:
            if self.raise_timeout:
                raise httpx.ReadTimeout("timed out", request=request)
            if self.fail_with:
                return httpx.Response(self.fail_with, json={"error": "rejected"})
            return httpx.Response(200, json={
                "data": {
                    "checkout_url": "https://gateway.test/pay/tok_123",
                    "session_uuid": "tok_123",
                }
            })
        if request.method == "GET" and str(request.url).startswith(f"{API_URL}/checkout/"):
            return httpx.Response(200, json={"data": {"state": self.state}})
        return httpx.Response(404)


@pytest.fixture
def gateway_stub():
    return GatewayStub()


@pytest.fixture
def gateway(gateway_stub):
    return SafepayClient(
        secret_key="sec_test",
        api_key="key_test",
        checkout_url=CHECKOUT_URL,
        api_url=API_URL,
        transport=httpx.MockTransport(gateway_stub.handler),
    )


# ============================================================================
# Notifications
# ============================================================================


@pytest.fixture
def outbox(monkeypatch):
    sent = {"email": [], "sms": []}

    def fake_email(to_email, subject, html_content, text_content=None, tag=None):
        sent["email"].append((to_email, subject))
        return True

    def fake_sms(to_number, body):
        sent["sms"].append((to_number, body))
        return True

    monkeypatch.setattr(notifications, "send_email", fake_email)
    monkeypatch.setattr(notifications, "send_sms", fake_sms)
    return sent


# ============================================================================
# HTTP client
# ============================================================================


@pytest.fixture
def client(db, gateway, outbox):
    def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


# ============================================================================
# Factories
# ============================================================================


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_token(user.id, user.role)}"}


def anon_headers(session_id: str = CART_SESSION) -> dict:
    return {"X-Cart-Session": session_id}


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role: str = "user", **kwargs) -> User:
        counter["n"] += 1
        user = User(
            email=kwargs.pop("email", f"user{counter['n']}@example.com"),
            full_name=kwargs.pop("full_name", f"User {counter['n']}"),
            role=role,
            **kwargs,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def admin(make_user):
    return make_user(role="admin", email="admin@example.com")


@pytest.fixture
def make_product(db):
    def _make(name: str = "Lawn Suit", price: float = 1000.0, **kwargs) -> Product:
        product = Product(name=name, price=price, stock=kwargs.pop("stock", 10), **kwargs)
        db.add(product)
        db.commit()
        db.refresh(product)
        return product

    return _make


@pytest.fixture
def make_variant(db):
    def _make(product: Product, price: float, color: str = None, size: str = None) -> ProductVariant:
        variant = ProductVariant(product_id=product.id, price=price, color=color, size=size, stock=5)
        db.add(variant)
        db.commit()
        db.refresh(variant)
        return variant

    return _make


@pytest.fixture
def make_order(db):
    counter = {"n": 0}

    def _make(
        status: OrderStatus = OrderStatus.pending,
        total: float = 1000.0,
        items=(("Lawn Suit", 1000.0, 1),),
        payment_method: PaymentMethod = PaymentMethod.online,
        **kwargs,
    ) -> Order:
        counter["n"] += 1
        order = Order(
            order_number=kwargs.pop("order_number", f"TEST-{counter['n']}"),
            customer_name="Ayesha Khan",
            customer_email="ayesha@example.com",
            customer_phone="+92 300 1234567",
            customer_address="12 Mall Road",
            customer_city="Lahore",
            subtotal=total,
            shipping_amount=0.0,
            total_amount=total,
            payment_method=payment_method,
            status=status,
            payment_status=kwargs.pop("payment_status", PaymentStatus.pending),
            version=1,
            **kwargs,
        )
        db.add(order)
        db.flush()
        for name, price, qty in items:
            db.add(OrderItem(order_id=order.id, product_name=name, product_price=price, quantity=qty))
        db.commit()
        db.refresh(order)
        return order

    return _make


@pytest.fixture
def checkout_form():
    return {
        "name": "Ayesha Khan",
        "email": "ayesha@example.com",
        "phone": "+92 300 1234567",
        "address": "12 Mall Road",
        "city": "Lahore",
        "payment_method": "cod",
    }
