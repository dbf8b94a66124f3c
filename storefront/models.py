import uuid
import enum
from datetime import datetime, timezone
from sqlalchemy import (
    Column,
    String,
    Text,
    Integer,
    Float,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Uuid,
)
from sqlalchemy.orm import relationship

from storefront.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =========================
# ENUMS
# =========================

class OrderStatus(str, enum.Enum):
    pending = "pending"
    processing = "processing"
    confirmed = "confirmed"
    payment_pending = "payment_pending"
    payment_failed = "payment_failed"
    cancelled = "cancelled"
    shipped = "shipped"
    delivered = "delivered"


class PaymentStatus(str, enum.Enum):
    pending = "pending"
    paid = "paid"
    failed = "failed"
    cancelled = "cancelled"


class PaymentMethod(str, enum.Enum):
    cod = "cod"
    online = "online"


class ReturnStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    completed = "completed"


# =========================
# USER (auth collaborator)
# =========================

class User(Base):
    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    email = Column(String, nullable=False, unique=True, index=True)
    full_name = Column(String)
    phone = Column(String)

    role = Column(String, default="user", nullable=False)
    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


# =========================
# CATALOG (read-only collaborator)
# =========================

class Product(Base):
    __tablename__ = "products"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    name = Column(String, nullable=False)
    price = Column(Float, nullable=False)
    stock = Column(Integer, default=0)
    image_url = Column(String)
    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)

    variants = relationship(
        "ProductVariant",
        back_populates="product",
        cascade="all, delete-orphan",
    )


class ProductVariant(Base):
    """A (color, size) combination with its own price and stock."""
    __tablename__ = "product_variants"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    product_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    color = Column(String)
    size = Column(String)
    price = Column(Float, nullable=False)
    stock = Column(Integer, default=0)

    product = relationship("Product", back_populates="variants")


# =========================
# CART
# =========================

class CartItem(Base):
    __tablename__ = "cart_items"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # Exactly one of user_id / session_id is set
    user_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    session_id = Column(String, nullable=True, index=True)

    product_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    variant_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("product_variants.id", ondelete="SET NULL"),
        nullable=True,
    )
    selected_color = Column(String)
    selected_size = Column(String)

    quantity = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), onupdate=utcnow)

    product = relationship("Product")
    variant = relationship("ProductVariant")

    @property
    def unit_price(self) -> float:
        if self.variant is not None:
            return self.variant.price
        return self.product.price if self.product else 0.0


# =========================
# ORDER
# =========================

class Order(Base):
    __tablename__ = "orders"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    order_number = Column(String, nullable=False, unique=True, index=True)
    user_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    # Customer snapshot, copied from the checkout form
    customer_name = Column(String, nullable=False)
    customer_email = Column(String, nullable=False)
    customer_phone = Column(String, nullable=False)
    customer_address = Column(Text, nullable=False)
    customer_city = Column(String)

    subtotal = Column(Float, nullable=False)
    shipping_amount = Column(Float, nullable=False, default=0.0)
    total_amount = Column(Float, nullable=False)

    payment_method = Column(
        Enum(PaymentMethod, name="payment_method"),
        nullable=False,
    )
    status = Column(
        Enum(OrderStatus, name="order_status"),
        default=OrderStatus.pending,
        nullable=False,
    )
    payment_status = Column(
        Enum(PaymentStatus, name="payment_status"),
        default=PaymentStatus.pending,
        nullable=False,
    )
    payment_session_token = Column(String)

    idempotency_key = Column(String, unique=True, nullable=True)
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow)

    items = relationship(
        "OrderItem",
        back_populates="order",
        order_by="OrderItem.product_name",
    )
    history = relationship(
        "OrderStatusHistory",
        back_populates="order",
        order_by="OrderStatusHistory.created_at",
        passive_deletes=True,
    )


Index("idx_orders_status", Order.status)
Index("idx_orders_created_at", Order.created_at)


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    order_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id"),
        nullable=False,
        index=True,
    )

    # No FK: historical rows outlive catalog edits and deletions
    product_id = Column(Uuid(as_uuid=True))
    variant_id = Column(Uuid(as_uuid=True))

    product_name = Column(String, nullable=False)
    product_price = Column(Float, nullable=False)
    selected_color = Column(String)
    selected_size = Column(String)
    quantity = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="items")

    @property
    def line_total(self) -> float:
        return round(self.product_price * self.quantity, 2)


class OrderStatusHistory(Base):
    """Append-only audit of every order status write."""
    __tablename__ = "order_status_history"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    order_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    old_status = Column(String)
    new_status = Column(String, nullable=False)
    source = Column(String, nullable=False)  # checkout | staff | bulk | webhook | verify
    changed_by = Column(Uuid(as_uuid=True))
    reason = Column(Text)

    created_at = Column(DateTime(timezone=True), default=utcnow)

    order = relationship("Order", back_populates="history")


# =========================
# RETURNS
# =========================

class Return(Base):
    __tablename__ = "returns"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    order_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    order_number = Column(String, nullable=False, index=True)

    # Point-in-time copy of the order
    customer_name = Column(String, nullable=False)
    customer_email = Column(String, nullable=False)
    customer_phone = Column(String, nullable=False)
    customer_address = Column(Text, nullable=False)
    total_amount = Column(Float, nullable=False)

    reason = Column(Text, nullable=False)
    status = Column(
        Enum(ReturnStatus, name="return_status"),
        default=ReturnStatus.pending,
        nullable=False,
    )

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), onupdate=utcnow)

    items = relationship(
        "ReturnItem",
        back_populates="return_request",
        cascade="all, delete-orphan",
    )


Index("idx_returns_status", Return.status)


class ReturnItem(Base):
    __tablename__ = "return_items"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    return_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("returns.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    product_name = Column(String, nullable=False)
    product_price = Column(Float, nullable=False)
    quantity = Column(Integer, nullable=False)

    return_request = relationship("Return", back_populates="items")


# =========================
# SETTINGS
# =========================

class Setting(Base):
    __tablename__ = "settings"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    key = Column(String, nullable=False, unique=True)
    value = Column(String, nullable=False)
    version = Column(Integer, nullable=False, default=1)

    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class SettingHistory(Base):
    """Every value ever written to a setting; the latest row is current."""
    __tablename__ = "setting_history"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    key = Column(String, nullable=False, index=True)
    value = Column(String, nullable=False)
    version = Column(Integer, nullable=False)
    changed_by = Column(Uuid(as_uuid=True))

    created_at = Column(DateTime(timezone=True), default=utcnow)
