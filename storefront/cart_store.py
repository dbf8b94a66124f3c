import uuid
import logging
from typing import Optional, List

from fastapi import HTTPException
from sqlalchemy.orm import Session, joinedload

from storefront.dependencies import CartOwner
from storefront.models import CartItem, Product, ProductVariant

logger = logging.getLogger(__name__)


class CartStore:
    """
    Line items for one shopper, scoped to a user id or an anonymous
    session token.

    Prices are never stored on the line: `total_price` resolves the variant
    price (or the product base price) at read time, so the cart follows the
    catalog until checkout freezes it into an order.
    """

    def __init__(self, db: Session, owner: CartOwner):
        self.db = db
        self.owner = owner

    def _owned(self):
        query = self.db.query(CartItem)
        if self.owner.user_id is not None:
            return query.filter(CartItem.user_id == self.owner.user_id)
        return query.filter(
            CartItem.user_id.is_(None),
            CartItem.session_id == self.owner.session_id,
        )

    # ---------------- queries ----------------

    def list_items(self) -> List[CartItem]:
        return (
            self._owned()
            .options(joinedload(CartItem.product), joinedload(CartItem.variant))
            .order_by(CartItem.created_at)
            .all()
        )

    def total_price(self) -> float:
        return round(sum(i.unit_price * i.quantity for i in self.list_items()), 2)

    def total_items(self) -> int:
        return sum(i.quantity for i in self.list_items())

    def get_item(self, item_id: uuid.UUID) -> CartItem:
        item = self._owned().filter(CartItem.id == item_id).first()
        if not item:
            raise HTTPException(status_code=404, detail="Cart item not found")
        return item

    # ---------------- commands ----------------

    def add_item(
        self,
        product_id: uuid.UUID,
        quantity: int = 1,
        variant_id: Optional[uuid.UUID] = None,
        color: Optional[str] = None,
        size: Optional[str] = None,
    ) -> CartItem:
        if quantity < 1:
            raise HTTPException(status_code=400, detail="Quantity must be at least 1")

        product = self.db.query(Product).filter(
            Product.id == product_id,
            Product.is_active == True,
        ).first()
        if not product:
            raise HTTPException(status_code=404, detail="Product not found or inactive")

        if variant_id is not None:
            variant = self.db.query(ProductVariant).filter(
                ProductVariant.id == variant_id,
                ProductVariant.product_id == product_id,
            ).first()
            if not variant:
                raise HTTPException(status_code=404, detail="Variant not found")

        existing = (
            self._owned()
            .filter(
                CartItem.product_id == product_id,
                CartItem.variant_id == variant_id if variant_id else CartItem.variant_id.is_(None),
                CartItem.selected_color == color if color else CartItem.selected_color.is_(None),
            )
            .first()
        )

        if existing:
            existing.quantity += quantity
            if size and not existing.selected_size:
                existing.selected_size = size
            self.db.commit()
            self.db.refresh(existing)
            logger.info("Cart line %s quantity -> %s", existing.id, existing.quantity)
            return existing

        item = CartItem(
            user_id=self.owner.user_id,
            session_id=None if self.owner.user_id else self.owner.session_id,
            product_id=product_id,
            variant_id=variant_id,
            selected_color=color,
            selected_size=size,
            quantity=quantity,
        )
        self.db.add(item)
        self.db.commit()
        self.db.refresh(item)
        return item

    def update_quantity(self, item_id: uuid.UUID, quantity: int) -> CartItem:
        item = self.get_item(item_id)
        item.quantity = quantity
        self.db.commit()
        self.db.refresh(item)
        return item

    def remove_item(self, item_id: uuid.UUID) -> None:
        item = self.get_item(item_id)
        self.db.delete(item)
        self.db.commit()

    def clear(self, commit: bool = True) -> int:
        """Remove every line. Safe to call on an empty cart."""
        removed = self._owned().delete(synchronize_session=False)
        if commit:
            self.db.commit()
        return removed


def merge_anonymous_cart(db: Session, session_id: str, user_id: uuid.UUID) -> int:
    """
    Move a pre-login cart onto the authenticated owner.

    Lines that collide on (product, variant, color) are folded into the
    user's existing line; everything else is reassigned in place. Returns
    the number of anonymous lines consumed.
    """
    anonymous = (
        db.query(CartItem)
        .filter(CartItem.user_id.is_(None), CartItem.session_id == session_id)
        .all()
    )
    if not anonymous:
        return 0

    user_lines = db.query(CartItem).filter(CartItem.user_id == user_id).all()
    by_key = {(i.product_id, i.variant_id, i.selected_color): i for i in user_lines}

    for line in anonymous:
        key = (line.product_id, line.variant_id, line.selected_color)
        target = by_key.get(key)
        if target is not None:
            target.quantity += line.quantity
            db.delete(line)
        else:
            line.user_id = user_id
            line.session_id = None
            by_key[key] = line

    db.commit()
    logger.info("Merged %s anonymous cart lines into user %s", len(anonymous), user_id)
    return len(anonymous)
