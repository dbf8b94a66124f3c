import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from storefront.cart_store import CartStore, merge_anonymous_cart
from storefront.database import get_db
from storefront.dependencies import (
    CART_SESSION_HEADER,
    CartOwner,
    get_cart_owner,
    get_cart_session_id,
    get_current_user,
)
from storefront.models import CartItem, User

router = APIRouter(prefix="/cart", tags=["cart"])


# =====================================================
# Pydantic Schemas
# =====================================================

class AddToCartPayload(BaseModel):
    product_id: uuid.UUID
    variant_id: Optional[uuid.UUID] = None
    quantity: int = 1
    selected_color: Optional[str] = None
    selected_size: Optional[str] = None


class UpdateCartItemPayload(BaseModel):
    quantity: int


# =====================================================
# HELPERS
# =====================================================

def _serialize_line(item: CartItem) -> dict:
    return {
        "id": str(item.id),
        "product_id": str(item.product_id),
        "variant_id": str(item.variant_id) if item.variant_id else None,
        "name": item.product.name if item.product else None,
        "image_url": item.product.image_url if item.product else None,
        "selected_color": item.selected_color,
        "selected_size": item.selected_size,
        "quantity": item.quantity,
        "price": item.unit_price,
        "subtotal": round(item.unit_price * item.quantity, 2),
    }


def _cart_response(store: CartStore) -> dict:
    items = store.list_items()
    return {
        "items": [_serialize_line(i) for i in items],
        "total_items": sum(i.quantity for i in items),
        "subtotal": round(sum(i.unit_price * i.quantity for i in items), 2),
    }


# =====================================================
# GET CART
# =====================================================
@router.get("", status_code=status.HTTP_200_OK)
def get_cart(
    db: Session = Depends(get_db),
    owner: CartOwner = Depends(get_cart_owner),
):
    return _cart_response(CartStore(db, owner))


# =====================================================
# ADD ITEM
# =====================================================
@router.post("/items", status_code=status.HTTP_201_CREATED)
def add_to_cart(
    payload: AddToCartPayload,
    db: Session = Depends(get_db),
    owner: CartOwner = Depends(get_cart_owner),
):
    """Adding the same product/variant/color again increments the line."""
    store = CartStore(db, owner)
    item = store.add_item(
        payload.product_id,
        quantity=payload.quantity,
        variant_id=payload.variant_id,
        color=payload.selected_color,
        size=payload.selected_size,
    )
    return {"message": "Item added to cart", "item": _serialize_line(item)}


# =====================================================
# UPDATE QUANTITY
# =====================================================
@router.patch("/items/{item_id}", status_code=status.HTTP_200_OK)
def update_cart_item(
    item_id: uuid.UUID,
    payload: UpdateCartItemPayload,
    db: Session = Depends(get_db),
    owner: CartOwner = Depends(get_cart_owner),
):
    if payload.quantity < 1:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Quantity must be at least 1; remove the item instead")

    item = CartStore(db, owner).update_quantity(item_id, payload.quantity)
    return {"message": "Cart updated", "item": _serialize_line(item)}


# =====================================================
# REMOVE ITEM
# =====================================================
@router.delete("/items/{item_id}", status_code=status.HTTP_200_OK)
def remove_from_cart(
    item_id: uuid.UUID,
    db: Session = Depends(get_db),
    owner: CartOwner = Depends(get_cart_owner),
):
    CartStore(db, owner).remove_item(item_id)
    return {"message": "Item removed from cart"}


# =====================================================
# CLEAR CART
# =====================================================
@router.delete("/clear", status_code=status.HTTP_200_OK)
def clear_cart(
    db: Session = Depends(get_db),
    owner: CartOwner = Depends(get_cart_owner),
):
    removed = CartStore(db, owner).clear()
    return {"message": "Cart cleared", "items_removed": removed}


# =====================================================
# MERGE ANONYMOUS CART ON LOGIN
# =====================================================
@router.post("/merge", status_code=status.HTTP_200_OK)
def merge_cart(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    session_id = get_cart_session_id(request)
    if not session_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Missing cart session: send the {CART_SESSION_HEADER} header",
        )

    merged = merge_anonymous_cart(db, session_id, user.id)
    cart = _cart_response(CartStore(db, CartOwner(user_id=user.id)))
    return {"message": "Cart merged", "lines_merged": merged, **cart}
