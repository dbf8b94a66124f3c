import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, status, Request
from sqlalchemy.orm import Session

from storefront.database import get_db
from storefront.models import User
from storefront.security import get_token_from_request, token_subject

CART_SESSION_HEADER = "X-Cart-Session"
CART_SESSION_COOKIE = "cart_session_id"


# =========================
# CURRENT USER
# =========================
def get_optional_user(
    request: Request,
    db: Session = Depends(get_db),
) -> Optional[User]:
    """Resolve the caller if a valid token is present; anonymous otherwise."""
    token = get_token_from_request(request)
    if not token:
        return None

    user_id = token_subject(token)
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account disabled",
        )

    return user


def get_current_user(user: Optional[User] = Depends(get_optional_user)) -> User:
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user


# =========================
# CART OWNER
# =========================

@dataclass(frozen=True)
class CartOwner:
    user_id: Optional[uuid.UUID] = None
    session_id: Optional[str] = None

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None


def get_cart_session_id(request: Request) -> Optional[str]:
    return request.headers.get(CART_SESSION_HEADER) or request.cookies.get(CART_SESSION_COOKIE)


def get_cart_owner(
    request: Request,
    user: Optional[User] = Depends(get_optional_user),
) -> CartOwner:
    """
    Authenticated shoppers own their cart by user id; everyone else by the
    anonymous session token the client persists locally.
    """
    if user is not None:
        return CartOwner(user_id=user.id)

    session_id = get_cart_session_id(request)
    if not session_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Missing cart session: send the {CART_SESSION_HEADER} header",
        )
    return CartOwner(session_id=session_id)
