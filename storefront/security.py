import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Request
from jose import jwt, JWTError

# Tokens are issued by the account service; this API only verifies them.
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    raise RuntimeError("SECRET_KEY must be set in environment variables")

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_DAYS = 7
ACCESS_TOKEN_COOKIE = "access_token"


def create_token(user_id, role: str) -> str:
    now = datetime.now(timezone.utc)
    return jwt.encode(
        {
            "sub": str(user_id),
            "role": role,
            "exp": now + timedelta(days=ACCESS_TOKEN_EXPIRE_DAYS),
            "iat": now,
        },
        SECRET_KEY,
        algorithm=ALGORITHM,
    )


def token_subject(token: str) -> Optional[uuid.UUID]:
    """User id carried by a valid token; None for anything unusable."""
    try:
        claims = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None
    try:
        return uuid.UUID(str(claims.get("sub")))
    except ValueError:
        return None


def get_token_from_request(request: Request) -> Optional[str]:
    token = request.cookies.get(ACCESS_TOKEN_COOKIE)
    if token:
        return token

    auth_header = request.headers.get("Authorization", "")
    scheme, _, credentials = auth_header.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials
    return None
