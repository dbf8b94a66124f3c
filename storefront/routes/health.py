import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storefront.database import get_db

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
def health_check(db: Session = Depends(get_db)):
    """
    Keep-alive endpoint. Also reports whether the database answers.
    """
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        database = "unreachable"

    return {
        "status": "healthy" if database == "ok" else "degraded",
        "database": database,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/ping")
def ping():
    return {"ping": "pong"}
