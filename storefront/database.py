import os
import logging
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

# ======================================================
# DATABASE CONNECTION
# ======================================================

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL environment variable is not set")

# Normalise the URL scheme so SQLAlchemy uses psycopg2 correctly.
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # One shared connection so an in-memory database survives across sessions
        return {
            "connect_args": {"check_same_thread": False},
            "poolclass": StaticPool,
        }
    return {
        "pool_pre_ping": True,    # drops stale connections
        "pool_size": 5,
        "max_overflow": 2,
        "pool_timeout": 30,
        "pool_recycle": 300,
        "connect_args": {"connect_timeout": 10},
    }


engine = create_engine(DATABASE_URL, **_engine_options(DATABASE_URL))

if DATABASE_URL.startswith("sqlite"):
    @event.listens_for(engine, "connect")
    def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
)

Base = declarative_base()


# ======================================================
# DEPENDENCY
# ======================================================

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# ======================================================
# DATABASE BOOTSTRAP
# ======================================================

def init_database():
    """
    Idempotent DB initialization.

    Registers every model on Base.metadata and creates missing tables.
    Existing tables are left untouched.
    """
    import storefront.models  # noqa: F401
    Base.metadata.create_all(bind=engine)

    logger.info("Database verified: %s", ", ".join(sorted(Base.metadata.tables)))
