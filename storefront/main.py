import os
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from storefront.database import init_database
from storefront.routes import (
    admin,
    admin_orders,
    cart,
    health,
    orders,
    payments,
    returns,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

CORS_ORIGINS = [
    o.strip()
    for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    if o.strip()
]

app = FastAPI(title="Storefront Orders API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Health ─────────────────────────────────────────────────────────
app.include_router(health.router)

# ── Shopper ────────────────────────────────────────────────────────
app.include_router(cart.router,          prefix="/api")
app.include_router(orders.router,        prefix="/api")
app.include_router(payments.router,      prefix="/api")
app.include_router(returns.router,       prefix="/api")

# ── Admin ──────────────────────────────────────────────────────────
app.include_router(admin.router,         prefix="/api")
app.include_router(admin_orders.router,  prefix="/api")


@app.on_event("startup")
def startup():
    init_database()
