"""
GrowLokal — main.py
─────────────────────────────────────────────────────────────────
Central entry point. All routers mount here.

Start server:
    uvicorn growlokal.main:app --reload --port 8000

File map:
    auth.py          → /api/auth/*
    cart.py          → /api/cart/*
    orders.py        → /api/orders/*
    payment.py       → /api/payment/*     (PayMongo)
    notifications.py → /api/notifications/*
    admin.py         → /api/admin/*
─────────────────────────────────────────────────────────────────
"""

import logging
from contextlib import asynccontextmanager

import aiosqlite
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from growlokal.core.config import cfg
from growlokal.core.database import init_all_tables
from growlokal.ratelimit import RateLimiter

# ── Logging ───────────────────────────────────
logging.basicConfig(
    level   = logging.INFO,
    format  = "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    datefmt = "%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("growlokal.main")

VERSION = "1.0.0"


# ─────────────────────────────────────────────
# Startup / Shutdown
# ─────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup → create tables, sweep stale rate-limit records.
    """
    logger.info(f"🚀 GrowLokal starting {cfg!r}")

    await init_all_tables()
    await RateLimiter().purge_expired()

    if not cfg.paymongo_ready:
        logger.warning("⚠️  PAYMONGO_SECRET_KEY not set, card / e-wallet payments disabled")
    if not cfg.email_ready:
        logger.warning("⚠️  RESEND_API_KEY not set; emails are logged instead of sent")

    logger.info("✅ GrowLokal is live.")

    yield  # App runs here

    logger.info("GrowLokal shutting down.")


# ─────────────────────────────────────────────
# App
# ─────────────────────────────────────────────
app = FastAPI(
    title       = "GrowLokal API",
    description = "Backend for GrowLokal: community marketplace",
    version     = VERSION,
    docs_url    = "/docs"  if not cfg.is_production else None,
    redoc_url   = "/redoc" if not cfg.is_production else None,
    lifespan    = lifespan,
)


# ─────────────────────────────────────────────
# CORS
# ─────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins     = list({cfg.FRONTEND_URL, cfg.BASE_URL}),
    allow_credentials = True,
    allow_methods     = ["*"],
    allow_headers     = ["*"],
)


# ─────────────────────────────────────────────
# Mount Routers
# ─────────────────────────────────────────────
from growlokal.auth import router as auth_router                    # noqa: E402
from growlokal.cart import router as cart_router                    # noqa: E402
from growlokal.orders import router as orders_router                # noqa: E402
from growlokal.payment import router as payment_router              # noqa: E402
from growlokal.notifications import router as notifications_router  # noqa: E402
from growlokal.admin import router as admin_router                  # noqa: E402

app.include_router(auth_router)
app.include_router(cart_router)
app.include_router(orders_router)
app.include_router(payment_router)
app.include_router(notifications_router)
app.include_router(admin_router)


# ─────────────────────────────────────────────
# Health Check
# ─────────────────────────────────────────────
@app.get("/health", tags=["system"])
async def health():
    """Quick ping: load balancer / uptime monitor uses this."""
    return {
        "status":   "ok",
        "app":      "GrowLokal",
        "version":  VERSION,
        "env":      cfg.ENV,
        "paymongo": cfg.paymongo_ready,
        "email":    cfg.email_ready,
    }


# ─────────────────────────────────────────────
# Error Handlers
# ─────────────────────────────────────────────
@app.exception_handler(aiosqlite.Error)
async def storage_exception_handler(request, exc):
    logger.error(f"Storage error on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code = 500,
        content     = {"detail": {"message": "Storage temporarily unavailable.", "error_code": "STORAGE_ERROR"}},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    logger.error(f"Unhandled error: {exc}", exc_info=True)
    return JSONResponse(
        status_code = 500,
        content     = {"detail": "Internal server error. Our team has been notified."}
    )


# ─────────────────────────────────────────────
# Run
# ─────────────────────────────────────────────
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "growlokal.main:app",
        host    = "0.0.0.0",
        port    = 8000,
        reload  = not cfg.is_production,
        workers = 1 if not cfg.is_production else 4,
    )
