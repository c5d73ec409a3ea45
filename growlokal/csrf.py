"""
GrowLokal — csrf.py
─────────────────────────────────────────────────────────────────
Double-submit cookie CSRF guard.

  GET /api/auth/csrf-token  → sets `csrf-token` cookie, returns token
  Unsafe requests           → must echo it in `x-csrf-token`

Usage:
    @router.post("/login", dependencies=[Depends(require_csrf)])
─────────────────────────────────────────────────────────────────
"""

import hmac
import logging
import secrets

from fastapi import HTTPException, Request

from growlokal.core.config import cfg

logger = logging.getLogger("growlokal.csrf")

SAFE_METHODS = ("GET", "HEAD", "OPTIONS")
CSRF_MAX_AGE = 60 * 60 * 24


def new_csrf_token() -> str:
    return secrets.token_hex(32)


def set_csrf_cookie(response, token: str):
    response.set_cookie(
        key      = cfg.CSRF_COOKIE,
        value    = token,
        httponly = True,
        secure   = cfg.is_production,
        samesite = "strict",
        max_age  = CSRF_MAX_AGE,
        path     = "/",
    )


def csrf_ok(request: Request) -> bool:
    header = request.headers.get(cfg.CSRF_HEADER)
    cookie = request.cookies.get(cfg.CSRF_COOKIE)

    if not header or not cookie:
        logger.warning("CSRF: missing token in header or cookie")
        return False
    if not hmac.compare_digest(header.encode(), cookie.encode()):
        logger.warning("CSRF: token mismatch")
        return False
    return True


async def require_csrf(request: Request):
    """FastAPI dependency. 403 on a missing or mismatched token."""
    if request.method in SAFE_METHODS:
        return
    if cfg.is_dev and cfg.DISABLE_CSRF_CHECK:
        return
    if not csrf_ok(request):
        raise HTTPException(
            403,
            {
                "message":    "Invalid CSRF token. Please refresh the page and try again.",
                "error_code": "CSRF_INVALID",
            },
        )
