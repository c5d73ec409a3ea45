"""
GrowLokal — core/security.py
─────────────────────────────────────────────────────────────────
All JWT, session-cookie and identity helpers in one place.

Usage:
    from growlokal.core.security import make_jwt, get_current_user

    # In a route:
    claims = await get_current_user(request)

    # Create a session token:
    token = make_jwt({"sub": account_id, "email": email}, days=30)
─────────────────────────────────────────────────────────────────
"""

import logging
import secrets
from datetime import timedelta
from typing import Optional

from fastapi import Request, HTTPException
from jose import JWTError, jwt

from growlokal.core.clock import utcnow
from growlokal.core.config import cfg
from growlokal.models.identity import GuestIdentity, Identity, UserIdentity

logger = logging.getLogger("growlokal.security")

GUEST_PREFIX = "guest_"


# ─────────────────────────────────────────────
# JWT
# ─────────────────────────────────────────────
def make_jwt(payload: dict, days: int = None, minutes: int = None) -> str:
    """
    Create a signed JWT.

    Examples:
        make_jwt({"sub": account_id}, days=30)     # remember-me session
        make_jwt({"sub": account_id}, days=1)      # default session
    """
    if days:
        expires = utcnow() + timedelta(days=days)
    elif minutes:
        expires = utcnow() + timedelta(minutes=minutes)
    else:
        expires = utcnow() + timedelta(days=cfg.SHORT_SESSION_DAYS)

    data = {**payload, "exp": expires}
    return jwt.encode(data, cfg.JWT_SECRET, algorithm=cfg.ALGORITHM)


def decode_jwt(token: str) -> dict:
    """
    Decode and verify a JWT.
    Raises JWTError if invalid or expired.
    """
    return jwt.decode(token, cfg.JWT_SECRET, algorithms=[cfg.ALGORITHM])


# ─────────────────────────────────────────────
# Request helpers
# ─────────────────────────────────────────────
def get_token_from_request(request: Request) -> Optional[str]:
    """
    Extract JWT from:
    1. Cookie: growlokal_session
    2. Header: Authorization: Bearer <token>
    Returns None if not found.
    """
    token = request.cookies.get(cfg.SESSION_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[len("Bearer "):]
    return token or None


async def get_current_user(request: Request) -> dict:
    """
    FastAPI dependency: returns the session claims
    ({"sub", "email", "email_verified", "exp"}).

    Raises 401 if:
        - No token found
        - Token is invalid or expired
        - Token has no 'sub' / 'email' field
    """
    token = get_token_from_request(request)

    if not token:
        raise HTTPException(401, "Not authenticated. Please log in.")

    try:
        payload = decode_jwt(token)
    except JWTError as e:
        logger.warning(f"JWT decode failed: {e}")
        raise HTTPException(401, "Session expired. Please log in again.")

    if not payload.get("sub") or not payload.get("email"):
        raise HTTPException(401, "Invalid token payload.")
    return payload


async def get_current_user_optional(request: Request) -> Optional[dict]:
    """
    Same as get_current_user but returns None instead of raising 401.
    Use for routes that work for both logged-in users and guests.
    """
    try:
        return await get_current_user(request)
    except HTTPException:
        return None


async def require_admin(request: Request) -> dict:
    """Session email must be listed in ADMIN_EMAILS."""
    claims = await get_current_user(request)
    if claims["email"].lower() not in cfg.ADMIN_EMAILS:
        raise HTTPException(403, "Admin access required.")
    return claims


# ─────────────────────────────────────────────
# Identity (user wins over guest)
# ─────────────────────────────────────────────
def new_guest_token() -> str:
    return GUEST_PREFIX + secrets.token_hex(16)


async def resolve_identity(request: Request) -> Optional[Identity]:
    """
    Logged-in user → UserIdentity(email)
    Else guest cookie → GuestIdentity(token)
    Else None.
    """
    claims = await get_current_user_optional(request)
    if claims:
        return UserIdentity(claims["email"])

    guest = request.cookies.get(cfg.GUEST_CART_COOKIE)
    if guest and guest.startswith(GUEST_PREFIX):
        return GuestIdentity(guest)
    return None


# ─────────────────────────────────────────────
# Cookie helpers
# ─────────────────────────────────────────────
def set_session_cookie(response, token: str, days: int = None):
    """Set the JWT as an HTTP-only secure cookie."""
    response.set_cookie(
        key      = cfg.SESSION_COOKIE,
        value    = token,
        httponly = True,
        secure   = cfg.is_production,   # HTTPS only in prod
        samesite = "lax",
        max_age  = (days or cfg.SHORT_SESSION_DAYS) * 86400,
    )


def clear_session_cookie(response):
    """Delete the session cookie (logout)."""
    response.delete_cookie(cfg.SESSION_COOKIE)


def set_guest_cookie(response, token: str):
    response.set_cookie(
        key      = cfg.GUEST_CART_COOKIE,
        value    = token,
        httponly = True,
        secure   = cfg.is_production,
        samesite = "lax",
        max_age  = cfg.CART_TTL_DAYS * 86400,
    )


def clear_guest_cookie(response):
    response.delete_cookie(cfg.GUEST_CART_COOKIE)
