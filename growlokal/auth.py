"""
GrowLokal — auth.py
─────────────────────────────────────────────────────────────────
Email + password authentication.

Login pipeline (order matters):
    rate limit (ip:email) → lockout → lookup → bcrypt → verified → session

Routes (all under /api/auth):
    GET  /csrf-token
    POST /register · /login · /logout
    GET  /me
    POST /send-magic-link · /verify-magic-link · /resend-verification
    POST /forgot-password · /reset-password
─────────────────────────────────────────────────────────────────
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr

from growlokal.accounts import AccountExistsError, AccountStore, normalize_email
from growlokal.core.clock import Clock, utcnow
from growlokal.core.config import cfg
from growlokal.core.security import (
    clear_session_cookie, get_current_user, make_jwt, set_session_cookie,
)
from growlokal.csrf import new_csrf_token, require_csrf, set_csrf_cookie
from growlokal.lockout import INVALID_CREDENTIALS, LockoutGuard
from growlokal.mailer import EmailSender
from growlokal.models.account import Account
from growlokal.models.rate_limit import RateLimitResult
from growlokal.passwords import check_password, hash_password, password_problems
from growlokal.ratelimit import RateLimiter, raise_if_limited, rate_key
from growlokal.tokens import AlreadyVerifiedError, TokenError, TokenService

logger = logging.getLogger("growlokal.auth")


# ─────────────────────────────────────────────
# Exceptions
# ─────────────────────────────────────────────
class AuthError(Exception):
    """Base auth exception. Carries HTTP status + machine-readable code."""
    status = 401
    code   = "AUTH_ERROR"

    def __init__(self, message: str = INVALID_CREDENTIALS):
        super().__init__(message)
        self.message = message

class InvalidCredentialsError(AuthError):
    """Unknown email or wrong password: callers can't tell which."""
    status = 401
    code   = "INVALID_CREDENTIALS"

class AccountLockedError(AuthError):
    """Too many failed logins."""
    status = 403
    code   = "ACCOUNT_LOCKED"

    def __init__(self, message: str, retry_after: int = 0):
        super().__init__(message)
        self.retry_after = retry_after

class EmailNotVerifiedError(AuthError):
    """Correct password, unverified email."""
    status = 403
    code   = "EMAIL_NOT_VERIFIED"

class LoginRateLimitedError(AuthError):
    """Rate limiter said no."""
    status = 429
    code   = "RATE_LIMITED"

    def __init__(self, result: RateLimitResult):
        super().__init__(result.message or "Too many requests.")
        self.result = result

class WeakPasswordError(AuthError):
    """Password policy violations."""
    status = 400
    code   = "WEAK_PASSWORD"

    def __init__(self, problems: List[str]):
        super().__init__("Password does not meet requirements")
        self.problems = problems

class EmailTakenError(AuthError):
    """Registration with an email that exists."""
    status = 409
    code   = "EMAIL_TAKEN"


# ─────────────────────────────────────────────
# Session
# ─────────────────────────────────────────────
@dataclass
class Session:
    token:   str
    account: Account
    days:    int
    claims:  dict = field(default_factory=dict)


def issue_session(account: Account, remember_me: bool = False) -> Session:
    days   = cfg.SESSION_DAYS if remember_me else cfg.SHORT_SESSION_DAYS
    claims = {
        "sub":            account.id,
        "email":          account.email,
        "email_verified": account.email_verified,
    }
    return Session(token=make_jwt(claims, days=days), account=account, days=days, claims=claims)


def verification_link(email: str, token: str) -> str:
    return f"{cfg.BASE_URL}/verify-email?token={token}&email={quote(email)}"


def reset_link(email: str, token: str) -> str:
    return f"{cfg.BASE_URL}/reset-password?token={token}&email={quote(email)}"


# ─────────────────────────────────────────────
# Authenticator
# ─────────────────────────────────────────────
class Authenticator:
    """
    Owns the login / register flows.
    Collaborators share db_path + clock so tests can drive time.
    """

    def __init__(self, db_path: Optional[str] = None, clock: Clock = utcnow):
        self.clock    = clock
        self.accounts = AccountStore(db_path, clock)
        self.limiter  = RateLimiter(db_path, clock)
        self.lockout  = LockoutGuard(db_path, clock)
        self.tokens   = TokenService(db_path, clock)

    async def login(self, email: str, password: str, ip: str,
                    remember_me: bool = False) -> Session:
        email = normalize_email(email)
        key   = f"{ip}:{email}"

        # 1. Rate limit
        limit = await self.limiter.check(key, "login")
        if not limit.allowed:
            raise LoginRateLimitedError(limit)

        # 2. Lockout
        lock = await self.lockout.check(email)
        if lock.is_locked:
            retry = int((lock.locked_until - self.clock()).total_seconds()) if lock.locked_until else 0
            raise AccountLockedError(lock.message, retry_after=max(retry, 0))

        # 3–4. Lookup + compare
        account = await self.accounts.get_by_email(email)
        valid = (
            account is not None
            and account.password_hash is not None
            and await asyncio.to_thread(check_password, password, account.password_hash)
        )
        if not valid:
            failure = await self.lockout.record_failure(email)
            if failure.is_locked:
                raise AccountLockedError(
                    failure.message, retry_after=cfg.LOCKOUT_MINUTES * 60
                )
            raise InvalidCredentialsError(INVALID_CREDENTIALS)

        # 5. Verified gate
        if not account.email_verified:
            raise EmailNotVerifiedError(
                "Please verify your email before logging in. "
                "Check your inbox for a verification link."
            )

        # 6. Success: forget failures, issue session
        await self.lockout.reset(email)
        await self.limiter.reset(key, "login")
        await self.accounts.touch_login(account.id)

        logger.info(f"Login: {email}")
        return issue_session(account, remember_me)

    async def register(self, name: str, email: str, password: str) -> Account:
        """
        Create an unverified local account.
        Raises WeakPasswordError / EmailTakenError.
        """
        problems = password_problems(password)
        if problems:
            raise WeakPasswordError(problems)

        password_hash = await asyncio.to_thread(hash_password, password)
        try:
            return await self.accounts.create(name, email, password_hash)
        except AccountExistsError:
            raise EmailTakenError("User with this email already exists")


# ─────────────────────────────────────────────
# Dependencies
# ─────────────────────────────────────────────
def get_authenticator() -> Authenticator:
    return Authenticator()


def get_mailer() -> EmailSender:
    return EmailSender()


def _auth_http(e: AuthError) -> HTTPException:
    detail  = {"message": e.message, "error_code": e.code}
    headers = None
    if isinstance(e, WeakPasswordError):
        detail["details"] = e.problems
    if isinstance(e, AccountLockedError):
        headers = {"Retry-After": str(e.retry_after)}
    if isinstance(e, LoginRateLimitedError):
        headers = {
            "Retry-After":           str(e.result.reset_in or 0),
            "X-RateLimit-Remaining": "0",
        }
        if e.result.reset_at:
            headers["X-RateLimit-Reset"] = e.result.reset_at.isoformat()
    return HTTPException(e.status, detail, headers=headers)


def _token_http(e: TokenError) -> HTTPException:
    return HTTPException(400, {"message": e.message, "error_code": e.code})


def _with_dev_link(body: dict, link: Optional[str]) -> dict:
    if link and cfg.show_dev_links:
        body["development_link"] = link
    return body


# ─────────────────────────────────────────────
# Request models
# ─────────────────────────────────────────────
class RegisterRequest(BaseModel):
    name:     str
    email:    EmailStr
    password: str


class LoginRequest(BaseModel):
    email:       EmailStr
    password:    str
    remember_me: bool = False


class EmailRequest(BaseModel):
    email: EmailStr


class VerifyEmailRequest(BaseModel):
    email: EmailStr
    token: str


class ResetPasswordRequest(BaseModel):
    email:        EmailStr
    token:        str
    new_password: str


# ─────────────────────────────────────────────
# Routes
# ─────────────────────────────────────────────
router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.get("/csrf-token")
async def csrf_token():
    token    = new_csrf_token()
    response = JSONResponse({"csrf_token": token})
    set_csrf_cookie(response, token)
    return response


@router.post("/register", status_code=201, dependencies=[Depends(require_csrf)])
async def register(
    body: RegisterRequest,
    request: Request,
    auth: Authenticator = Depends(get_authenticator),
    mailer: EmailSender = Depends(get_mailer),
):
    email = normalize_email(body.email)
    key   = rate_key(request, email)

    raise_if_limited(await auth.limiter.check(key, "register"), "register")

    if not body.name.strip():
        raise HTTPException(400, {"message": "Please provide your name", "error_code": "VALIDATION"})

    try:
        account = await auth.register(body.name, email, body.password)
    except AuthError as e:
        raise _auth_http(e)

    token = await auth.tokens.issue_verification(email, cfg.VERIFICATION_HOURS)
    link  = verification_link(email, token)

    # Account exists either way: a failed email is not fatal here
    result = await mailer.send("verify_email", email, {"link": link, "hours": cfg.VERIFICATION_HOURS})
    if not result.success:
        logger.error(f"Verification email failed for {email}: {result.error}")

    await auth.limiter.reset(key, "register")

    return _with_dev_link(
        {
            "message": "Account created successfully! Please check your email for a verification link.",
            "user":    account.public(),
        },
        link,
    )


@router.post("/login", dependencies=[Depends(require_csrf)])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    auth: Authenticator = Depends(get_authenticator),
):
    ip = rate_key(request)
    try:
        session = await auth.login(body.email, body.password, ip, body.remember_me)
    except AuthError as e:
        raise _auth_http(e)

    set_session_cookie(response, session.token, days=session.days)
    return {
        "message": "Login successful",
        "user":    session.account.public(),
        "token":   session.token,
    }


@router.post("/logout")
async def logout(response: Response):
    clear_session_cookie(response)
    return {"success": True}


@router.get("/me")
async def me(
    claims: dict = Depends(get_current_user),
    auth: Authenticator = Depends(get_authenticator),
):
    account = await auth.accounts.get_by_id(claims["sub"])
    if not account:
        raise HTTPException(401, "User not found.")
    return {"user": account.public()}


@router.post("/send-magic-link", dependencies=[Depends(require_csrf)])
async def send_magic_link(
    body: EmailRequest,
    auth: Authenticator = Depends(get_authenticator),
    mailer: EmailSender = Depends(get_mailer),
):
    email = normalize_email(body.email)
    generic = {"success": True, "message": "If an account needs verifying, a link has been sent."}

    try:
        token = await auth.tokens.issue_verification(email, cfg.VERIFICATION_HOURS)
    except AlreadyVerifiedError as e:
        raise _token_http(e)

    if token is None:
        return generic

    link   = verification_link(email, token)
    result = await mailer.send("verify_email", email, {"link": link, "hours": cfg.VERIFICATION_HOURS})
    if not result.success:
        raise HTTPException(500, {"message": "Failed to send verification email", "error_code": "EMAIL_FAILED"})

    return _with_dev_link(generic, link)


@router.post("/verify-magic-link", dependencies=[Depends(require_csrf)])
async def verify_magic_link(
    body: VerifyEmailRequest,
    response: Response,
    auth: Authenticator = Depends(get_authenticator),
):
    email = normalize_email(body.email)
    try:
        await auth.tokens.verify_email(email, body.token.strip())
    except TokenError as e:
        raise _token_http(e)

    account = await auth.accounts.get_by_email(email)
    session = issue_session(account)
    set_session_cookie(response, session.token, days=session.days)
    return {
        "success": True,
        "message": "Email verified successfully!",
        "user":    account.public(),
        "token":   session.token,
    }


@router.post("/resend-verification", dependencies=[Depends(require_csrf)])
async def resend_verification(
    body: EmailRequest,
    request: Request,
    auth: Authenticator = Depends(get_authenticator),
    mailer: EmailSender = Depends(get_mailer),
):
    email = normalize_email(body.email)
    raise_if_limited(
        await auth.limiter.check(rate_key(request, email), "resend-verification"),
        "resend-verification",
    )

    try:
        token = await auth.tokens.issue_verification(email, cfg.RESEND_VERIFICATION_HOURS)
    except AlreadyVerifiedError as e:
        raise _token_http(e)

    generic = {"message": "If an account exists with this email, a verification link has been sent."}
    if token is None:
        return generic

    link   = verification_link(email, token)
    result = await mailer.send(
        "verify_email", email, {"link": link, "hours": cfg.RESEND_VERIFICATION_HOURS}
    )
    if not result.success:
        raise HTTPException(500, {"message": "Failed to resend verification email. Please try again.",
                                  "error_code": "EMAIL_FAILED"})

    return _with_dev_link(generic, link)


@router.post("/forgot-password", dependencies=[Depends(require_csrf)])
async def forgot_password(
    body: EmailRequest,
    request: Request,
    auth: Authenticator = Depends(get_authenticator),
    mailer: EmailSender = Depends(get_mailer),
):
    email = normalize_email(body.email)
    raise_if_limited(
        await auth.limiter.check(rate_key(request, email), "forgot-password"),
        "forgot-password",
    )

    generic = {
        "success": True,
        "message": "If an account with that email exists, you will receive a password reset link.",
    }

    token = await auth.tokens.issue_reset(email)
    if token is None:
        return generic

    link   = reset_link(email, token)
    result = await mailer.send("password_reset", email, {"link": link})
    if not result.success:
        raise HTTPException(500, {"message": "Failed to send password reset email", "error_code": "EMAIL_FAILED"})

    return _with_dev_link(generic, link)


@router.post("/reset-password", dependencies=[Depends(require_csrf)])
async def reset_password(
    body: ResetPasswordRequest,
    auth: Authenticator = Depends(get_authenticator),
):
    problems = password_problems(body.new_password)
    if problems:
        raise _auth_http(WeakPasswordError(problems))

    password_hash = await asyncio.to_thread(hash_password, body.new_password)
    try:
        await auth.tokens.reset_password(body.email, body.token.strip(), password_hash)
    except TokenError as e:
        raise _token_http(e)

    return {
        "success": True,
        "message": "Password has been reset successfully. You can now log in with your new password.",
    }
