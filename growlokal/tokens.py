"""
GrowLokal — tokens.py
─────────────────────────────────────────────────────────────────
Email-verification and password-reset tokens.

Tokens are 64 hex chars (secrets.token_hex(32)), stored on the
account row, compared in constant time.

    Verification: issue → verify (token nulled on success)
    Reset:        issue → reset  (token kept, used=1, same UPDATE
                                  as the password change)

Error codes the client branches on:
    INVALID_TOKEN | TOKEN_EXPIRED | TOKEN_USED | ALREADY_VERIFIED
─────────────────────────────────────────────────────────────────
"""

import hmac
import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional

from growlokal.core.clock import Clock, from_iso, to_iso, utcnow
from growlokal.core.config import cfg
from growlokal.core.database import get_db
from growlokal.models.account import Provider

logger = logging.getLogger("growlokal.tokens")


# ─────────────────────────────────────────────
# Exceptions
# ─────────────────────────────────────────────
class TokenError(Exception):
    """Base token exception."""
    code    = "INVALID_TOKEN"
    message = "Invalid or unknown token."

class InvalidTokenError(TokenError):
    """No match, or no token on record."""
    code    = "INVALID_TOKEN"
    message = "Invalid token. Please request a new link."

class TokenExpiredError(TokenError):
    """Token matched but is past its expiry."""
    code    = "TOKEN_EXPIRED"
    message = "This link has expired. Please request a new one."

class TokenUsedError(TokenError):
    """Reset token was already consumed."""
    code    = "TOKEN_USED"
    message = "This password reset link has already been used. Please request a new one."

class AlreadyVerifiedError(TokenError):
    """Email is verified already: nothing to do."""
    code    = "ALREADY_VERIFIED"
    message = "Email is already verified. You can log in now."


# ─────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────
def new_token() -> str:
    return secrets.token_hex(32)


def tokens_match(stored: Optional[str], given: Optional[str]) -> bool:
    if not stored or not given:
        return False
    return hmac.compare_digest(stored.encode(), given.encode())


# ─────────────────────────────────────────────
# TokenService
# ─────────────────────────────────────────────
class TokenService:

    def __init__(self, db_path: Optional[str] = None, clock: Clock = utcnow):
        self.db_path = db_path
        self.clock   = clock

    # ─── Verification ─────────────────────────

    async def issue_verification(self, email: str, hours: int = None) -> Optional[str]:
        """
        New verification token for an unverified account.
        Returns None for unknown emails.
        Raises AlreadyVerifiedError if there's nothing to verify.
        """
        email   = email.strip().lower()
        now     = self.clock()
        expires = now + timedelta(hours=hours or cfg.VERIFICATION_HOURS)
        token   = new_token()

        async with get_db(self.db_path) as db:
            async with db.execute(
                "SELECT email_verified FROM accounts WHERE email = ?", (email,)
            ) as cur:
                row = await cur.fetchone()
            if row is None:
                return None
            if row["email_verified"]:
                raise AlreadyVerifiedError(email)

            await db.execute(
                """UPDATE accounts
                   SET verification_token = ?, verification_expires = ?, updated_at = ?
                   WHERE email = ?""",
                (token, to_iso(expires), to_iso(now), email)
            )
            await db.commit()

        if cfg.is_dev:
            logger.info(f"[dev] verification token for {email}: {token}")
        return token

    async def verify_email(self, email: str, token: str) -> str:
        """
        Consume a verification token. Returns the account id.
        Raises InvalidTokenError / TokenExpiredError / AlreadyVerifiedError.
        """
        email = email.strip().lower()
        now   = self.clock()

        async with get_db(self.db_path) as db:
            async with db.execute(
                """SELECT id, email_verified, verification_token, verification_expires
                   FROM accounts WHERE email = ?""",
                (email,)
            ) as cur:
                row = await cur.fetchone()

            if row is None:
                raise InvalidTokenError(email)
            if row["email_verified"]:
                raise AlreadyVerifiedError(email)
            if not tokens_match(row["verification_token"], token):
                raise InvalidTokenError(email)

            expires = from_iso(row["verification_expires"])
            if expires is None or expires < now:
                raise TokenExpiredError(email)

            # Conditional on the same token so a concurrent verify can't double-apply
            cur = await db.execute(
                """UPDATE accounts
                   SET email_verified = 1, verification_token = NULL,
                       verification_expires = NULL, updated_at = ?
                   WHERE id = ? AND verification_token = ?""",
                (to_iso(now), row["id"], token)
            )
            await db.commit()
            if cur.rowcount == 0:
                raise InvalidTokenError(email)

        logger.info(f"Email verified: {email}")
        return row["id"]

    # ─── Password reset ───────────────────────

    async def issue_reset(self, email: str) -> Optional[str]:
        """
        New reset token, only for verified local accounts.
        Returns None otherwise so the caller keeps one uniform answer.
        """
        email   = email.strip().lower()
        now     = self.clock()
        expires = now + timedelta(hours=cfg.RESET_TOKEN_HOURS)
        token   = new_token()

        async with get_db(self.db_path) as db:
            cur = await db.execute(
                """UPDATE accounts
                   SET reset_token = ?, reset_expires = ?, reset_token_used = 0,
                       updated_at = ?
                   WHERE email = ? AND email_verified = 1 AND provider = ?""",
                (token, to_iso(expires), to_iso(now), email, Provider.EMAIL.value)
            )
            await db.commit()
            if cur.rowcount == 0:
                return None

        if cfg.is_dev:
            logger.info(f"[dev] reset token for {email}: {token}")
        return token

    async def reset_password(self, email: str, token: str, new_password_hash: str) -> str:
        """
        Check order: match → used → expiry.
        Password change + used flag land in ONE conditional UPDATE.
        Also clears lockout counters. Returns the account id.
        """
        email = email.strip().lower()
        now   = self.clock()

        async with get_db(self.db_path) as db:
            async with db.execute(
                """SELECT id, reset_token, reset_expires, reset_token_used
                   FROM accounts WHERE email = ?""",
                (email,)
            ) as cur:
                row = await cur.fetchone()

            if row is None or not tokens_match(row["reset_token"], token):
                raise InvalidTokenError(email)
            if row["reset_token_used"]:
                raise TokenUsedError(email)

            expires: Optional[datetime] = from_iso(row["reset_expires"])
            if expires is None or expires < now:
                raise TokenExpiredError(email)

            cur = await db.execute(
                """UPDATE accounts
                   SET password_hash = ?, reset_token_used = 1,
                       failed_login_attempts = 0, last_failed_login = NULL,
                       account_locked_until = NULL, updated_at = ?
                   WHERE id = ? AND reset_token = ? AND reset_token_used = 0""",
                (new_password_hash, to_iso(now), row["id"], token)
            )
            await db.commit()
            if cur.rowcount == 0:
                # Lost the race to a concurrent reset with the same token
                raise TokenUsedError(email)

        logger.info(f"Password reset for {email}")
        return row["id"]
