"""
GrowLokal — lockout.py
─────────────────────────────────────────────────────────────────
Per-account lockout after repeated failed logins.

  - 5 consecutive failures  → locked 30 minutes
  - 60 minutes w/o failure  → counter forgotten
  - Expired lock            → cleared before evaluating
  - Store errors            → treated as "not locked" (logged)

Messages never reveal whether the email exists.
─────────────────────────────────────────────────────────────────
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import aiosqlite

from growlokal.core.clock import Clock, from_iso, to_iso, utcnow
from growlokal.core.config import cfg
from growlokal.core.database import get_db

logger = logging.getLogger("growlokal.lockout")

INVALID_CREDENTIALS = "Invalid email or password. Please try again."


@dataclass
class LockoutResult:
    is_locked:       bool
    failed_attempts: int
    locked_until:    Optional[datetime] = None
    message:         Optional[str] = None


def _plural(n: int, word: str) -> str:
    return f"{n} {word}{'' if n == 1 else 's'}"


class LockoutGuard:

    def __init__(self, db_path: Optional[str] = None, clock: Clock = utcnow):
        self.db_path = db_path
        self.clock   = clock

    async def _load(self, db, email: str):
        async with db.execute(
            """SELECT failed_login_attempts, last_failed_login, account_locked_until
               FROM accounts WHERE email = ?""",
            (email.strip().lower(),)
        ) as cur:
            return await cur.fetchone()

    async def check(self, email: str) -> LockoutResult:
        try:
            return await self._check(email)
        except aiosqlite.Error:
            logger.error("Lockout check failed, treating as unlocked", exc_info=True)
            return LockoutResult(is_locked=False, failed_attempts=0)

    async def _check(self, email: str) -> LockoutResult:
        now   = self.clock()
        email = email.strip().lower()

        async with get_db(self.db_path) as db:
            row = await self._load(db, email)
            if row is None:
                return LockoutResult(is_locked=False, failed_attempts=0)

            attempts     = int(row["failed_login_attempts"])
            last_failed  = from_iso(row["last_failed_login"])
            locked_until = from_iso(row["account_locked_until"])

            if locked_until and locked_until > now:
                minutes = math.ceil((locked_until - now).total_seconds() / 60)
                return LockoutResult(
                    is_locked       = True,
                    failed_attempts = attempts,
                    locked_until    = locked_until,
                    message         = (
                        "Too many failed login attempts. "
                        f"Please try again in {_plural(minutes, 'minute')}."
                    ),
                )

            stale_lock = locked_until is not None
            stale_fail = (
                last_failed is not None
                and now - last_failed > timedelta(minutes=cfg.RESET_FAILED_AFTER_MINUTES)
            )
            if stale_lock or stale_fail:
                await db.execute(
                    """UPDATE accounts
                       SET failed_login_attempts = 0, last_failed_login = NULL,
                           account_locked_until = NULL
                       WHERE email = ?""",
                    (email,)
                )
                await db.commit()
                attempts = 0

        return LockoutResult(is_locked=False, failed_attempts=attempts)

    async def record_failure(self, email: str) -> LockoutResult:
        """
        Count one failed login. Unknown emails are a no-op that still
        returns the generic message.
        """
        try:
            return await self._record_failure(email)
        except aiosqlite.Error:
            logger.error("Recording failed login failed", exc_info=True)
            return LockoutResult(is_locked=False, failed_attempts=0, message=INVALID_CREDENTIALS)

    async def _record_failure(self, email: str) -> LockoutResult:
        now   = self.clock()
        email = email.strip().lower()

        async with get_db(self.db_path) as db:
            row = await self._load(db, email)
            if row is None:
                return LockoutResult(is_locked=False, failed_attempts=0, message=INVALID_CREDENTIALS)

            attempts     = int(row["failed_login_attempts"]) + 1
            locked_until = None
            if attempts >= cfg.MAX_FAILED_LOGINS:
                locked_until = now + timedelta(minutes=cfg.LOCKOUT_MINUTES)

            await db.execute(
                """UPDATE accounts
                   SET failed_login_attempts = ?, last_failed_login = ?,
                       account_locked_until = COALESCE(?, account_locked_until)
                   WHERE email = ?""",
                (attempts, to_iso(now), to_iso(locked_until), email)
            )
            await db.commit()

        if locked_until:
            logger.warning(f"Account locked after {attempts} failed logins: {email}")
            return LockoutResult(
                is_locked       = True,
                failed_attempts = attempts,
                locked_until    = locked_until,
                message         = (
                    "Too many failed login attempts. Your account has been "
                    "temporarily locked for security. Please try again in "
                    f"{cfg.LOCKOUT_MINUTES} minutes."
                ),
            )

        return LockoutResult(is_locked=False, failed_attempts=attempts, message=INVALID_CREDENTIALS)

    async def reset(self, email: str):
        """Called unconditionally after a successful login."""
        try:
            await self.unlock(email)
        except aiosqlite.Error:
            logger.error("Resetting failed logins failed", exc_info=True)

    async def unlock(self, email: str) -> bool:
        """Admin unlock. True if a row was changed."""
        async with get_db(self.db_path) as db:
            cur = await db.execute(
                """UPDATE accounts
                   SET failed_login_attempts = 0, last_failed_login = NULL,
                       account_locked_until = NULL
                   WHERE email = ?
                     AND (failed_login_attempts > 0 OR account_locked_until IS NOT NULL)""",
                (email.strip().lower(),)
            )
            await db.commit()
            return cur.rowcount > 0

    async def status(self, email: str) -> Optional[dict]:
        """Raw counters for the admin view. None if no such account."""
        async with get_db(self.db_path) as db:
            row = await self._load(db, email)
        if row is None:
            return None
        locked_until = from_iso(row["account_locked_until"])
        return {
            "email":                 email.strip().lower(),
            "failed_login_attempts": int(row["failed_login_attempts"]),
            "last_failed_login":     row["last_failed_login"],
            "account_locked_until":  row["account_locked_until"],
            "is_locked":             bool(locked_until and locked_until > self.clock()),
        }
