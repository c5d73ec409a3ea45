"""
GrowLokal — accounts.py
─────────────────────────────────────────────────────────────────
Credential store. Accounts are keyed by lower-cased email and are
never hard-deleted.
─────────────────────────────────────────────────────────────────
"""

import logging
import secrets
from typing import Optional

import aiosqlite

from growlokal.core.clock import Clock, from_iso, to_iso, utcnow
from growlokal.core.database import get_db
from growlokal.models.account import Account, Provider

logger = logging.getLogger("growlokal.accounts")


# ─────────────────────────────────────────────
# Exceptions
# ─────────────────────────────────────────────
class AccountError(Exception):
    """Base account exception."""

class AccountExistsError(AccountError):
    """Email already registered."""

class AccountNotFoundError(AccountError):
    """No account for this email / id."""


# ─────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────
def normalize_email(email: str) -> str:
    return email.strip().lower()


def _new_id() -> str:
    return secrets.token_urlsafe(12)


def _row_to_account(row) -> Account:
    return Account(
        id                    = row["id"],
        name                  = row["name"],
        email                 = row["email"],
        password_hash         = row["password_hash"],
        provider              = Provider(row["provider"]),
        email_verified        = bool(row["email_verified"]),
        verification_token    = row["verification_token"],
        verification_expires  = from_iso(row["verification_expires"]),
        reset_token           = row["reset_token"],
        reset_expires         = from_iso(row["reset_expires"]),
        reset_token_used      = bool(row["reset_token_used"]),
        failed_login_attempts = int(row["failed_login_attempts"]),
        last_failed_login     = from_iso(row["last_failed_login"]),
        account_locked_until  = from_iso(row["account_locked_until"]),
        created_at            = from_iso(row["created_at"]),
        updated_at            = from_iso(row["updated_at"]),
        last_login            = from_iso(row["last_login"]),
    )


# ─────────────────────────────────────────────
# AccountStore
# ─────────────────────────────────────────────
class AccountStore:

    def __init__(self, db_path: Optional[str] = None, clock: Clock = utcnow):
        self.db_path = db_path
        self.clock   = clock

    async def get_by_email(self, email: str) -> Optional[Account]:
        async with get_db(self.db_path) as db:
            async with db.execute(
                "SELECT * FROM accounts WHERE email = ?", (normalize_email(email),)
            ) as cur:
                row = await cur.fetchone()
        return _row_to_account(row) if row else None

    async def get_by_id(self, account_id: str) -> Optional[Account]:
        async with get_db(self.db_path) as db:
            async with db.execute(
                "SELECT * FROM accounts WHERE id = ?", (account_id,)
            ) as cur:
                row = await cur.fetchone()
        return _row_to_account(row) if row else None

    async def create(
        self,
        name: str,
        email: str,
        password_hash: Optional[str],
        provider: Provider = Provider.EMAIL,
        email_verified: bool = False,
    ) -> Account:
        """
        Insert a new account.
        Raises AccountExistsError if the email is taken.
        """
        now   = to_iso(self.clock())
        email = normalize_email(email)

        try:
            async with get_db(self.db_path) as db:
                await db.execute(
                    """INSERT INTO accounts
                       (id, name, email, password_hash, provider, email_verified,
                        created_at, updated_at)
                       VALUES (?,?,?,?,?,?,?,?)""",
                    (_new_id(), name.strip(), email, password_hash,
                     provider.value, int(email_verified), now, now)
                )
                await db.commit()
        except aiosqlite.IntegrityError:
            raise AccountExistsError(f"Email already registered: {email}")

        logger.info(f"Account created: {email} ({provider.value})")
        return await self.get_by_email(email)

    async def touch_login(self, account_id: str):
        now = to_iso(self.clock())
        async with get_db(self.db_path) as db:
            await db.execute(
                "UPDATE accounts SET last_login = ?, updated_at = ? WHERE id = ?",
                (now, now, account_id)
            )
            await db.commit()
