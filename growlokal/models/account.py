"""
GrowLokal — models/account.py
─────────────────────────────────────────────────────────────────
Account (credential store) table definition + dataclass.
No logic here: only structure.
─────────────────────────────────────────────────────────────────
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


# ─────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────
class Provider(str, Enum):
    EMAIL    = "email"
    GOOGLE   = "google"
    FACEBOOK = "facebook"


# ─────────────────────────────────────────────
# SQL
# ─────────────────────────────────────────────
ACCOUNTS_TABLE = """
    CREATE TABLE IF NOT EXISTS accounts (
        id                    TEXT PRIMARY KEY,
        name                  TEXT NOT NULL,
        email                 TEXT NOT NULL UNIQUE COLLATE NOCASE,
        password_hash         TEXT,
        provider              TEXT NOT NULL DEFAULT 'email',
        email_verified        INTEGER NOT NULL DEFAULT 0,
        verification_token    TEXT,
        verification_expires  TEXT,
        reset_token           TEXT,
        reset_expires         TEXT,
        reset_token_used      INTEGER NOT NULL DEFAULT 0,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        last_failed_login     TEXT,
        account_locked_until  TEXT,
        created_at            TEXT NOT NULL,
        updated_at            TEXT NOT NULL,
        last_login            TEXT,
        CHECK ((provider = 'email') = (password_hash IS NOT NULL))
    );
"""


# ─────────────────────────────────────────────
# Dataclass
# ─────────────────────────────────────────────
@dataclass
class Account:
    id:                    str
    name:                  str
    email:                 str
    password_hash:         Optional[str]     # NULL for google / facebook
    provider:              Provider
    email_verified:        bool
    verification_token:    Optional[str]
    verification_expires:  Optional[datetime]
    reset_token:           Optional[str]
    reset_expires:         Optional[datetime]
    reset_token_used:      bool
    failed_login_attempts: int
    last_failed_login:     Optional[datetime]
    account_locked_until:  Optional[datetime]
    created_at:            datetime
    updated_at:            datetime
    last_login:            Optional[datetime]

    @property
    def is_local(self) -> bool:
        return self.provider == Provider.EMAIL

    def public(self) -> dict:
        """Safe subset for API responses: never tokens or hashes."""
        return {
            "id":             self.id,
            "name":           self.name,
            "email":          self.email,
            "email_verified": self.email_verified,
            "provider":       self.provider.value,
            "created_at":     self.created_at.isoformat(),
        }
