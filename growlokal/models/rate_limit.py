"""
GrowLokal — models/rate_limit.py
─────────────────────────────────────────────────────────────────
Rate limit records + per-endpoint policy table.
No logic here: only structure.
─────────────────────────────────────────────────────────────────
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


# ─────────────────────────────────────────────
# SQL
# ─────────────────────────────────────────────
RATE_LIMITS_TABLE = """
    CREATE TABLE IF NOT EXISTS rate_limits (
        key           TEXT NOT NULL,
        endpoint      TEXT NOT NULL,
        attempts      INTEGER NOT NULL DEFAULT 1,
        first_attempt TEXT NOT NULL,
        last_attempt  TEXT NOT NULL,
        blocked_until TEXT,
        created_at    TEXT NOT NULL,
        PRIMARY KEY (key, endpoint)
    );

    CREATE INDEX IF NOT EXISTS idx_rate_limits_created
        ON rate_limits(created_at);
"""


# ─────────────────────────────────────────────
# Policies
# ─────────────────────────────────────────────
@dataclass(frozen=True)
class RateLimitPolicy:
    max_attempts:   int
    window_minutes: int
    block_minutes:  int


# endpoint → policy (single source of truth)
RATE_LIMIT_POLICIES = {
    "login":               RateLimitPolicy(max_attempts=5, window_minutes=15, block_minutes=30),
    "signup":              RateLimitPolicy(max_attempts=3, window_minutes=60, block_minutes=60),
    "register":            RateLimitPolicy(max_attempts=3, window_minutes=60, block_minutes=60),
    "forgot-password":     RateLimitPolicy(max_attempts=3, window_minutes=60, block_minutes=60),
    "resend-verification": RateLimitPolicy(max_attempts=3, window_minutes=60, block_minutes=60),
}


# ─────────────────────────────────────────────
# Dataclasses
# ─────────────────────────────────────────────
@dataclass
class RateLimitRecord:
    key:           str
    endpoint:      str
    attempts:      int
    first_attempt: datetime
    last_attempt:  datetime
    blocked_until: Optional[datetime]
    created_at:    datetime


@dataclass
class RateLimitResult:
    allowed:   bool
    remaining: int
    reset_at:  Optional[datetime]
    reset_in:  Optional[int] = None    # seconds until the caller may retry
    message:   Optional[str] = None
