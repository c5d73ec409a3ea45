"""
GrowLokal — ratelimit.py
─────────────────────────────────────────────────────────────────
Fixed-window rate limiter with a block period, persisted per
(key, endpoint).

  - Block active          → reject, report time left
  - Window elapsed        → counter back to 1, new window
  - Count > max_attempts  → block for block_minutes, reject
  - Store unreachable     → allow (fail open) + log

Records older than RATE_LIMIT_RETENTION_HOURS are swept by
purge_expired().

Usage:
    limiter = RateLimiter()
    result  = await limiter.check(f"{ip}:{email}", "login")
    raise_if_limited(result, "login")
    ...
    await limiter.reset(f"{ip}:{email}", "login")   # after success
─────────────────────────────────────────────────────────────────
"""

import logging
import math
from datetime import timedelta
from typing import Optional

import aiosqlite
from fastapi import HTTPException, Request

from growlokal.core.clock import Clock, from_iso, to_iso, utcnow
from growlokal.core.config import cfg
from growlokal.core.database import get_db
from growlokal.models.rate_limit import RATE_LIMIT_POLICIES, RateLimitRecord, RateLimitResult

logger = logging.getLogger("growlokal.ratelimit")

UNLIMITED = 999


# ─────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────
def client_ip(request: Request) -> str:
    """
    First hop of X-Forwarded-For, then X-Real-IP, then the socket peer.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def rate_key(request: Request, extra: Optional[str] = None) -> str:
    ip = client_ip(request)
    return f"{ip}:{extra.strip().lower()}" if extra else ip


def _row_to_record(row) -> RateLimitRecord:
    return RateLimitRecord(
        key           = row["key"],
        endpoint      = row["endpoint"],
        attempts      = int(row["attempts"]),
        first_attempt = from_iso(row["first_attempt"]),
        last_attempt  = from_iso(row["last_attempt"]),
        blocked_until = from_iso(row["blocked_until"]),
        created_at    = from_iso(row["created_at"]),
    )


def raise_if_limited(result: RateLimitResult, endpoint: str):
    """Translate a rejected check into a 429 with retry hints."""
    if result.allowed:
        return

    policy = RATE_LIMIT_POLICIES.get(endpoint)
    headers = {
        "Retry-After":           str(result.reset_in or 0),
        "X-RateLimit-Remaining": "0",
    }
    if policy:
        headers["X-RateLimit-Limit"] = str(policy.max_attempts)
    if result.reset_at:
        headers["X-RateLimit-Reset"] = result.reset_at.isoformat()

    raise HTTPException(
        status_code = 429,
        detail      = {
            "message":    result.message or "Too many requests.",
            "error_code": "RATE_LIMITED",
            "reset_in":   result.reset_in,
        },
        headers     = headers,
    )


# ─────────────────────────────────────────────
# RateLimiter
# ─────────────────────────────────────────────
class RateLimiter:
    """
    All rate-limit operations.
    Every method opens its own connection.
    """

    def __init__(self, db_path: Optional[str] = None, clock: Clock = utcnow):
        self.db_path = db_path
        self.clock   = clock

    async def check(self, key: str, endpoint: str) -> RateLimitResult:
        policy = RATE_LIMIT_POLICIES.get(endpoint)
        if policy is None:
            return RateLimitResult(allowed=True, remaining=UNLIMITED, reset_at=None)

        try:
            return await self._check(key, endpoint, policy)
        except aiosqlite.Error:
            logger.error(f"Rate limit check failed for {endpoint}, allowing", exc_info=True)
            return RateLimitResult(allowed=True, remaining=UNLIMITED, reset_at=None)

    async def _check(self, key, endpoint, policy) -> RateLimitResult:
        now    = self.clock()
        window = timedelta(minutes=policy.window_minutes)

        async with get_db(self.db_path) as db:
            await self._purge(db, now)

            async with db.execute(
                "SELECT * FROM rate_limits WHERE key = ? AND endpoint = ?",
                (key, endpoint)
            ) as cur:
                row = await cur.fetchone()

            # ── First attempt ─────────────────────
            if row is None:
                await db.execute(
                    """INSERT INTO rate_limits
                       (key, endpoint, attempts, first_attempt, last_attempt, blocked_until, created_at)
                       VALUES (?,?,?,?,?,?,?)""",
                    (key, endpoint, 1, to_iso(now), to_iso(now), None, to_iso(now))
                )
                await db.commit()
                return RateLimitResult(
                    allowed   = True,
                    remaining = policy.max_attempts - 1,
                    reset_at  = now + window,
                )

            record = _row_to_record(row)

            # ── Currently blocked ─────────────────
            if record.blocked_until and record.blocked_until > now:
                reset_in = math.ceil((record.blocked_until - now).total_seconds())
                return RateLimitResult(
                    allowed   = False,
                    remaining = 0,
                    reset_at  = record.blocked_until,
                    reset_in  = reset_in,
                    message   = (
                        "Too many attempts. Please try again after "
                        f"{record.blocked_until.strftime('%H:%M:%S')} UTC."
                    ),
                )

            # ── Window elapsed → start over ───────
            if record.first_attempt < now - window:
                await db.execute(
                    """UPDATE rate_limits
                       SET attempts = 1, first_attempt = ?, last_attempt = ?, blocked_until = NULL
                       WHERE key = ? AND endpoint = ?""",
                    (to_iso(now), to_iso(now), key, endpoint)
                )
                await db.commit()
                return RateLimitResult(
                    allowed   = True,
                    remaining = policy.max_attempts - 1,
                    reset_at  = now + window,
                )

            # ── Count this attempt ────────────────
            attempts = record.attempts + 1

            if attempts > policy.max_attempts:
                blocked_until = now + timedelta(minutes=policy.block_minutes)
                await db.execute(
                    """UPDATE rate_limits
                       SET attempts = ?, last_attempt = ?, blocked_until = ?
                       WHERE key = ? AND endpoint = ?""",
                    (attempts, to_iso(now), to_iso(blocked_until), key, endpoint)
                )
                await db.commit()
                logger.warning(f"Rate limit hit: {endpoint} key={key}, blocked {policy.block_minutes}m")
                return RateLimitResult(
                    allowed   = False,
                    remaining = 0,
                    reset_at  = blocked_until,
                    reset_in  = policy.block_minutes * 60,
                    message   = (
                        "Rate limit exceeded. You have been blocked for "
                        f"{policy.block_minutes} minutes."
                    ),
                )

            await db.execute(
                """UPDATE rate_limits
                   SET attempts = ?, last_attempt = ?
                   WHERE key = ? AND endpoint = ?""",
                (attempts, to_iso(now), key, endpoint)
            )
            await db.commit()

        return RateLimitResult(
            allowed   = True,
            remaining = policy.max_attempts - attempts,
            reset_at  = record.first_attempt + window,
        )

    async def reset(self, key: str, endpoint: str):
        """Forget the record entirely (after a verified success)."""
        try:
            async with get_db(self.db_path) as db:
                await db.execute(
                    "DELETE FROM rate_limits WHERE key = ? AND endpoint = ?",
                    (key, endpoint)
                )
                await db.commit()
        except aiosqlite.Error:
            logger.error(f"Rate limit reset failed for {endpoint}", exc_info=True)

    async def get(self, key: str, endpoint: str) -> Optional[RateLimitRecord]:
        async with get_db(self.db_path) as db:
            async with db.execute(
                "SELECT * FROM rate_limits WHERE key = ? AND endpoint = ?",
                (key, endpoint)
            ) as cur:
                row = await cur.fetchone()
        return _row_to_record(row) if row else None

    async def purge_expired(self) -> int:
        """Delete records past the retention period. Returns rows removed."""
        async with get_db(self.db_path) as db:
            removed = await self._purge(db, self.clock())
            await db.commit()
        if removed:
            logger.info(f"Purged {removed} expired rate limit records")
        return removed

    async def _purge(self, db, now) -> int:
        cutoff = now - timedelta(hours=cfg.RATE_LIMIT_RETENTION_HOURS)
        cur = await db.execute(
            "DELETE FROM rate_limits WHERE created_at < ?", (to_iso(cutoff),)
        )
        return cur.rowcount
