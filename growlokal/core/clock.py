"""
GrowLokal — core/clock.py
─────────────────────────────────────────────────────────────────
Time helpers. Every timestamp stored is UTC ISO-8601.

Services take a `clock` callable (default utcnow) so tests can
move time forward without sleeping.
─────────────────────────────────────────────────────────────────
"""

from datetime import datetime, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
