"""
GrowLokal — models/notification.py
─────────────────────────────────────────────────────────────────
Append-only notification feed, one per identity.
─────────────────────────────────────────────────────────────────
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class NotificationType(str, Enum):
    ORDER    = "order"
    EVENT    = "event"
    ACTIVITY = "activity"


NOTIFICATIONS_TABLE = """
    CREATE TABLE IF NOT EXISTS notifications (
        id          TEXT PRIMARY KEY,
        owner       TEXT NOT NULL,
        type        TEXT NOT NULL DEFAULT 'activity',
        title       TEXT NOT NULL,
        description TEXT NOT NULL,
        metadata    TEXT NOT NULL DEFAULT '{}',
        read        INTEGER NOT NULL DEFAULT 0,
        created_at  TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_notifications_owner
        ON notifications(owner, created_at DESC);
"""


@dataclass
class Notification:
    id:          str
    owner:       str
    type:        NotificationType
    title:       str
    description: str
    created_at:  datetime
    read:        bool = False
    metadata:    dict = field(default_factory=dict)
