"""
GrowLokal — notifications.py
─────────────────────────────────────────────────────────────────
Per-user notification feed.

Routes (all under /api/notifications):
    GET  /              : newest first, paginated
    GET  /unread-count
    POST /mark-read     : specific ids, or everything
─────────────────────────────────────────────────────────────────
"""

import json
import logging
import secrets
from typing import List, Optional

import aiosqlite
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from growlokal.core.clock import Clock, from_iso, to_iso, utcnow
from growlokal.core.database import get_db
from growlokal.core.security import get_current_user
from growlokal.csrf import require_csrf
from growlokal.models.notification import Notification, NotificationType

logger = logging.getLogger("growlokal.notifications")


def _row_to_notification(row) -> Notification:
    return Notification(
        id          = row["id"],
        owner       = row["owner"],
        type        = NotificationType(row["type"]),
        title       = row["title"],
        description = row["description"],
        created_at  = from_iso(row["created_at"]),
        read        = bool(row["read"]),
        metadata    = json.loads(row["metadata"] or "{}"),
    )


def _to_dict(n: Notification) -> dict:
    return {
        "id":          n.id,
        "type":        n.type.value,
        "title":       n.title,
        "description": n.description,
        "metadata":    n.metadata,
        "read":        n.read,
        "created_at":  n.created_at.isoformat(),
    }


# ─────────────────────────────────────────────
# NotificationService
# ─────────────────────────────────────────────
class NotificationService:

    def __init__(self, db_path: Optional[str] = None, clock: Clock = utcnow):
        self.db_path = db_path
        self.clock   = clock

    async def create(
        self,
        owner: str,
        type: NotificationType,
        title: str,
        description: str,
        metadata: Optional[dict] = None,
    ) -> str:
        nid = secrets.token_hex(12)
        async with get_db(self.db_path) as db:
            await db.execute(
                """INSERT INTO notifications
                   (id, owner, type, title, description, metadata, read, created_at)
                   VALUES (?,?,?,?,?,?,0,?)""",
                (nid, owner, type.value, title, description,
                 json.dumps(metadata or {}), to_iso(self.clock()))
            )
            await db.commit()
        return nid

    async def notify(self, owner: str, type: NotificationType, title: str,
                     description: str, metadata: Optional[dict] = None):
        """Best-effort create: a failure is logged, never raised."""
        try:
            await self.create(owner, type, title, description, metadata)
        except aiosqlite.Error:
            logger.error(f"Notification '{title}' for {owner} not stored", exc_info=True)

    async def list(self, owner: str, limit: int = 20, offset: int = 0,
                   unread_only: bool = False) -> List[Notification]:
        sql = "SELECT * FROM notifications WHERE owner = ?"
        if unread_only:
            sql += " AND read = 0"
        sql += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
        async with get_db(self.db_path) as db:
            async with db.execute(sql, (owner, limit, offset)) as cur:
                rows = await cur.fetchall()
        return [_row_to_notification(r) for r in rows]

    async def unread_count(self, owner: str) -> int:
        async with get_db(self.db_path) as db:
            async with db.execute(
                "SELECT COUNT(*) FROM notifications WHERE owner = ? AND read = 0", (owner,)
            ) as cur:
                row = await cur.fetchone()
        return int(row[0])

    async def mark_read(self, owner: str, ids: Optional[List[str]] = None) -> int:
        """Mark the given ids (or all) read. Only the owner's rows are touched."""
        async with get_db(self.db_path) as db:
            if ids:
                marks = ",".join("?" for _ in ids)
                cur = await db.execute(
                    f"UPDATE notifications SET read = 1 WHERE owner = ? AND id IN ({marks})",
                    (owner, *ids)
                )
            else:
                cur = await db.execute(
                    "UPDATE notifications SET read = 1 WHERE owner = ? AND read = 0", (owner,)
                )
            await db.commit()
            return cur.rowcount


# ─────────────────────────────────────────────
# Routes
# ─────────────────────────────────────────────
router = APIRouter(prefix="/api/notifications", tags=["notifications"])


def get_notification_service() -> NotificationService:
    return NotificationService()


class MarkReadRequest(BaseModel):
    ids: Optional[List[str]] = None


@router.get("")
async def list_notifications(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    unread_only: bool = False,
    claims: dict = Depends(get_current_user),
    svc: NotificationService = Depends(get_notification_service),
):
    owner = claims["email"].lower()
    items = await svc.list(owner, limit, offset, unread_only)
    return {
        "notifications": [_to_dict(n) for n in items],
        "unread_count":  await svc.unread_count(owner),
    }


@router.get("/unread-count")
async def unread_count(
    claims: dict = Depends(get_current_user),
    svc: NotificationService = Depends(get_notification_service),
):
    return {"count": await svc.unread_count(claims["email"].lower())}


@router.post("/mark-read", dependencies=[Depends(require_csrf)])
async def mark_read(
    body: MarkReadRequest,
    claims: dict = Depends(get_current_user),
    svc: NotificationService = Depends(get_notification_service),
):
    updated = await svc.mark_read(claims["email"].lower(), body.ids)
    return {"success": True, "updated": updated}
