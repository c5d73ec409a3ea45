"""
GrowLokal — admin.py
─────────────────────────────────────────────────────────────────
Admin-only routes. Admin = session email listed in ADMIN_EMAILS.

    POST  /api/admin/unlock-account
    GET   /api/admin/lockout-status?email=
    PATCH /api/admin/orders/{order_id}
─────────────────────────────────────────────────────────────────
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, EmailStr

from growlokal.core.security import require_admin
from growlokal.csrf import require_csrf
from growlokal.lockout import LockoutGuard
from growlokal.models.order import OrderStatus
from growlokal.orders import OrderError, OrderService, get_order_service, order_http

logger = logging.getLogger("growlokal.admin")

router = APIRouter(prefix="/api/admin", tags=["admin"])


def get_lockout_guard() -> LockoutGuard:
    return LockoutGuard()


class UnlockRequest(BaseModel):
    email: EmailStr


class OrderUpdateRequest(BaseModel):
    status:          Optional[OrderStatus] = None
    tracking_number: Optional[str] = None
    notes:           Optional[str] = None


@router.post("/unlock-account", dependencies=[Depends(require_csrf)])
async def unlock_account(
    body: UnlockRequest,
    admin: dict = Depends(require_admin),
    guard: LockoutGuard = Depends(get_lockout_guard),
):
    email = str(body.email).lower()
    if not await guard.unlock(email):
        raise HTTPException(404, "User not found or account not locked")

    logger.info(f"Admin {admin['email']} unlocked {email}")
    return {"success": True, "message": f"Account for {email} has been unlocked"}


@router.get("/lockout-status")
async def lockout_status(
    email: EmailStr = Query(...),
    admin: dict = Depends(require_admin),
    guard: LockoutGuard = Depends(get_lockout_guard),
):
    status = await guard.status(str(email))
    if status is None:
        raise HTTPException(404, "User not found")
    return status


@router.patch("/orders/{order_id}", dependencies=[Depends(require_csrf)])
async def update_order(
    order_id: str,
    body: OrderUpdateRequest,
    admin: dict = Depends(require_admin),
    svc: OrderService = Depends(get_order_service),
):
    try:
        order = await svc.update(order_id, body.status, body.tracking_number, body.notes)
    except OrderError as e:
        raise order_http(e)

    logger.info(f"Admin {admin['email']} updated {order_id}: status={order.status.value}")
    return {"success": True, "data": order.to_dict()}
