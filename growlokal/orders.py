"""
GrowLokal — orders.py
─────────────────────────────────────────────────────────────────
Order state machine.

  create              → validate stock, reserve it, number the order,
                        clear the cart (ONE write transaction)
  mark_as_paid        → idempotent; only the first call advances state
  mark_payment_failed → never overrides paid / refunded
  cancel              → not from delivered / cancelled; paid → refunded;
                        stock restored in the same transaction
  confirm_received    → owner marks delivered
  update              → admin status / tracking / notes

Order ids: ORD-YYYYMMDD-NNNN from a per-day counter row.

Routes (all under /api/orders):
    GET  /            · POST /
    GET  /{order_id}  · DELETE /{order_id}
    PUT  /{order_id}/confirm
─────────────────────────────────────────────────────────────────
"""

import json
import logging
import math
from typing import List, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from pydantic import BaseModel, EmailStr

from growlokal.core.clock import Clock, from_iso, to_iso, utcnow
from growlokal.core.database import get_db, transaction
from growlokal.core.security import new_guest_token, resolve_identity, set_guest_cookie
from growlokal.csrf import require_csrf
from growlokal.models.identity import GuestIdentity, Identity, OWNER_USER
from growlokal.models.notification import NotificationType
from growlokal.models.order import (
    SHIPPING_OPTIONS, Order, OrderItem, OrderStatus, PaymentDetails,
    PaymentMethod, PaymentStatus, ShippingAddress,
)
from growlokal.notifications import NotificationService
from growlokal.products import fetch_products_in, reserve_stock_in, restore_stock_in

logger = logging.getLogger("growlokal.orders")

MAX_LINE_QUANTITY = 999


# ─────────────────────────────────────────────
# Exceptions
# ─────────────────────────────────────────────
class OrderError(Exception):
    """Base order exception."""
    status = 400
    code   = "ORDER_ERROR"

class InvalidOrderError(OrderError):
    """Malformed order request (no lines, bad quantity, unknown option)."""
    code = "INVALID_ORDER"

class OrderNotFoundError(OrderError):
    """No such order, or not yours."""
    status = 404
    code   = "ORDER_NOT_FOUND"

class ProductNotFoundError(OrderError):
    """A line references a product that doesn't exist."""
    status = 404
    code   = "PRODUCT_NOT_FOUND"

class InsufficientStockError(OrderError):
    """Unavailable listing or stock below the requested quantity."""
    status = 409
    code   = "INSUFFICIENT_STOCK"

class OrderStateError(OrderError):
    """Transition not allowed from the current state."""
    code = "INVALID_STATE"


# ─────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────
def _row_to_order(row) -> Order:
    return Order(
        order_id         = row["order_id"],
        owner_type       = row["owner_type"],
        owner_id         = row["owner_id"],
        items            = [OrderItem(**i) for i in json.loads(row["items"])],
        shipping_address = ShippingAddress(**json.loads(row["shipping_address"])),
        payment          = PaymentDetails(
            method         = PaymentMethod(row["payment_method"]),
            status         = PaymentStatus(row["payment_status"]),
            transaction_id = row["transaction_id"],
            paid_at        = from_iso(row["paid_at"]),
        ),
        shipping_option  = row["shipping_option"],
        subtotal         = float(row["subtotal"]),
        shipping_fee     = float(row["shipping_fee"]),
        total            = float(row["total"]),
        status           = OrderStatus(row["status"]),
        created_at       = from_iso(row["created_at"]),
        updated_at       = from_iso(row["updated_at"]),
        tracking_number  = row["tracking_number"],
        notes            = row["notes"],
    )


def _owns(order: Order, identity: Optional[Identity]) -> bool:
    return (
        identity is not None
        and order.owner_type == identity.owner_type
        and order.owner_id == identity.owner_id
    )


def _merge_lines(lines: List[Tuple[str, int]]) -> List[Tuple[str, int]]:
    """Same product twice → one line. Order of first appearance kept."""
    merged = {}
    for product_id, quantity in lines:
        if quantity < 1 or quantity > MAX_LINE_QUANTITY:
            raise InvalidOrderError(f"Invalid quantity {quantity} for product {product_id}")
        merged[product_id] = merged.get(product_id, 0) + quantity
    return list(merged.items())


async def _next_order_id(db, now) -> str:
    day = now.strftime("%Y%m%d")
    await db.execute(
        """INSERT INTO order_sequences (day, last_seq) VALUES (?, 1)
           ON CONFLICT(day) DO UPDATE SET last_seq = last_seq + 1""",
        (day,)
    )
    async with db.execute(
        "SELECT last_seq FROM order_sequences WHERE day = ?", (day,)
    ) as cur:
        row = await cur.fetchone()
    return f"ORD-{day}-{int(row['last_seq']):04d}"


# ─────────────────────────────────────────────
# OrderService
# ─────────────────────────────────────────────
class OrderService:

    def __init__(self, db_path: Optional[str] = None, clock: Clock = utcnow):
        self.db_path       = db_path
        self.clock         = clock
        self.notifications = NotificationService(db_path, clock)

    async def _load(self, db, order_id: str) -> Optional[Order]:
        async with db.execute(
            "SELECT * FROM orders WHERE order_id = ?", (order_id,)
        ) as cur:
            row = await cur.fetchone()
        return _row_to_order(row) if row else None

    async def _notify_owner(self, order: Order, title: str, description: str):
        # Guests have no feed
        if order.owner_type != OWNER_USER:
            return
        await self.notifications.notify(
            order.owner_id, NotificationType.ORDER, title, description,
            {"order_id": order.order_id, "total": order.total, "status": order.status.value},
        )

    # ─── Read ─────────────────────────────────

    async def get(self, order_id: str) -> Optional[Order]:
        async with get_db(self.db_path) as db:
            return await self._load(db, order_id)

    async def get_for_owner(self, order_id: str, identity: Optional[Identity]) -> Order:
        """404 whether the order is missing or belongs to someone else."""
        order = await self.get(order_id)
        if order is None or not _owns(order, identity):
            raise OrderNotFoundError("Order not found")
        return order

    async def find_by_transaction(self, transaction_id: str) -> Optional[Order]:
        async with get_db(self.db_path) as db:
            async with db.execute(
                "SELECT * FROM orders WHERE transaction_id = ? ORDER BY created_at DESC LIMIT 1",
                (transaction_id,)
            ) as cur:
                row = await cur.fetchone()
        return _row_to_order(row) if row else None

    async def list_for_owner(
        self,
        identity: Identity,
        page: int = 1,
        limit: int = 10,
        status: Optional[OrderStatus] = None,
    ) -> Tuple[List[Order], int]:
        where  = "owner_type = ? AND owner_id = ?"
        params = [identity.owner_type, identity.owner_id]
        if status:
            where += " AND status = ?"
            params.append(status.value)

        async with get_db(self.db_path) as db:
            async with db.execute(f"SELECT COUNT(*) FROM orders WHERE {where}", params) as cur:
                total = int((await cur.fetchone())[0])
            async with db.execute(
                f"""SELECT * FROM orders WHERE {where}
                    ORDER BY created_at DESC LIMIT ? OFFSET ?""",
                (*params, limit, (page - 1) * limit)
            ) as cur:
                rows = await cur.fetchall()
        return [_row_to_order(r) for r in rows], total

    # ─── Create ───────────────────────────────

    async def create(
        self,
        identity: Identity,
        lines: List[Tuple[str, int]],
        shipping_address: ShippingAddress,
        payment_method: PaymentMethod,
        shipping_option: str = "standard",
        notes: Optional[str] = None,
    ) -> Order:
        """
        Prices and names come from the live products, never the client.
        Any line failing validation rejects the whole order.
        """
        if not lines:
            raise InvalidOrderError("Order must have at least one item")
        if shipping_option not in SHIPPING_OPTIONS:
            raise InvalidOrderError(f"Unknown shipping option: {shipping_option}")
        lines = _merge_lines(lines)

        now = self.clock()
        ts  = to_iso(now)

        async with transaction(self.db_path) as db:
            products = await fetch_products_in(db, [pid for pid, _ in lines])

            items = []
            for product_id, quantity in lines:
                product = products.get(product_id)
                if product is None:
                    raise ProductNotFoundError(f"Product {product_id} not found")
                if not product.is_available or product.stock < 1:
                    raise InsufficientStockError(f"Product {product.name} is not available")
                if product.stock < quantity:
                    raise InsufficientStockError(
                        f"Insufficient stock for {product.name}. Only {product.stock} available"
                    )
                items.append(OrderItem(
                    product_id  = product.id,
                    name        = product.name,
                    price       = product.price,
                    quantity    = quantity,
                    image       = product.image,
                    artist_name = product.artist_name,
                ))

            for item in items:
                if not await reserve_stock_in(db, item.product_id, item.quantity, ts):
                    raise InsufficientStockError(f"Insufficient stock for {item.name}")

            subtotal     = round(sum(i.price * i.quantity for i in items), 2)
            shipping_fee = SHIPPING_OPTIONS[shipping_option]
            order_id     = await _next_order_id(db, now)

            await db.execute(
                """INSERT INTO orders
                   (order_id, owner_type, owner_id, items, shipping_address,
                    payment_method, payment_status, shipping_option,
                    subtotal, shipping_fee, total, status, notes, created_at, updated_at)
                   VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)""",
                (order_id, identity.owner_type, identity.owner_id,
                 json.dumps([i.to_dict() for i in items]),
                 json.dumps(shipping_address.to_dict()),
                 payment_method.value, PaymentStatus.PENDING.value, shipping_option,
                 subtotal, shipping_fee, round(subtotal + shipping_fee, 2),
                 OrderStatus.PENDING.value, notes, ts, ts)
            )

            await db.execute(
                """UPDATE carts SET items = '[]', updated_at = ?
                   WHERE owner_type = ? AND owner_id = ?""",
                (ts, identity.owner_type, identity.owner_id)
            )

            order = await self._load(db, order_id)

        logger.info(f"Order created: {order_id} ({identity.owner_type}) total=₱{order.total}")
        await self._notify_owner(
            order,
            "Order placed successfully",
            f"Order #{order_id} has been placed. We will notify you as it progresses.",
        )
        return order

    # ─── Payment ──────────────────────────────

    async def set_transaction_id(self, order_id: str, transaction_id: str):
        async with get_db(self.db_path) as db:
            cur = await db.execute(
                "UPDATE orders SET transaction_id = ?, updated_at = ? WHERE order_id = ?",
                (transaction_id, to_iso(self.clock()), order_id)
            )
            await db.commit()
            if cur.rowcount == 0:
                raise OrderNotFoundError(f"Order {order_id} not found")

    async def mark_payment_pending(self, order_id: str, transaction_id: Optional[str] = None):
        """Back to pending after a failed attempt; paid/refunded untouched."""
        async with get_db(self.db_path) as db:
            await db.execute(
                """UPDATE orders
                   SET payment_status = 'pending',
                       transaction_id = COALESCE(?, transaction_id), updated_at = ?
                   WHERE order_id = ? AND payment_status = 'failed'""",
                (transaction_id, to_iso(self.clock()), order_id)
            )
            await db.commit()

    async def mark_as_paid(self, order_id: str, transaction_id: Optional[str] = None) -> bool:
        """
        Idempotent. Returns True only for the call that actually
        flipped the order to paid; later calls only refresh the
        transaction id.
        """
        ts = to_iso(self.clock())

        async with get_db(self.db_path) as db:
            cur = await db.execute(
                """UPDATE orders
                   SET payment_status = 'paid',
                       transaction_id = COALESCE(?, transaction_id),
                       paid_at        = ?,
                       status         = CASE WHEN status = 'pending' THEN 'processing' ELSE status END,
                       updated_at     = ?
                   WHERE order_id = ? AND payment_status IN ('pending', 'failed')""",
                (transaction_id, ts, ts, order_id)
            )
            first = cur.rowcount == 1

            if not first:
                order = await self._load(db, order_id)
                if order is None:
                    raise OrderNotFoundError(f"Order {order_id} not found")
                if order.payment.status == PaymentStatus.PAID and transaction_id:
                    await db.execute(
                        "UPDATE orders SET transaction_id = ?, updated_at = ? WHERE order_id = ?",
                        (transaction_id, ts, order_id)
                    )
                elif order.payment.status == PaymentStatus.REFUNDED:
                    logger.warning(f"Payment arrived for refunded order {order_id}, left refunded")
            await db.commit()

            order = await self._load(db, order_id)

        if first:
            logger.info(f"Order paid: {order_id} txn={transaction_id}")
            if order.status == OrderStatus.CANCELLED:
                logger.warning(f"Order {order_id} was paid after cancellation, needs a refund")
            await self._notify_owner(
                order,
                "Payment received",
                f"We received your payment for order #{order_id}.",
            )
        return first

    async def mark_payment_failed(self, order_id: str) -> bool:
        """Money that moved is never reverted: paid/refunded stay."""
        async with get_db(self.db_path) as db:
            cur = await db.execute(
                """UPDATE orders SET payment_status = 'failed', updated_at = ?
                   WHERE order_id = ? AND payment_status = 'pending'""",
                (to_iso(self.clock()), order_id)
            )
            await db.commit()
            changed = cur.rowcount == 1
            if not changed and await self._load(db, order_id) is None:
                raise OrderNotFoundError(f"Order {order_id} not found")

        if changed:
            logger.info(f"Payment failed: {order_id}")
        return changed

    # ─── Lifecycle ────────────────────────────

    async def cancel(self, order_id: str, identity: Optional[Identity] = None) -> Order:
        """
        Cancel + restore stock atomically.
        identity=None skips the ownership check (admin path).
        """
        ts = to_iso(self.clock())

        async with transaction(self.db_path) as db:
            order = await self._load(db, order_id)
            if order is None or (identity is not None and not _owns(order, identity)):
                raise OrderNotFoundError("Order not found")
            if order.status == OrderStatus.DELIVERED:
                raise OrderStateError("Cannot cancel delivered order")
            if order.status == OrderStatus.CANCELLED:
                raise OrderStateError("Order is already cancelled")

            payment_status = (
                PaymentStatus.REFUNDED if order.payment.status == PaymentStatus.PAID
                else order.payment.status
            )
            await db.execute(
                """UPDATE orders SET status = 'cancelled', payment_status = ?, updated_at = ?
                   WHERE order_id = ?""",
                (payment_status.value, ts, order_id)
            )
            for item in order.items:
                await restore_stock_in(db, item.product_id, item.quantity, ts)

            order = await self._load(db, order_id)

        logger.info(f"Order cancelled: {order_id} (payment {order.payment.status.value})")
        await self._notify_owner(order, "Order cancelled", f"Order #{order_id} has been cancelled.")
        return order

    async def confirm_received(self, order_id: str, identity: Identity) -> Order:
        async with get_db(self.db_path) as db:
            order = await self._load(db, order_id)
            if order is None or not _owns(order, identity):
                raise OrderNotFoundError("Order not found")
            if order.status == OrderStatus.CANCELLED:
                raise OrderStateError("Cannot confirm a cancelled order")
            if order.status != OrderStatus.DELIVERED:
                await db.execute(
                    "UPDATE orders SET status = 'delivered', updated_at = ? WHERE order_id = ?",
                    (to_iso(self.clock()), order_id)
                )
                await db.commit()
            return await self._load(db, order_id)

    async def update(
        self,
        order_id: str,
        status: Optional[OrderStatus] = None,
        tracking_number: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Order:
        """
        Admin edit. Cancelling goes through cancel() so stock is restored.
        """
        if status == OrderStatus.CANCELLED:
            order = await self.cancel(order_id)
            status = None
        else:
            order = await self.get(order_id)
            if order is None:
                raise OrderNotFoundError("Order not found")
            if status and order.status == OrderStatus.CANCELLED:
                raise OrderStateError("Cancelled orders can't change status")

        sets, params = [], []
        if status:
            sets.append("status = ?")
            params.append(status.value)
        if tracking_number is not None:
            sets.append("tracking_number = ?")
            params.append(tracking_number)
        if notes is not None:
            sets.append("notes = ?")
            params.append(notes)
        if not sets:
            return order

        sets.append("updated_at = ?")
        params.append(to_iso(self.clock()))
        async with get_db(self.db_path) as db:
            await db.execute(
                f"UPDATE orders SET {', '.join(sets)} WHERE order_id = ?",
                (*params, order_id)
            )
            await db.commit()
            order = await self._load(db, order_id)

        if status:
            await self._notify_owner(
                order, f"Order {status.value}", f"Order #{order_id} is now {status.value}."
            )
        return order


# ─────────────────────────────────────────────
# Routes
# ─────────────────────────────────────────────
router = APIRouter(prefix="/api/orders", tags=["orders"])


def get_order_service() -> OrderService:
    return OrderService()


def order_http(e: OrderError) -> HTTPException:
    return HTTPException(e.status, {"message": str(e), "error_code": e.code})


class OrderLine(BaseModel):
    product_id: str
    quantity:   int


class ShippingAddressIn(BaseModel):
    full_name:   str
    email:       EmailStr
    phone:       str
    address:     str
    city:        str
    province:    str
    postal_code: str
    country:     str = "Philippines"


class CreateOrderRequest(BaseModel):
    items:            List[OrderLine]
    shipping_address: ShippingAddressIn
    payment_method:   PaymentMethod
    shipping_option:  str = "standard"
    notes:            Optional[str] = None


async def _require_identity(request: Request) -> Identity:
    identity = await resolve_identity(request)
    if identity is None:
        raise HTTPException(401, "No user session found")
    return identity


@router.get("")
async def list_orders(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[OrderStatus] = None,
    svc: OrderService = Depends(get_order_service),
):
    identity = await _require_identity(request)
    orders, total = await svc.list_for_owner(identity, page, limit, status)
    return {
        "success": True,
        "data":    [o.to_dict() for o in orders],
        "pagination": {
            "page":        page,
            "limit":       limit,
            "total":       total,
            "total_pages": math.ceil(total / limit),
            "has_next":    page * limit < total,
            "has_prev":    page > 1,
        },
    }


@router.post("", status_code=201, dependencies=[Depends(require_csrf)])
async def create_order(
    body: CreateOrderRequest,
    request: Request,
    response: Response,
    svc: OrderService = Depends(get_order_service),
):
    identity = await resolve_identity(request)
    if identity is None:
        identity = GuestIdentity(new_guest_token())
        set_guest_cookie(response, identity.token)

    addr = body.shipping_address
    try:
        order = await svc.create(
            identity,
            [(line.product_id, line.quantity) for line in body.items],
            ShippingAddress(
                full_name   = addr.full_name,
                email       = str(addr.email),
                phone       = addr.phone,
                address     = addr.address,
                city        = addr.city,
                province    = addr.province,
                postal_code = addr.postal_code,
                country     = addr.country or "Philippines",
            ),
            body.payment_method,
            body.shipping_option,
            body.notes,
        )
    except OrderError as e:
        raise order_http(e)

    return {
        "success": True,
        "message": "Order created successfully",
        "data": {
            "order_id": order.order_id,
            "total":    order.total,
            "status":   order.status.value,
        },
    }


@router.get("/{order_id}")
async def get_order(order_id: str, request: Request,
                    svc: OrderService = Depends(get_order_service)):
    try:
        order = await svc.get_for_owner(order_id, await resolve_identity(request))
    except OrderError as e:
        raise order_http(e)
    return {"success": True, "data": order.to_dict()}


@router.delete("/{order_id}", dependencies=[Depends(require_csrf)])
async def cancel_order(order_id: str, request: Request,
                       svc: OrderService = Depends(get_order_service)):
    identity = await _require_identity(request)
    try:
        order = await svc.cancel(order_id, identity)
    except OrderError as e:
        raise order_http(e)
    return {"success": True, "message": "Order cancelled successfully", "data": order.to_dict()}


@router.put("/{order_id}/confirm", dependencies=[Depends(require_csrf)])
async def confirm_order_received(order_id: str, request: Request,
                                 svc: OrderService = Depends(get_order_service)):
    identity = await _require_identity(request)
    try:
        order = await svc.confirm_received(order_id, identity)
    except OrderError as e:
        raise order_http(e)
    return {"success": True, "message": "Order marked as received", "data": order.to_dict()}
