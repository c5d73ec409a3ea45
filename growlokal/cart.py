"""
GrowLokal — cart.py
─────────────────────────────────────────────────────────────────
Cart aggregate: one cart per identity.

  - add_item sums quantities for the same product
  - a line can never exceed its stock snapshot (max_stock)
  - update_quantity <= 0 removes the line
  - merge_guest_cart folds a guest cart into the user's cart and
    deletes the guest cart in the same transaction
  - carts untouched for CART_TTL_DAYS are treated as absent

Routes (all under /api/cart):
    GET / · POST / · PUT / · DELETE /
    DELETE /items/{product_id}
    POST   /merge
─────────────────────────────────────────────────────────────────
"""

import json
import logging
import secrets
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import BaseModel

from growlokal.core.clock import Clock, from_iso, to_iso, utcnow
from growlokal.core.config import cfg
from growlokal.core.database import get_db, transaction
from growlokal.core.security import (
    clear_guest_cookie, get_current_user, new_guest_token, resolve_identity,
    set_guest_cookie, GUEST_PREFIX,
)
from growlokal.csrf import require_csrf
from growlokal.models.cart import Cart, CartItem
from growlokal.models.identity import GuestIdentity, Identity, UserIdentity
from growlokal.models.product import Product
from growlokal.products import ProductStore

logger = logging.getLogger("growlokal.cart")


# ─────────────────────────────────────────────
# Exceptions
# ─────────────────────────────────────────────
class CartError(Exception):
    """Base cart exception."""
    status = 400

class OutOfStockError(CartError):
    """Product unavailable or stock is zero."""

class QuantityExceedsStockError(CartError):
    """Requested quantity is more than the stock snapshot."""

class InvalidQuantityError(CartError):
    """Quantity must be a positive integer."""

class CartItemNotFoundError(CartError):
    """No line for that product."""
    status = 404

class CartNotFoundError(CartError):
    """Identity has no (live) cart."""
    status = 404

class CartConflictError(CartError):
    """Guest cart changed while it was being merged."""
    status = 409


# ─────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────
def _new_id() -> str:
    return secrets.token_hex(12)


def _row_to_cart(row) -> Cart:
    return Cart(
        id         = row["id"],
        owner_type = row["owner_type"],
        owner_id   = row["owner_id"],
        items      = [CartItem.from_dict(i) for i in json.loads(row["items"] or "[]")],
        created_at = from_iso(row["created_at"]),
        updated_at = from_iso(row["updated_at"]),
        expires_at = from_iso(row["expires_at"]),
    )


def _apply_add(cart: Cart, product: Product, quantity: int):
    if quantity < 1:
        raise InvalidQuantityError("Quantity must be at least 1")
    if not product.in_stock:
        raise OutOfStockError("Product is out of stock")

    line  = cart.find(product.id)
    total = quantity + (line.quantity if line else 0)
    if total > product.stock:
        raise QuantityExceedsStockError(f"Only {product.stock} items available in stock")

    if line:
        line.quantity  = total
        line.price     = product.price
        line.max_stock = product.stock
    else:
        cart.items.append(CartItem(
            product_id  = product.id,
            name        = product.name,
            price       = product.price,
            quantity    = quantity,
            image       = product.image,
            artist_name = product.artist_name,
            max_stock   = product.stock,
        ))


def merge_items(target: Cart, source: Cart):
    """
    Fold source lines into target. Same product → quantities summed,
    capped at the larger of the two max_stock snapshots (never dropped).
    Live stock is enforced at checkout, not here.
    """
    for incoming in source.items:
        line = target.find(incoming.product_id)
        if line is None:
            cap = incoming.max_stock or incoming.quantity
            target.items.append(CartItem(**{**incoming.to_dict(), "quantity": min(incoming.quantity, cap)}))
            continue

        cap = max(line.max_stock, incoming.max_stock)
        if cap <= 0:
            cap = line.quantity + incoming.quantity
        line.max_stock = cap
        line.quantity  = min(line.quantity + incoming.quantity, cap)


# ─────────────────────────────────────────────
# CartService
# ─────────────────────────────────────────────
class CartService:

    def __init__(self, db_path: Optional[str] = None, clock: Clock = utcnow):
        self.db_path  = db_path
        self.clock    = clock
        self.products = ProductStore(db_path, clock)

    # ─── Storage ──────────────────────────────

    async def _load(self, db, identity: Identity) -> Optional[Cart]:
        async with db.execute(
            "SELECT * FROM carts WHERE owner_type = ? AND owner_id = ?",
            (identity.owner_type, identity.owner_id)
        ) as cur:
            row = await cur.fetchone()
        if row is None:
            return None
        cart = _row_to_cart(row)
        if cart.expires_at and cart.expires_at <= self.clock():
            return None
        return cart

    async def _save(self, db, cart: Cart):
        now = self.clock()
        cart.updated_at = now
        cart.expires_at = now + timedelta(days=cfg.CART_TTL_DAYS)
        await db.execute(
            """INSERT INTO carts (id, owner_type, owner_id, items, created_at, updated_at, expires_at)
               VALUES (?,?,?,?,?,?,?)
               ON CONFLICT(owner_type, owner_id) DO UPDATE SET
                   items      = excluded.items,
                   updated_at = excluded.updated_at,
                   expires_at = excluded.expires_at""",
            (cart.id, cart.owner_type, cart.owner_id,
             json.dumps([i.to_dict() for i in cart.items]),
             to_iso(cart.created_at or now), to_iso(now), to_iso(cart.expires_at))
        )

    def _empty(self, identity: Identity) -> Cart:
        return Cart(
            id         = _new_id(),
            owner_type = identity.owner_type,
            owner_id   = identity.owner_id,
            created_at = self.clock(),
        )

    # ─── Read ─────────────────────────────────

    async def get(self, identity: Identity) -> Optional[Cart]:
        async with get_db(self.db_path) as db:
            return await self._load(db, identity)

    async def find_or_create(self, identity: Identity) -> Cart:
        async with get_db(self.db_path) as db:
            cart = await self._load(db, identity)
            if cart is None:
                cart = self._empty(identity)
                await self._save(db, cart)
                await db.commit()
        return cart

    # ─── Write ────────────────────────────────

    async def add_item(self, identity: Identity, product: Product, quantity: int = 1) -> Cart:
        async with transaction(self.db_path) as db:
            cart = await self._load(db, identity) or self._empty(identity)
            _apply_add(cart, product, quantity)
            await self._save(db, cart)
        return cart

    async def update_quantity(self, identity: Identity, product_id: str, quantity: int) -> Cart:
        async with transaction(self.db_path) as db:
            cart = await self._load(db, identity)
            if cart is None:
                raise CartNotFoundError("Cart not found")
            line = cart.find(product_id)
            if line is None:
                raise CartItemNotFoundError("Item not found in cart")

            if quantity <= 0:
                cart.items.remove(line)
            elif line.max_stock and quantity > line.max_stock:
                raise QuantityExceedsStockError(f"Only {line.max_stock} items available in stock")
            else:
                line.quantity = quantity
            await self._save(db, cart)
        return cart

    async def remove_item(self, identity: Identity, product_id: str) -> Cart:
        async with transaction(self.db_path) as db:
            cart = await self._load(db, identity)
            if cart is None:
                raise CartNotFoundError("Cart not found")
            before = len(cart.items)
            cart.items = [i for i in cart.items if i.product_id != product_id]
            if len(cart.items) == before:
                raise CartItemNotFoundError("Item not found in cart")
            await self._save(db, cart)
        return cart

    async def clear(self, identity: Identity) -> Cart:
        async with transaction(self.db_path) as db:
            cart = await self._load(db, identity)
            if cart is None:
                raise CartNotFoundError("Cart not found")
            cart.items = []
            await self._save(db, cart)
        return cart

    async def merge_guest_cart(self, guest: GuestIdentity, user: UserIdentity) -> Cart:
        """
        Guest lines folded into the user's cart; guest cart deleted.
        Both writes commit together or not at all.
        """
        async with transaction(self.db_path) as db:
            user_cart  = await self._load(db, user) or self._empty(user)
            guest_cart = await self._load(db, guest)
            if guest_cart is None:
                await self._save(db, user_cart)
                return user_cart

            merge_items(user_cart, guest_cart)
            await self._save(db, user_cart)

            cur = await db.execute(
                "DELETE FROM carts WHERE id = ? AND updated_at = ?",
                (guest_cart.id, to_iso(guest_cart.updated_at))
            )
            if cur.rowcount != 1:
                raise CartConflictError("Guest cart changed during merge. Please retry.")

        logger.info(f"Merged guest cart ({len(guest_cart.items)} lines) into {user.owner_id}")
        return user_cart


# ─────────────────────────────────────────────
# Routes
# ─────────────────────────────────────────────
router = APIRouter(prefix="/api/cart", tags=["cart"])


def get_cart_service() -> CartService:
    return CartService()


class AddItemRequest(BaseModel):
    product_id: str
    quantity:   int = 1


class UpdateItemRequest(BaseModel):
    product_id: str
    quantity:   int


def _cart_http(e: CartError) -> HTTPException:
    return HTTPException(e.status, {"message": str(e), "error_code": type(e).__name__})


async def _identity_or_new_guest(request: Request, response: Response) -> Identity:
    identity = await resolve_identity(request)
    if identity is None:
        identity = GuestIdentity(new_guest_token())
        set_guest_cookie(response, identity.token)
    return identity


async def _identity_or_404(request: Request) -> Identity:
    identity = await resolve_identity(request)
    if identity is None:
        raise HTTPException(404, {"message": "Cart not found", "error_code": "CartNotFoundError"})
    return identity


@router.get("")
async def get_cart(request: Request, response: Response,
                   svc: CartService = Depends(get_cart_service)):
    identity = await _identity_or_new_guest(request, response)
    cart = await svc.find_or_create(identity)
    return {"success": True, "data": cart.to_dict()}


@router.post("", dependencies=[Depends(require_csrf)])
async def add_to_cart(body: AddItemRequest, request: Request, response: Response,
                      svc: CartService = Depends(get_cart_service)):
    product = await svc.products.get(body.product_id)
    if not product:
        raise HTTPException(404, {"message": "Product not found", "error_code": "PRODUCT_NOT_FOUND"})

    identity = await _identity_or_new_guest(request, response)
    try:
        cart = await svc.add_item(identity, product, body.quantity)
    except CartError as e:
        raise _cart_http(e)
    return {"success": True, "message": "Item added to cart", "data": cart.to_dict()}


@router.put("", dependencies=[Depends(require_csrf)])
async def update_cart(body: UpdateItemRequest, request: Request,
                      svc: CartService = Depends(get_cart_service)):
    identity = await _identity_or_404(request)
    try:
        cart = await svc.update_quantity(identity, body.product_id, body.quantity)
    except CartError as e:
        raise _cart_http(e)
    return {"success": True, "message": "Cart updated", "data": cart.to_dict()}


@router.delete("", dependencies=[Depends(require_csrf)])
async def clear_cart(request: Request, svc: CartService = Depends(get_cart_service)):
    identity = await _identity_or_404(request)
    try:
        cart = await svc.clear(identity)
    except CartError as e:
        raise _cart_http(e)
    return {"success": True, "message": "Cart cleared", "data": cart.to_dict()}


@router.delete("/items/{product_id}", dependencies=[Depends(require_csrf)])
async def remove_from_cart(product_id: str, request: Request,
                           svc: CartService = Depends(get_cart_service)):
    identity = await _identity_or_404(request)
    try:
        cart = await svc.remove_item(identity, product_id)
    except CartError as e:
        raise _cart_http(e)
    return {"success": True, "message": "Item removed from cart", "data": cart.to_dict()}


@router.post("/merge", dependencies=[Depends(require_csrf)])
async def merge_cart(request: Request, response: Response,
                     claims: dict = Depends(get_current_user),
                     svc: CartService = Depends(get_cart_service)):
    user  = UserIdentity(claims["email"])
    guest = request.cookies.get(cfg.GUEST_CART_COOKIE)

    if not guest or not guest.startswith(GUEST_PREFIX):
        cart = await svc.find_or_create(user)
        return {"success": True, "message": "No guest cart to merge", "data": cart.to_dict()}

    try:
        cart = await svc.merge_guest_cart(GuestIdentity(guest), user)
    except CartError as e:
        raise _cart_http(e)

    clear_guest_cookie(response)
    return {"success": True, "message": "Carts merged successfully", "data": cart.to_dict()}
