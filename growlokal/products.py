"""
GrowLokal — products.py
─────────────────────────────────────────────────────────────────
Product stock store. Checkout only needs price, availability and
stock; listing CRUD is handled elsewhere.

The *_in helpers take an open connection so order creation can
reserve / restore stock inside its own transaction.
─────────────────────────────────────────────────────────────────
"""

import logging
import secrets
from typing import Dict, Iterable, Optional

from growlokal.core.clock import Clock, to_iso, utcnow
from growlokal.core.database import get_db
from growlokal.models.product import Product

logger = logging.getLogger("growlokal.products")


def _row_to_product(row) -> Product:
    return Product(
        id           = row["id"],
        name         = row["name"],
        price        = float(row["price"]),
        stock        = int(row["stock"]),
        is_available = bool(row["is_available"]),
        image        = row["image"],
        artist_name  = row["artist_name"],
        seller_email = row["seller_email"],
    )


# ─────────────────────────────────────────────
# Connection-level helpers
# ─────────────────────────────────────────────
async def fetch_products_in(db, product_ids: Iterable[str]) -> Dict[str, Product]:
    ids = list(dict.fromkeys(product_ids))
    if not ids:
        return {}
    marks = ",".join("?" for _ in ids)
    async with db.execute(f"SELECT * FROM products WHERE id IN ({marks})", ids) as cur:
        rows = await cur.fetchall()
    return {r["id"]: _row_to_product(r) for r in rows}


async def reserve_stock_in(db, product_id: str, quantity: int, now: str) -> bool:
    """Conditional decrement. False if stock is short or the listing is off."""
    cur = await db.execute(
        """UPDATE products SET stock = stock - ?, updated_at = ?
           WHERE id = ? AND is_available = 1 AND stock >= ?""",
        (quantity, now, product_id, quantity)
    )
    return cur.rowcount == 1


async def restore_stock_in(db, product_id: str, quantity: int, now: str):
    cur = await db.execute(
        "UPDATE products SET stock = stock + ?, updated_at = ? WHERE id = ?",
        (quantity, now, product_id)
    )
    if cur.rowcount == 0:
        logger.warning(f"Stock restore skipped, product {product_id} no longer exists")


# ─────────────────────────────────────────────
# ProductStore
# ─────────────────────────────────────────────
class ProductStore:

    def __init__(self, db_path: Optional[str] = None, clock: Clock = utcnow):
        self.db_path = db_path
        self.clock   = clock

    async def get(self, product_id: str) -> Optional[Product]:
        async with get_db(self.db_path) as db:
            async with db.execute(
                "SELECT * FROM products WHERE id = ?", (product_id,)
            ) as cur:
                row = await cur.fetchone()
        return _row_to_product(row) if row else None

    async def add(
        self,
        name: str,
        price: float,
        stock: int,
        image: str = "",
        artist_name: str = "",
        seller_email: Optional[str] = None,
        is_available: bool = True,
        product_id: Optional[str] = None,
    ) -> Product:
        now = to_iso(self.clock())
        pid = product_id or secrets.token_hex(12)
        async with get_db(self.db_path) as db:
            await db.execute(
                """INSERT INTO products
                   (id, name, price, stock, is_available, image, artist_name,
                    seller_email, created_at, updated_at)
                   VALUES (?,?,?,?,?,?,?,?,?,?)""",
                (pid, name, price, stock, int(is_available), image, artist_name,
                 seller_email, now, now)
            )
            await db.commit()
        return await self.get(pid)
