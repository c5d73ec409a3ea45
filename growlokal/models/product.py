"""
GrowLokal — models/product.py
─────────────────────────────────────────────────────────────────
Product listing: only the fields checkout needs (price + stock).
Listing CRUD lives outside this service.
─────────────────────────────────────────────────────────────────
"""

from dataclasses import dataclass
from typing import Optional


PRODUCTS_TABLE = """
    CREATE TABLE IF NOT EXISTS products (
        id           TEXT PRIMARY KEY,
        name         TEXT NOT NULL,
        price        REAL NOT NULL CHECK (price >= 0),
        stock        INTEGER NOT NULL DEFAULT 0 CHECK (stock >= 0),
        is_available INTEGER NOT NULL DEFAULT 1,
        image        TEXT NOT NULL DEFAULT '',
        artist_name  TEXT NOT NULL DEFAULT '',
        seller_email TEXT,
        created_at   TEXT NOT NULL,
        updated_at   TEXT NOT NULL
    );
"""


@dataclass
class Product:
    id:           str
    name:         str
    price:        float
    stock:        int
    is_available: bool
    image:        str
    artist_name:  str
    seller_email: Optional[str]

    @property
    def in_stock(self) -> bool:
        return self.is_available and self.stock > 0
