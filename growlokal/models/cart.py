"""
GrowLokal — models/cart.py
─────────────────────────────────────────────────────────────────
Cart table definition + dataclasses.
One cart per identity (owner_type, owner_id). Line items are kept
as a JSON column, ordered by insertion.
─────────────────────────────────────────────────────────────────
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import List, Optional


CARTS_TABLE = """
    CREATE TABLE IF NOT EXISTS carts (
        id          TEXT PRIMARY KEY,
        owner_type  TEXT NOT NULL CHECK (owner_type IN ('user', 'guest')),
        owner_id    TEXT NOT NULL,
        items       TEXT NOT NULL DEFAULT '[]',
        created_at  TEXT NOT NULL,
        updated_at  TEXT NOT NULL,
        expires_at  TEXT NOT NULL,
        UNIQUE (owner_type, owner_id)
    );
"""


@dataclass
class CartItem:
    product_id:  str
    name:        str
    price:       float
    quantity:    int
    image:       str = ""
    artist_name: str = ""
    max_stock:   int = 0     # stock snapshot at add-time

    @property
    def line_total(self) -> float:
        return round(self.price * self.quantity, 2)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "CartItem":
        return cls(
            product_id  = str(data["product_id"]),
            name        = data.get("name", ""),
            price       = float(data.get("price", 0)),
            quantity    = int(data.get("quantity", 0)),
            image       = data.get("image", ""),
            artist_name = data.get("artist_name", ""),
            max_stock   = int(data.get("max_stock", 0)),
        )


@dataclass
class Cart:
    id:         str
    owner_type: str
    owner_id:   str
    items:      List[CartItem] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @property
    def subtotal(self) -> float:
        return round(sum(i.price * i.quantity for i in self.items), 2)

    @property
    def item_count(self) -> int:
        return sum(i.quantity for i in self.items)

    def find(self, product_id: str) -> Optional[CartItem]:
        for item in self.items:
            if item.product_id == product_id:
                return item
        return None

    def to_dict(self) -> dict:
        return {
            "items":      [i.to_dict() for i in self.items],
            "subtotal":   self.subtotal,
            "item_count": self.item_count,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
