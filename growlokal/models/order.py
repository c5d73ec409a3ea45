"""
GrowLokal — models/order.py
─────────────────────────────────────────────────────────────────
Order table definitions + enums + dataclasses.
No logic here: only structure.

Status flow:
    pending → processing → shipped → delivered
       ↘           ↘          ↘
                 cancelled   (never from delivered)

Payment flow:
    pending → paid → refunded (on cancel)
       ↘
      failed → paid (a later success still wins)
─────────────────────────────────────────────────────────────────
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from typing import List, Optional


# ─────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────
class OrderStatus(str, Enum):
    PENDING    = "pending"
    PROCESSING = "processing"
    SHIPPED    = "shipped"
    DELIVERED  = "delivered"
    CANCELLED  = "cancelled"


class PaymentStatus(str, Enum):
    PENDING  = "pending"
    PAID     = "paid"
    FAILED   = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    CARD     = "card"
    GCASH    = "gcash"
    GRAB_PAY = "grab_pay"
    COD      = "cod"

    @property
    def is_ewallet(self) -> bool:
        return self in (PaymentMethod.GCASH, PaymentMethod.GRAB_PAY)


# shipping option → fee in PHP
SHIPPING_OPTIONS = {
    "standard": 58.0,
    "express":  75.0,
    "priority": 120.0,
}


# ─────────────────────────────────────────────
# SQL
# ─────────────────────────────────────────────
ORDERS_TABLE = """
    CREATE TABLE IF NOT EXISTS orders (
        order_id         TEXT PRIMARY KEY,
        owner_type       TEXT NOT NULL,
        owner_id         TEXT NOT NULL,
        items            TEXT NOT NULL,
        shipping_address TEXT NOT NULL,
        payment_method   TEXT NOT NULL,
        payment_status   TEXT NOT NULL DEFAULT 'pending',
        transaction_id   TEXT,
        paid_at          TEXT,
        shipping_option  TEXT NOT NULL DEFAULT 'standard',
        subtotal         REAL NOT NULL,
        shipping_fee     REAL NOT NULL,
        total            REAL NOT NULL,
        status           TEXT NOT NULL DEFAULT 'pending',
        tracking_number  TEXT,
        notes            TEXT,
        created_at       TEXT NOT NULL,
        updated_at       TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_orders_owner
        ON orders(owner_type, owner_id, created_at DESC);

    CREATE INDEX IF NOT EXISTS idx_orders_txn
        ON orders(transaction_id)
        WHERE transaction_id IS NOT NULL;

    -- One row per calendar day; bumped inside the order transaction
    CREATE TABLE IF NOT EXISTS order_sequences (
        day      TEXT PRIMARY KEY,
        last_seq INTEGER NOT NULL
    );
"""


# ─────────────────────────────────────────────
# Dataclasses
# ─────────────────────────────────────────────
@dataclass
class OrderItem:
    product_id:  str
    name:        str
    price:       float
    quantity:    int
    image:       str = ""
    artist_name: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ShippingAddress:
    full_name:   str
    email:       str
    phone:       str
    address:     str
    city:        str
    province:    str
    postal_code: str
    country:     str = "Philippines"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PaymentDetails:
    method:         PaymentMethod
    status:         PaymentStatus = PaymentStatus.PENDING
    transaction_id: Optional[str] = None
    paid_at:        Optional[datetime] = None


@dataclass
class Order:
    order_id:         str
    owner_type:       str
    owner_id:         str
    items:            List[OrderItem]
    shipping_address: ShippingAddress
    payment:          PaymentDetails
    shipping_option:  str
    subtotal:         float
    shipping_fee:     float
    total:            float
    status:           OrderStatus
    created_at:       datetime
    updated_at:       datetime
    tracking_number:  Optional[str] = None
    notes:            Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return self.payment.status == PaymentStatus.PAID

    def to_dict(self) -> dict:
        return {
            "order_id":         self.order_id,
            "items":            [i.to_dict() for i in self.items],
            "shipping_address": self.shipping_address.to_dict(),
            "payment": {
                "method":         self.payment.method.value,
                "status":         self.payment.status.value,
                "transaction_id": self.payment.transaction_id,
                "paid_at":        self.payment.paid_at.isoformat() if self.payment.paid_at else None,
            },
            "shipping_option":  self.shipping_option,
            "subtotal":         self.subtotal,
            "shipping_fee":     self.shipping_fee,
            "total":            self.total,
            "status":           self.status.value,
            "tracking_number":  self.tracking_number,
            "notes":            self.notes,
            "created_at":       self.created_at.isoformat(),
            "updated_at":       self.updated_at.isoformat(),
        }
