"""
GrowLokal — core/database.py
─────────────────────────────────────────────────────────────────
Single place for:
  - DB connection helper
  - Write-transaction helper (BEGIN IMMEDIATE … COMMIT)
  - One init_all_tables() call on startup

Table SQL lives next to its dataclass in models/.

Usage:
    from growlokal.core.database import get_db, transaction, init_all_tables

    # In main.py startup:
    await init_all_tables()

    # Reads / single statements:
    async with get_db() as db:
        await db.execute(...)

    # Multi-step writes that must land together:
    async with transaction() as db:
        await db.execute(...)
        await db.execute(...)
─────────────────────────────────────────────────────────────────
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import aiosqlite

from growlokal.core.config import cfg
from growlokal.models.account import ACCOUNTS_TABLE
from growlokal.models.cart import CARTS_TABLE
from growlokal.models.notification import NOTIFICATIONS_TABLE
from growlokal.models.order import ORDERS_TABLE
from growlokal.models.product import PRODUCTS_TABLE
from growlokal.models.rate_limit import RATE_LIMITS_TABLE

logger = logging.getLogger("growlokal.database")

BUSY_TIMEOUT_SECONDS = 10


# ─────────────────────────────────────────────
# Connection helpers
# ─────────────────────────────────────────────
@asynccontextmanager
async def get_db(db_path: Optional[str] = None):
    """
    Use instead of aiosqlite.connect() everywhere.

    async with get_db() as db:
        await db.execute(...)
    """
    async with aiosqlite.connect(db_path or cfg.DB_PATH, timeout=BUSY_TIMEOUT_SECONDS) as db:
        db.row_factory = aiosqlite.Row
        yield db


@asynccontextmanager
async def transaction(db_path: Optional[str] = None):
    """
    One write transaction. Takes the SQLite write lock up front so two
    checkouts can't both read the same stock level before writing.
    Commits on clean exit, rolls back on any exception.
    """
    async with get_db(db_path) as db:
        await db.execute("BEGIN IMMEDIATE")
        try:
            yield db
        except BaseException:
            await db.rollback()
            raise
        else:
            await db.commit()


# ─────────────────────────────────────────────
# Init: call ONCE on startup
# ─────────────────────────────────────────────
ALL_TABLES = [
    ("accounts",      ACCOUNTS_TABLE),
    ("rate_limits",   RATE_LIMITS_TABLE),
    ("products",      PRODUCTS_TABLE),
    ("carts",         CARTS_TABLE),
    ("orders",        ORDERS_TABLE),
    ("notifications", NOTIFICATIONS_TABLE),
]


async def init_all_tables(db_path: Optional[str] = None):
    """
    Creates all tables if they don't exist.
    Safe to call on every startup (IF NOT EXISTS everywhere).
    """
    async with get_db(db_path) as db:
        await db.execute("PRAGMA journal_mode=WAL")
        for name, sql in ALL_TABLES:
            try:
                await db.executescript(sql)
            except aiosqlite.Error as e:
                logger.error(f"Failed to create table group '{name}': {e}")
                raise
        await db.commit()

    logger.info(f"✓ All tables initialized ({len(ALL_TABLES)} groups)")
