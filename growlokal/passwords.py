"""
GrowLokal — passwords.py
─────────────────────────────────────────────────────────────────
Password policy + bcrypt hashing.
─────────────────────────────────────────────────────────────────
"""

import re
from typing import List

import bcrypt

from growlokal.core.config import cfg

MIN_LENGTH = 8
MAX_LENGTH = 128

_SPECIAL = re.compile(r"[^A-Za-z0-9]")


def password_problems(password: str) -> List[str]:
    """Every rule the password breaks. Empty list = acceptable."""
    problems = []
    if len(password) < MIN_LENGTH:
        problems.append(f"Password must be at least {MIN_LENGTH} characters long")
    if len(password) > MAX_LENGTH:
        problems.append(f"Password must be at most {MAX_LENGTH} characters long")
    if not re.search(r"[A-Z]", password):
        problems.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        problems.append("Password must contain at least one lowercase letter")
    if not re.search(r"[0-9]", password):
        problems.append("Password must contain at least one number")
    if not _SPECIAL.search(password):
        problems.append("Password must contain at least one special character")
    return problems


def hash_password(password: str) -> str:
    # bcrypt only looks at the first 72 bytes
    raw = password.encode("utf-8")[:72]
    return bcrypt.hashpw(raw, bcrypt.gensalt(rounds=cfg.BCRYPT_ROUNDS)).decode("utf-8")


def check_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8")[:72], password_hash.encode("utf-8"))
    except ValueError:
        return False
