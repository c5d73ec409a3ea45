"""
GrowLokal — core/config.py
─────────────────────────────────────────────────────────────────
Single source of truth for ALL environment variables.

Every other module imports from here: no os.getenv() scattered
across auth.py, payment.py, orders.py etc.

Usage:
    from growlokal.core.config import cfg

    print(cfg.DB_PATH)
    print(cfg.PAYMONGO_SECRET_KEY)
─────────────────────────────────────────────────────────────────
"""

import os
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    # ── App ───────────────────────────────────
    ENV:          str = os.getenv("ENV", "development")   # "production" in prod
    DB_PATH:      str = os.getenv("DB_PATH", "growlokal.db")
    BASE_URL:     str = os.getenv("BASE_URL", "http://localhost:3000")
    FRONTEND_URL: str = os.getenv("FRONTEND_URL", "http://localhost:3000")

    # ── Security ──────────────────────────────
    SECRET_KEY:    str = os.getenv("SECRET_KEY", "dev-secret-change-in-prod!")
    JWT_SECRET:    str = os.getenv("JWT_SECRET", os.getenv("SECRET_KEY", "dev-secret"))
    ALGORITHM:     str = "HS256"
    SESSION_DAYS:  int = 30       # "remember me" sessions
    SHORT_SESSION_DAYS: int = 1   # default sessions
    BCRYPT_ROUNDS: int = int(os.getenv("BCRYPT_ROUNDS", "12"))

    SESSION_COOKIE:    str = "growlokal_session"
    GUEST_CART_COOKIE: str = "cart_session_id"
    CSRF_COOKIE:       str = "csrf-token"
    CSRF_HEADER:       str = "x-csrf-token"
    DISABLE_CSRF_CHECK: bool = _flag("DISABLE_CSRF_CHECK")
    SHOW_DEV_LINKS:     bool = _flag("SHOW_DEV_LINKS")

    ADMIN_EMAILS: list = [
        e.strip().lower()
        for e in os.getenv("ADMIN_EMAILS", "").split(",")
        if e.strip()
    ]

    # ── Email (Resend) ────────────────────────
    RESEND_API_KEY: str = os.getenv("RESEND_API_KEY", "")
    EMAIL_FROM:     str = os.getenv("EMAIL_FROM", "noreply@growlokal.ph")

    # ── Tokens ────────────────────────────────
    VERIFICATION_HOURS:        int = 1    # registration + magic link
    RESEND_VERIFICATION_HOURS: int = 24
    RESET_TOKEN_HOURS:         int = 1

    # ── Account lockout ───────────────────────
    MAX_FAILED_LOGINS:            int = 5
    LOCKOUT_MINUTES:              int = 30
    RESET_FAILED_AFTER_MINUTES:   int = 60

    # ── Rate limiting ─────────────────────────
    RATE_LIMIT_RETENTION_HOURS: int = 24

    # ── PayMongo ──────────────────────────────
    PAYMONGO_SECRET_KEY:     str = os.getenv("PAYMONGO_SECRET_KEY", "")
    PAYMONGO_PUBLIC_KEY:     str = os.getenv("PAYMONGO_PUBLIC_KEY", "")
    PAYMONGO_WEBHOOK_SECRET: str = os.getenv("PAYMONGO_WEBHOOK_SECRET", "")
    PAYMONGO_BASE_URL:       str = os.getenv("PAYMONGO_BASE_URL", "https://api.paymongo.com/v1")
    STATEMENT_DESCRIPTOR:    str = "GrowLokal"
    CURRENCY:                str = "PHP"

    # ── Carts ─────────────────────────────────
    CART_TTL_DAYS: int = 30

    # ── Shortcuts ─────────────────────────────
    @property
    def is_production(self) -> bool:
        return self.ENV == "production"

    @property
    def is_dev(self) -> bool:
        return self.ENV == "development"

    @property
    def show_dev_links(self) -> bool:
        return self.is_dev or self.SHOW_DEV_LINKS

    @property
    def paymongo_ready(self) -> bool:
        return bool(self.PAYMONGO_SECRET_KEY)

    @property
    def email_ready(self) -> bool:
        return bool(self.RESEND_API_KEY)

    def __repr__(self):
        return (
            f"<Config env={self.ENV} "
            f"paymongo={'✓' if self.paymongo_ready else '✗'} "
            f"email={'✓' if self.email_ready else '✗'}>"
        )


# Single global instance: import this everywhere
cfg = Config()
