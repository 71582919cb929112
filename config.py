from __future__ import annotations

import os


def _env_str(name: str, default: str = "") -> str:
    return str(os.getenv(name, default) or default).strip()


def _env_int(name: str, default: int) -> int:
    try:
        return int(str(os.getenv(name, "") or "").strip() or default)
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = str(os.getenv(name, "") or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


def _env_csv(name: str, default: str = "") -> list[str]:
    return [p.strip() for p in _env_str(name, default).split(",") if p.strip()]


NOTIFY_DELIVERY_MODES = {"celery", "inline", "off"}


class Config:
    """Process configuration. Read once at startup (after load_dotenv)."""

    def __init__(self):
        self.APP_ENV = _env_str("APP_ENV", "development").lower()
        self.IS_PRODUCTION = self.APP_ENV in {"prod", "production"}
        self.APP_VERSION = _env_str("APP_VERSION", "0.1.0")
        self.HOST = _env_str("HOST", "0.0.0.0")
        self.PORT = _env_int("PORT", 5000)
        self.LOG_LEVEL = _env_str("LOG_LEVEL", "INFO").upper()
        self.APP_TIMEZONE = _env_str("APP_TIMEZONE", "UTC")

        self.DATABASE_URL = _env_str("DATABASE_URL", "sqlite:///./hr_lifecycle.db")
        self.DB_POOL_SIZE = _env_int("DB_POOL_SIZE", 5)
        self.DB_MAX_OVERFLOW = _env_int("DB_MAX_OVERFLOW", 10)

        self.ALLOWED_ORIGINS = _env_csv("ALLOWED_ORIGINS", "http://localhost:3000")

        self.GOOGLE_CLIENT_ID = _env_str("GOOGLE_CLIENT_ID")
        self.ALLOW_TEST_TOKENS = _env_bool("ALLOW_TEST_TOKENS", False)
        self.SESSION_TTL_MINUTES = max(5, _env_int("SESSION_TTL_MINUTES", 480))

        self.RATE_LIMIT_GLOBAL = _env_int("RATE_LIMIT_GLOBAL", 600)
        self.RATE_LIMIT_DEFAULT = _env_int("RATE_LIMIT_DEFAULT", 120)
        self.RATE_LIMIT_LOGIN = _env_int("RATE_LIMIT_LOGIN", 20)

        self.UPLOAD_DIR = _env_str("UPLOAD_DIR", "./uploads")
        self.MAX_UPLOAD_BYTES = _env_int("MAX_UPLOAD_BYTES", 5 * 1024 * 1024)

        self.NOTIFY_DELIVERY_MODE = _env_str("NOTIFY_DELIVERY_MODE", "celery").lower()
        self.NOTIFY_WEBHOOK_URL = _env_str("NOTIFY_WEBHOOK_URL")
        self.NOTIFY_WEBHOOK_TOKEN = _env_str("NOTIFY_WEBHOOK_TOKEN")
        self.NOTIFY_MAX_ATTEMPTS = max(1, _env_int("NOTIFY_MAX_ATTEMPTS", 5))
        self.NOTIFY_BATCH_SIZE = max(1, _env_int("NOTIFY_BATCH_SIZE", 100))

        self.IDP_REVOKE_URL = _env_str("IDP_REVOKE_URL")
        self.MAIL_DEACTIVATE_URL = _env_str("MAIL_DEACTIVATE_URL")
        self.APPS_DEPROVISION_URL = _env_str("APPS_DEPROVISION_URL")
        self.DEPROVISION_TOKEN = _env_str("DEPROVISION_TOKEN")
        self.OUTBOUND_TIMEOUT_SECONDS = max(1, _env_int("OUTBOUND_TIMEOUT_SECONDS", 10))

        self.INTERNAL_CRON_TOKEN = _env_str("INTERNAL_CRON_TOKEN")

        self.REDIS_URL = _env_str("REDIS_URL")
        self.ENABLE_SCHEDULER = _env_bool("ENABLE_SCHEDULER", False)
        self.SCHEDULER_HOUR = max(0, min(23, _env_int("SCHEDULER_HOUR", 6)))
        self.SCHEDULER_MINUTE = max(0, min(59, _env_int("SCHEDULER_MINUTE", 0)))

    def validate(self) -> None:
        if self.NOTIFY_DELIVERY_MODE not in NOTIFY_DELIVERY_MODES:
            raise RuntimeError(f"NOTIFY_DELIVERY_MODE must be one of {sorted(NOTIFY_DELIVERY_MODES)}")
        if self.IS_PRODUCTION:
            if self.ALLOW_TEST_TOKENS:
                raise RuntimeError("ALLOW_TEST_TOKENS must be off in production")
            if not self.GOOGLE_CLIENT_ID:
                raise RuntimeError("GOOGLE_CLIENT_ID is required in production")
            if self.DATABASE_URL.startswith("sqlite"):
                raise RuntimeError("SQLite is not supported in production")
        if self.MAX_UPLOAD_BYTES <= 0:
            raise RuntimeError("MAX_UPLOAD_BYTES must be positive")
