import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    app_base_url: str

    stripe_secret_key: str
    stripe_webhook_secret: str
    stripe_api_base: str
    payments_currency: str


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///pms.db"),
        app_base_url=_getenv("APP_BASE_URL", "http://localhost:5000"),
        stripe_secret_key=_getenv("STRIPE_SECRET_KEY", ""),
        stripe_webhook_secret=_getenv("STRIPE_WEBHOOK_SECRET", ""),
        stripe_api_base=_getenv("STRIPE_API_BASE", "https://api.stripe.com"),
        payments_currency=_getenv("PAYMENTS_CURRENCY", "usd").lower(),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "APP_BASE_URL": s.app_base_url.rstrip("/"),
        "STRIPE_SECRET_KEY": s.stripe_secret_key,
        "STRIPE_WEBHOOK_SECRET": s.stripe_webhook_secret,
        "STRIPE_API_BASE": s.stripe_api_base,
        "PAYMENTS_CURRENCY": s.payments_currency,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # form posts only; no uploads
        "MAX_CONTENT_LENGTH": 2 * 1024 * 1024,
    }
