import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    cors_origins: str

    admin_registration_key: str
    supergod_registration_key: str

    payment_api_key: str
    payment_webhook_secret: str
    payment_api_base: str
    app_base_url: str


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///central.db"),
        cors_origins=_getenv("CORS_ORIGINS", ""),
        admin_registration_key=_getenv("ADMIN_REGISTRATION_KEY", ""),
        supergod_registration_key=_getenv("SUPERGOD_REGISTRATION_KEY", ""),
        payment_api_key=_getenv("PAYMENT_API_KEY", ""),
        payment_webhook_secret=_getenv("PAYMENT_WEBHOOK_SECRET", ""),
        payment_api_base=_getenv("PAYMENT_API_BASE", "https://api.stripe.com"),
        app_base_url=_getenv("APP_BASE_URL", "http://localhost:5000"),
    )


def is_production(env: str | None) -> bool:
    return (env or "").strip().lower() in ("prod", "production")


def load_config() -> dict:
    s = load_settings()
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "CORS_ORIGINS": [o.strip() for o in s.cors_origins.split(",") if o.strip()],
        "ADMIN_REGISTRATION_KEY": s.admin_registration_key,
        "SUPERGOD_REGISTRATION_KEY": s.supergod_registration_key,
        "PAYMENT_API_KEY": s.payment_api_key,
        "PAYMENT_WEBHOOK_SECRET": s.payment_webhook_secret,
        "PAYMENT_API_BASE": s.payment_api_base,
        "APP_BASE_URL": s.app_base_url,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production(s.env),  # Require HTTPS in production
        # SPA clients may post urlencoded forms up to 50MB
        "MAX_CONTENT_LENGTH": 50 * 1024 * 1024,
    }
