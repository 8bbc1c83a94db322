"""
Configuration management.

The ``Settings`` dataclass reads configuration directly from
environment variables, with defaults for every field.  A single
``settings`` instance is created at import time; tests override its
attributes instead of re-reading the environment.
"""

import os
from dataclasses import dataclass


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


@dataclass
class Settings:
    """Application settings loaded from environment variables."""

    project_name: str = os.getenv("PROJECT_NAME", "GateFlow API")
    api_version: str = os.getenv("API_VERSION", "1.0.0")
    build_id: str = os.getenv("BUILD_ID", "dev")
    environment: str = os.getenv("ENVIRONMENT", "development")
    debug: bool = _env_flag("DEBUG")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_file: str = os.getenv("LOG_FILE", "")

    # Admin session tokens (see core.security)
    secret_key: str = os.getenv("SECRET_KEY", "change_me")
    access_token_expire_minutes: int = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24)))

    # Administrator created on first start when both values are set.
    admin_email: str = os.getenv("ADMIN_EMAIL", "")
    admin_password: str = os.getenv("ADMIN_PASSWORD", "")

    # Path to the SQLite database.  Relative paths are resolved against
    # the project root by ``core.db``.
    database_url: str = os.getenv("DATABASE_URL", "gateflow.db")

    # Public site origin used for CORS.  Local development origins are
    # always allowed.
    site_url: str = os.getenv("SITE_URL", "")

    # Webhook delivery.  Plain http targets are refused unless explicitly
    # enabled, which is only meant for local testing.
    allow_http_webhooks: bool = _env_flag("ALLOW_HTTP_WEBHOOKS")
    webhook_timeout_seconds: float = float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "5"))

    # Stripe credentials for refunds.
    stripe_secret_key: str = os.getenv("STRIPE_SECRET_KEY", "")
    stripe_api_base: str = os.getenv("STRIPE_API_BASE", "https://api.stripe.com/v1")

    rate_limit_enabled: bool = _env_flag("RATE_LIMIT_ENABLED", "true")


settings = Settings()
