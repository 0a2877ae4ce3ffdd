"""Centralized application configuration for all environments."""
from __future__ import annotations

import os
from decimal import Decimal
from pathlib import Path
from typing import Any, Final

from dotenv import load_dotenv

BASE_DIR: Final[Path] = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"

# Runtime env wins over file values
load_dotenv(dotenv_path=ENV_PATH, override=False)


def _str_to_bool(value: str | bool | None, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _determine_database_url() -> str:
    """
    Return a connection string using the following precedence:
    1. Explicit DATABASE_URL
    2. Individual DB_* components (for PostgreSQL)
    3. Local SQLite fallback (for onboarding / tests)
    """
    explicit_url = os.getenv("DATABASE_URL")
    if explicit_url:
        return explicit_url

    username = os.getenv("DB_USERNAME")
    password = os.getenv("DB_PASSWORD")
    host = os.getenv("DB_HOST")
    port = os.getenv("DB_PORT")
    name = os.getenv("DB_NAME")

    if all([username, password, host, port, name]):
        driver = os.getenv("DB_DRIVER", "postgresql+psycopg2")
        return f"{driver}://{username}:{password}@{host}:{port}/{name}"

    fallback_path = BASE_DIR / "db" / "bookstore.db"
    fallback_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{fallback_path.as_posix()}"


class Config:
    """Process-level configuration. Values an admin may change at runtime live in SystemConfig."""

    APP_NAME: Final[str] = os.getenv("APP_NAME", "Bookstore Checkout")
    APP_ENV: Final[str] = os.getenv("APP_ENV", "development")

    SECRET_KEY: Final[str] = os.getenv("SECRET_KEY", "change-me-in-prod")
    DEBUG: Final[bool] = _str_to_bool(os.getenv("FLASK_DEBUG"), default=APP_ENV == "development")
    TESTING: Final[bool] = _str_to_bool(os.getenv("FLASK_TESTING"), default=False)

    FLASK_RUN_HOST: Final[str] = os.getenv("FLASK_RUN_HOST", "0.0.0.0")
    FLASK_RUN_PORT: Final[int] = int(os.getenv("FLASK_RUN_PORT", "5001"))

    # Database
    DATABASE_URL: Final[str] = _determine_database_url()
    SQL_ECHO: Final[bool] = _str_to_bool(os.getenv("SQL_ECHO"), default=False)
    DB_POOL_SIZE: Final[int] = int(os.getenv("DB_POOL_SIZE", "10"))
    DB_MAX_OVERFLOW: Final[int] = int(os.getenv("DB_MAX_OVERFLOW", "20"))

    # Public URLs used to build gateway redirect / callback targets
    FRONTEND_URL: Final[str] = os.getenv("FRONTEND_URL", "http://localhost:3000")
    API_BASE_URL: Final[str] = os.getenv("API_BASE_URL", "http://localhost:5001")

    # Payment gateway fallbacks (the SystemConfig row takes precedence)
    PHONEPE_MERCHANT_ID: Final[str] = os.getenv("PHONEPE_MERCHANT_ID", "")
    PHONEPE_SALT_KEY: Final[str] = os.getenv("PHONEPE_SALT_KEY", "")
    PHONEPE_SALT_INDEX: Final[int] = int(os.getenv("PHONEPE_SALT_INDEX", "1"))
    PAYMENT_LIVE_MODE: Final[bool] = _str_to_bool(os.getenv("PAYMENT_LIVE_MODE"), default=APP_ENV == "production")
    PHONEPE_LIVE_URL: Final[str] = os.getenv("PHONEPE_LIVE_URL", "https://api.phonepe.com/apis/hermes")
    PHONEPE_SANDBOX_URL: Final[str] = os.getenv(
        "PHONEPE_SANDBOX_URL", "https://api-preprod.phonepe.com/apis/pg-sandbox"
    )
    GATEWAY_TIMEOUT_SECONDS: Final[float] = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10"))

    # Pricing fallbacks
    TAX_RATE: Final[Decimal] = Decimal(os.getenv("TAX_RATE", "0.05"))
    SHIPPING_FEE: Final[int] = int(os.getenv("SHIPPING_FEE", "50"))

    # Pending payment reconciliation
    PENDING_PAYMENT_TIMEOUT_MINUTES: Final[int] = int(os.getenv("PENDING_PAYMENT_TIMEOUT_MINUTES", "20"))
    PAYMENT_SWEEP_ENABLED: Final[bool] = _str_to_bool(os.getenv("PAYMENT_SWEEP_ENABLED"), default=False)
    PAYMENT_SWEEP_INTERVAL_SECONDS: Final[int] = int(os.getenv("PAYMENT_SWEEP_INTERVAL_SECONDS", "900"))

    # Outbound mail
    STORE_NAME: Final[str] = os.getenv("STORE_NAME", "Chintamukti Books")
    SMTP_HOST: Final[str] = os.getenv("SMTP_HOST", "")
    SMTP_PORT: Final[int] = int(os.getenv("SMTP_PORT", "465"))
    SMTP_USERNAME: Final[str] = os.getenv("SMTP_USERNAME", "")
    SMTP_PASSWORD: Final[str] = os.getenv("SMTP_PASSWORD", "")
    SMTP_USE_SSL: Final[bool] = _str_to_bool(os.getenv("SMTP_USE_SSL"), default=True)
    SMTP_TIMEOUT_SECONDS: Final[float] = float(os.getenv("SMTP_TIMEOUT_SECONDS", "10"))
    MAIL_FROM: Final[str] = os.getenv("MAIL_FROM", "support@chintamukti.com")

    # Carrier callbacks
    DELIVERY_API_TOKEN: Final[str] = os.getenv("DELIVERY_API_TOKEN", "")

    # Observability
    STRUCTURED_LOGS_ENABLED: Final[bool] = _str_to_bool(os.getenv("STRUCTURED_LOGS_ENABLED"), default=True)
    LOG_LEVEL: Final[str] = os.getenv("LOG_LEVEL", "INFO")
    REQUEST_ID_HEADER: Final[str] = os.getenv("REQUEST_ID_HEADER", "X-Request-ID")
    MAX_RECORDED_EVENTS: Final[int] = int(os.getenv("MAX_RECORDED_EVENTS", "100"))

    @classmethod
    def configure_app(cls, app: Any) -> None:
        """Apply core configuration to a Flask app instance."""
        app.config["SECRET_KEY"] = cls.SECRET_KEY
        app.config["ENV"] = cls.APP_ENV
        app.config["DEBUG"] = cls.DEBUG
        app.config["TESTING"] = cls.TESTING
        app.config["SQLALCHEMY_DATABASE_URI"] = cls.DATABASE_URL
        app.config["SQLALCHEMY_ECHO"] = cls.SQL_ECHO
        app.config["STRUCTURED_LOGS_ENABLED"] = cls.STRUCTURED_LOGS_ENABLED
        app.config["PAYMENT_SWEEP_ENABLED"] = cls.PAYMENT_SWEEP_ENABLED
