"""Centralized application configuration for all environments."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Final

from dotenv import load_dotenv

BASE_DIR: Final[Path] = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"

# Runtime env wins over .env values
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

    fallback_path = BASE_DIR / "db" / "app.db"
    fallback_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{fallback_path.as_posix()}"


class Config:
    """Default runtime configuration shared across Flask, services, and scripts."""

    APP_NAME: Final[str] = os.getenv("APP_NAME", "Infinity Gaming Lounge")
    APP_ENV: Final[str] = os.getenv("APP_ENV", "development")
    LOUNGE_NAME: Final[str] = os.getenv("LOUNGE_NAME", "Infinity Gaming Lounge")
    CURRENCY: Final[str] = os.getenv("CURRENCY", "KES")

    SECRET_KEY: Final[str] = os.getenv("SECRET_KEY", "change-me-in-prod")
    DEBUG: Final[bool] = _str_to_bool(os.getenv("FLASK_DEBUG"), default=APP_ENV == "development")
    TESTING: Final[bool] = _str_to_bool(os.getenv("FLASK_TESTING"), default=False)

    FLASK_RUN_HOST: Final[str] = os.getenv("FLASK_RUN_HOST", "0.0.0.0")
    FLASK_RUN_PORT: Final[int] = int(os.getenv("FLASK_RUN_PORT", "5000"))

    # Database
    DATABASE_URL: Final[str] = _determine_database_url()
    SQL_ECHO: Final[bool] = _str_to_bool(os.getenv("SQL_ECHO"), default=False)
    DB_POOL_SIZE: Final[int] = int(os.getenv("DB_POOL_SIZE", "10"))
    DB_MAX_OVERFLOW: Final[int] = int(os.getenv("DB_MAX_OVERFLOW", "20"))
    DB_WAIT_ATTEMPTS: Final[int] = int(os.getenv("DB_WAIT_ATTEMPTS", "30"))
    DB_WAIT_INTERVAL: Final[int] = int(os.getenv("DB_WAIT_INTERVAL", "2"))

    # Pricing
    DEFAULT_GAME_PRICE: Final[float] = float(os.getenv("DEFAULT_GAME_PRICE", "40"))
    DEFAULT_HOURLY_RATE: Final[float] = float(os.getenv("DEFAULT_HOURLY_RATE", "200"))
    BILLING_INCREMENT_MINUTES: Final[int] = int(os.getenv("BILLING_INCREMENT_MINUTES", "15"))
    MINIMUM_BILLED_MINUTES: Final[int] = int(os.getenv("MINIMUM_BILLED_MINUTES", "60"))
    PEAK_HOURS_START: Final[int] = int(os.getenv("PEAK_HOURS_START", "17"))
    PEAK_HOURS_END: Final[int] = int(os.getenv("PEAK_HOURS_END", "23"))
    DEFAULT_TIMEZONE: Final[str] = os.getenv("DEFAULT_TIMEZONE", "Africa/Nairobi")

    # Loyalty
    POINTS_PER_GAME: Final[int] = int(os.getenv("POINTS_PER_GAME", "5"))
    POINTS_PER_KES: Final[int] = int(os.getenv("POINTS_PER_KES", "10"))
    STREAK_LENGTH: Final[int] = int(os.getenv("STREAK_LENGTH", "5"))
    STREAK_MAX_GAP_MINUTES: Final[int] = int(os.getenv("STREAK_MAX_GAP_MINUTES", "30"))
    REFERRAL_BONUS_POINTS: Final[int] = int(os.getenv("REFERRAL_BONUS_POINTS", "10"))
    POINTS_REDEMPTION_RATE: Final[int] = int(os.getenv("POINTS_REDEMPTION_RATE", "1"))

    # M-Pesa (Daraja)
    MPESA_ENVIRONMENT: Final[str] = os.getenv("MPESA_ENVIRONMENT", "sandbox")
    MPESA_CONSUMER_KEY: Final[str] = os.getenv("MPESA_CONSUMER_KEY", "")
    MPESA_CONSUMER_SECRET: Final[str] = os.getenv("MPESA_CONSUMER_SECRET", "")
    MPESA_SHORTCODE: Final[str] = os.getenv("MPESA_SHORTCODE", "174379")
    MPESA_PASSKEY: Final[str] = os.getenv("MPESA_PASSKEY", "")
    MPESA_CALLBACK_URL: Final[str] = os.getenv("MPESA_CALLBACK_URL", "http://localhost:5000/api/mpesa/callback")
    MPESA_TRANSACTION_TYPE: Final[str] = os.getenv("MPESA_TRANSACTION_TYPE", "CustomerPayBillOnline")
    MPESA_INITIATOR_NAME: Final[str] = os.getenv("MPESA_INITIATOR_NAME", "testapi")
    MPESA_SECURITY_CREDENTIAL: Final[str] = os.getenv("MPESA_SECURITY_CREDENTIAL", "")
    MPESA_RESULT_URL: Final[str] = os.getenv("MPESA_RESULT_URL", "http://localhost:5000/api/mpesa/result")
    MPESA_TIMEOUT_URL: Final[str] = os.getenv("MPESA_TIMEOUT_URL", "http://localhost:5000/api/mpesa/timeout")
    MPESA_TOKEN_TTL_SECONDS: Final[int] = int(os.getenv("MPESA_TOKEN_TTL_SECONDS", str(55 * 60)))

    # Airtel Money
    AIRTEL_ENVIRONMENT: Final[str] = os.getenv("AIRTEL_ENVIRONMENT", "mock")
    AIRTEL_CLIENT_ID: Final[str] = os.getenv("AIRTEL_CLIENT_ID", "")
    AIRTEL_CLIENT_SECRET: Final[str] = os.getenv("AIRTEL_CLIENT_SECRET", "")
    AIRTEL_COUNTRY: Final[str] = os.getenv("AIRTEL_COUNTRY", "KE")
    AIRTEL_CURRENCY: Final[str] = os.getenv("AIRTEL_CURRENCY", "KES")
    AIRTEL_MOCK_COMPLETION_SECONDS: Final[int] = int(os.getenv("AIRTEL_MOCK_COMPLETION_SECONDS", "10"))

    # Outbound HTTP
    PROVIDER_TIMEOUT_SECONDS: Final[int] = int(os.getenv("PROVIDER_TIMEOUT_SECONDS", "30"))
    PROVIDER_RETRY_ATTEMPTS: Final[int] = int(os.getenv("PROVIDER_RETRY_ATTEMPTS", "3"))

    # Realtime
    REALTIME_ENABLED: Final[bool] = _str_to_bool(os.getenv("REALTIME_ENABLED"), default=True)
    SOCKETIO_CORS_ORIGINS: Final[str] = os.getenv("SOCKETIO_CORS_ORIGINS", "*")

    # Observability
    STRUCTURED_LOGS_ENABLED: Final[bool] = _str_to_bool(os.getenv("STRUCTURED_LOGS_ENABLED"), default=True)
    LOG_LEVEL: Final[str] = os.getenv("LOG_LEVEL", "INFO")
    REQUEST_ID_HEADER: Final[str] = os.getenv("REQUEST_ID_HEADER", "X-Request-ID")
    OBSERVABILITY_ENABLED: Final[bool] = _str_to_bool(os.getenv("OBSERVABILITY_ENABLED"), default=True)
    PAYMENT_DEBUG_LOG: Final[Path] = Path(
        os.getenv("PAYMENT_DEBUG_LOG", (BASE_DIR / "logs" / "payment_debug.log").as_posix())
    )
    PAYMENT_DEBUG_LOG_ENABLED: Final[bool] = _str_to_bool(os.getenv("PAYMENT_DEBUG_LOG_ENABLED"), default=True)
    DASHBOARD_REVENUE_DAYS: Final[int] = int(os.getenv("DASHBOARD_REVENUE_DAYS", "7"))

    # Demo accounts created by `flask seed-demo`
    DEMO_ADMIN_PHONE: Final[str] = os.getenv("DEMO_ADMIN_PHONE", "254700000001")
    DEMO_ADMIN_PASSWORD: Final[str] = os.getenv("DEMO_ADMIN_PASSWORD", "admin_lounge_2025")
    DEMO_STAFF_PHONE: Final[str] = os.getenv("DEMO_STAFF_PHONE", "254700000002")
    DEMO_STAFF_PASSWORD: Final[str] = os.getenv("DEMO_STAFF_PASSWORD", "staff_lounge_2025")

    @classmethod
    def configure_app(cls, app: Any) -> None:
        """Apply core configuration to a Flask app instance."""
        app.config["SECRET_KEY"] = cls.SECRET_KEY
        app.config["ENV"] = cls.APP_ENV
        app.config["DEBUG"] = cls.DEBUG
        app.config["TESTING"] = cls.TESTING
        app.config["SQLALCHEMY_DATABASE_URI"] = cls.DATABASE_URL
        app.config["SQLALCHEMY_ECHO"] = cls.SQL_ECHO
        app.config["LOUNGE_NAME"] = cls.LOUNGE_NAME
        app.config["CURRENCY"] = cls.CURRENCY
        app.config["REALTIME_ENABLED"] = cls.REALTIME_ENABLED
        app.config["STRUCTURED_LOGS_ENABLED"] = cls.STRUCTURED_LOGS_ENABLED
        app.config["OBSERVABILITY_ENABLED"] = cls.OBSERVABILITY_ENABLED
