from __future__ import annotations

from typing import Any, Dict

from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from lounge.config import Config
from lounge.database import engine


def check_database_health() -> Dict[str, str]:
    """Attempt a lightweight DB query to ensure connectivity."""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return {"status": "UP"}
    except OperationalError as exc:
        return {"status": "DOWN", "detail": str(exc)}


def check_payment_providers(config: type[Config] = Config) -> Dict[str, Dict[str, Any]]:
    """Report whether each mobile-money provider has the credentials it needs.

    Missing credentials do not take the service down; cash and points
    payments keep working, so the provider is reported as UNCONFIGURED.
    """
    mpesa_ready = all(
        [config.MPESA_CONSUMER_KEY, config.MPESA_CONSUMER_SECRET, config.MPESA_SHORTCODE, config.MPESA_PASSKEY]
    )
    if config.AIRTEL_ENVIRONMENT == "mock":
        airtel_status = "UP"
    else:
        airtel_status = "UP" if config.AIRTEL_CLIENT_ID and config.AIRTEL_CLIENT_SECRET else "UNCONFIGURED"
    return {
        "mpesa": {
            "status": "UP" if mpesa_ready else "UNCONFIGURED",
            "environment": config.MPESA_ENVIRONMENT,
        },
        "airtel": {
            "status": airtel_status,
            "environment": config.AIRTEL_ENVIRONMENT,
        },
    }
