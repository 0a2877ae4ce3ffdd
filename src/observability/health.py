from __future__ import annotations

import logging
from typing import Dict

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from src.database import SessionLocal, engine

logger = logging.getLogger(__name__)


def check_database_health() -> Dict[str, str]:
    """Attempt a lightweight DB query to ensure connectivity."""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return {"status": "UP"}
    except SQLAlchemyError as exc:
        return {"status": "DOWN", "detail": str(exc)}


def check_payment_gateway_config() -> Dict[str, str]:
    """Report whether merchant credentials resolve; no call is made to the provider."""
    from src.services.settings_service import SettingsService

    db = SessionLocal()
    try:
        gateway = SettingsService(db).resolve().gateway
    except SQLAlchemyError as exc:
        logger.warning("Could not resolve gateway settings: %s", exc)
        return {"status": "UNKNOWN", "detail": str(exc)}
    finally:
        db.close()

    if not gateway.is_configured:
        return {"status": "MISCONFIGURED", "mode": "live" if gateway.is_live else "sandbox"}
    return {"status": "CONFIGURED", "mode": "live" if gateway.is_live else "sandbox"}
