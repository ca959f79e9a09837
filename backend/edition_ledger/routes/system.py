# backend/edition_ledger/routes/system.py
"""
System health endpoints.

Checks the datastore and the claim-token configuration, the two things
every claim and resequencing request depends on.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import LineItem, EditionEvent
from ..services import token_service
from ..time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity with the two hot tables.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        line_item_count = db.session.query(LineItem).count()
        event_count = db.session.query(EditionEvent).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "line_items": line_item_count,
                "edition_events": event_count,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_token_config_health() -> dict:
    """Claims cannot work without a signing secret; report it as unhealthy."""
    try:
        token_service.signing_secret()
        return {"status": "healthy"}
    except token_service.TokenConfigurationError as e:
        return {"status": "unhealthy", "error": str(e)}


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: All systems healthy
    - 503: One or more systems unhealthy
    """
    start_time = time.time()

    database_health = check_database_health()
    token_health = check_token_config_health()

    all_checks = [database_health, token_health]
    unhealthy = any(check["status"] == "unhealthy" for check in all_checks)

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": "unhealthy" if unhealthy else "healthy",
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "claim_tokens": token_health,
        }
    }

    return response, 503 if unhealthy else 200
