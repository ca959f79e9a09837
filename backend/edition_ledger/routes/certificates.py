# Overview: Flask API routes for the certificate generator callback.

from flask import Blueprint, jsonify, g, current_app

from ..decorators import json_error, require_json
from ..services import certificate_service
from ..services.ledger_service import LedgerWriteError
from ..validation import NotFoundError, ValidationError, require_string


certificates_bp = Blueprint("certificates", __name__, url_prefix="/api/certificates")


@certificates_bp.post("/<line_item_id>/generated")
@require_json
def certificate_generated_route(line_item_id: str):
    """
    Called by the external generator once a certificate exists.

    Request: {"certificateUrl": "..."}
    """
    try:
        item = certificate_service.record_certificate(
            line_item_id,
            require_string(g.payload, "certificateUrl"),
            actor=g.actor,
        )
        return jsonify({"success": True, "lineItem": item.to_dict()}), 200
    except ValidationError as e:
        return json_error("validation_error", str(e), 400)
    except NotFoundError as e:
        return json_error("not_found", str(e), 404)
    except LedgerWriteError as e:
        current_app.logger.error("Certificate not recorded: %s", e)
        return json_error("ledger_write_failed", "Certificate could not be recorded", 500)
    except Exception:
        current_app.logger.exception("Failed to record certificate")
        return json_error("internal_error", "Internal server error", 500)
