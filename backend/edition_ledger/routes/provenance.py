# Overview: Flask API routes for provenance reads and ownership transfer.

from flask import Blueprint, jsonify, g, current_app

from ..decorators import json_error, require_json
from ..extensions import db
from ..models import LineItem
from ..services import ledger_service, ownership_service
from ..validation import NotFoundError, ValidationError, optional_string

"""
Read semantics:
- events are ordered by (created_at, id) ascending, i.e. commit order per edition
- edition_number on an event is the number in effect when it was recorded
- verify is an on-demand audit (full history scan + replay), not a hot path
"""

provenance_bp = Blueprint("provenance", __name__, url_prefix="/api/provenance")


def _get_item_or_404(line_item_id: str):
    item = db.session.get(LineItem, line_item_id)
    if item is None:
        return None, json_error("not_found", f"Line item {line_item_id} not found", 404)
    return item, None


@provenance_bp.get("/<line_item_id>")
def provenance_route(line_item_id: str):
    item, err = _get_item_or_404(line_item_id)
    if err:
        return err
    return jsonify(ledger_service.provenance_record(item)), 200


@provenance_bp.get("/<line_item_id>/verify")
def verify_route(line_item_id: str):
    item, err = _get_item_or_404(line_item_id)
    if err:
        return err
    report = ledger_service.verify_integrity(item.line_item_id)
    return jsonify(report.to_dict()), 200


@provenance_bp.get("/<line_item_id>/ownership")
def ownership_history_route(line_item_id: str):
    item, err = _get_item_or_404(line_item_id)
    if err:
        return err
    transfers = ledger_service.get_ownership_history(item.line_item_id)
    return jsonify({
        "lineItemId": item.line_item_id,
        "currentOwner": ledger_service.get_current_owner(item.line_item_id, item.order_id),
        "transferCount": len(transfers),
        "transfers": [ev.to_dict() for ev in transfers],
    }), 200


@provenance_bp.get("/<line_item_id>/replay")
def replay_route(line_item_id: str):
    item, err = _get_item_or_404(line_item_id)
    if err:
        return err
    state = ledger_service.replay(ledger_service.get_history(item.line_item_id))
    return jsonify({"lineItemId": item.line_item_id, "state": ledger_service.state_to_dict(state)}), 200


@provenance_bp.post("/<line_item_id>/transfer")
@require_json
def transfer_route(line_item_id: str):
    """
    Request: {"ownerId"?, "ownerName"?, "ownerEmail"?} (at least one)
    """
    try:
        item = ownership_service.transfer_ownership(
            line_item_id,
            owner_id=optional_string(g.payload, "ownerId"),
            owner_name=optional_string(g.payload, "ownerName"),
            owner_email=optional_string(g.payload, "ownerEmail"),
            actor=g.actor,
        )
        return jsonify({
            "success": True,
            "lineItemId": item.line_item_id,
            "currentOwner": ledger_service.get_current_owner(item.line_item_id, item.order_id),
        }), 200
    except ValidationError as e:
        return json_error("validation_error", str(e), 400)
    except NotFoundError as e:
        return json_error("not_found", str(e), 404)
    except ledger_service.LedgerWriteError as e:
        current_app.logger.error("Failed to record ownership transfer: %s", e)
        return json_error("ledger_write_failed", "Ownership transfer could not be recorded", 500)
    except Exception:
        current_app.logger.exception("Failed to transfer ownership")
        return json_error("internal_error", "Internal server error", 500)
