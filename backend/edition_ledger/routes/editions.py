# backend/edition_ledger/routes/editions.py
"""
Edition numbering API routes

- POST /api/editions/assign                   - Renumber a product ({productId})
- POST /api/editions/status                   - Change one line item's status and resequence
- POST /api/editions/status/batch             - Many status changes, one pass per product
- POST /api/editions/line-items               - Ingest a line item from an order
- POST /api/editions/line-items/:id/claim-token - Issue a signed claim link
- GET  /api/editions/products/:id             - Active editions of a product
- GET  /api/editions/products/:id/audit       - Numbering invariant check
- GET  /api/editions/collectors/:id           - Editions owned by a collector (id or email)

Failures are returned to the calling tool as error responses; nothing here
swallows a failed assignment.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import json_error, require_json
from ..services import claim_service, edition_service, resequence_service
from ..services.claim_service import ClaimError
from ..services.concurrency import ConcurrencyConflict
from ..services.edition_service import CapacityExceededError
from ..services.ledger_service import LedgerWriteError
from ..services.resequence_service import StatusChange
from ..services.token_service import TokenConfigurationError
from ..time_utils import parse_iso_datetime
from ..validation import (
    MAX_TOKEN_TTL_SECONDS,
    ConflictError,
    NotFoundError,
    ValidationError,
    optional_int,
    optional_string,
    require_string,
)


editions_bp = Blueprint("editions", __name__, url_prefix="/api/editions")


def _numbering_error(exc: Exception, what: str):
    """Map numbering failures to responses; unexpected errors are logged with traceback."""
    if isinstance(exc, ValidationError):
        return json_error("validation_error", str(exc), 400)
    if isinstance(exc, NotFoundError):
        current_app.logger.info("%s: %s", what, exc)
        return json_error("not_found", str(exc), 404)
    if isinstance(exc, CapacityExceededError):
        return json_error("capacity_exceeded", str(exc), 409)
    if isinstance(exc, (ConcurrencyConflict, ConflictError)):
        current_app.logger.warning("%s: %s", what, exc)
        return json_error("conflict", str(exc), 409)
    if isinstance(exc, LedgerWriteError):
        current_app.logger.error("%s: %s", what, exc)
        return json_error("ledger_write_failed", "Edition history could not be recorded; no changes were saved", 500)
    current_app.logger.exception(what)
    return json_error("internal_error", "Internal server error", 500)


@editions_bp.post("/assign")
@require_json
def assign_route():
    """
    Request: {"productId": "..."}
    Response: {"success": true, "productId": "...", "editionNumbersAssigned": N}
    """
    try:
        product_id = require_string(g.payload, "productId")
        count = edition_service.assign_product(product_id, actor=g.actor)
        return jsonify({"success": True, "productId": product_id, "editionNumbersAssigned": count}), 200
    except Exception as e:
        return _numbering_error(e, "Failed to assign edition numbers")


@editions_bp.post("/status")
@require_json
def change_status_route():
    """
    Request: {"lineItemId", "orderId", "status": "active"|"inactive", "reason"?}
    """
    try:
        result = resequence_service.change_line_item_status(
            require_string(g.payload, "lineItemId"),
            require_string(g.payload, "orderId"),
            require_string(g.payload, "status"),
            reason=optional_string(g.payload, "reason"),
            actor=g.actor,
        )
        return jsonify(result.to_dict()), 200
    except Exception as e:
        return _numbering_error(e, "Failed to change line item status")


@editions_bp.post("/status/batch")
@require_json
def change_status_batch_route():
    """
    Request: {"changes": [{"lineItemId", "orderId", "status", "reason"?}, ...]}
    Response: {"results": [{"productId", "success", "editionNumbersAssigned"|"error"}, ...]}
    """
    try:
        raw = g.payload.get("changes")
        if not isinstance(raw, list) or not raw:
            raise ValidationError("changes must be a non-empty list")
        changes = []
        for entry in raw:
            if not isinstance(entry, dict):
                raise ValidationError("each change must be an object")
            changes.append(StatusChange(
                line_item_id=require_string(entry, "lineItemId"),
                order_id=require_string(entry, "orderId"),
                status=require_string(entry, "status"),
                reason=optional_string(entry, "reason"),
            ))
        results = resequence_service.change_statuses_batch(changes, actor=g.actor)
        return jsonify({
            "success": all(r.success for r in results),
            "results": [r.to_dict() for r in results],
        }), 200
    except Exception as e:
        return _numbering_error(e, "Failed to apply batch status changes")


@editions_bp.post("/line-items")
@require_json
def ingest_line_item_route():
    try:
        created_raw = optional_string(g.payload, "createdAt")
        try:
            created_at = parse_iso_datetime(created_raw)
        except ValueError:
            raise ValidationError("createdAt must be an ISO-8601 datetime")

        item = resequence_service.ingest_line_item(
            line_item_id=require_string(g.payload, "lineItemId"),
            order_id=require_string(g.payload, "orderId"),
            product_id=require_string(g.payload, "productId"),
            status=optional_string(g.payload, "status"),
            fulfillment_status=optional_string(g.payload, "fulfillmentStatus"),
            edition_total=optional_int(g.payload, "editionTotal", minimum=1),
            owner_id=optional_string(g.payload, "ownerId"),
            owner_name=optional_string(g.payload, "ownerName"),
            owner_email=optional_string(g.payload, "ownerEmail"),
            created_at=created_at,
            actor=g.actor,
        )
        return jsonify({"lineItem": item.to_dict()}), 201
    except Exception as e:
        return _numbering_error(e, "Failed to ingest line item")


@editions_bp.post("/line-items/<line_item_id>/claim-token")
def issue_claim_token_route(line_item_id: str):
    payload = request.get_json(silent=True) or {}
    try:
        ttl = optional_int(payload, "ttlSeconds", minimum=1, maximum=MAX_TOKEN_TTL_SECONDS)
        issued = claim_service.issue_claim_token(line_item_id, ttl_seconds=ttl)
        return jsonify(issued), 201
    except ValidationError as e:
        return json_error("validation_error", str(e), 400)
    except NotFoundError as e:
        return json_error("not_found", str(e), 404)
    except ClaimError as e:
        return json_error("not_claimable", str(e), 400)
    except TokenConfigurationError:
        current_app.logger.exception("Claim token secret is not configured")
        return json_error("configuration_error", "Claim tokens are not configured", 500)
    except Exception:
        current_app.logger.exception("Failed to issue claim token")
        return json_error("internal_error", "Internal server error", 500)


@editions_bp.get("/products/<product_id>")
def product_editions_route(product_id: str):
    include_history = request.args.get("includeHistory", "false").lower() in ("1", "true", "yes")
    editions = edition_service.product_editions(product_id, include_history=include_history)
    return jsonify({
        "productId": product_id,
        "totalEditions": len(editions),
        "editions": editions,
    }), 200


@editions_bp.get("/products/<product_id>/audit")
def product_audit_route(product_id: str):
    audit = edition_service.audit_product_numbering(product_id)
    return jsonify(audit.to_dict()), 200


@editions_bp.get("/collectors/<collector>")
def collector_editions_route(collector: str):
    editions = edition_service.collector_editions(collector)
    return jsonify({"collector": collector, "editions": editions}), 200
