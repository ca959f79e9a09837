# backend/edition_ledger/routes/nfc.py
"""
NFC claim routes

- GET  /auth/nfc/<token>?tagId=...  - Claim link opened by a tag tap or QR code.
                                      Success redirects to the artwork view with
                                      ?authenticated=true.
- POST /api/nfc-tags/claim          - Same claim for the in-app pairing flow,
                                      answered as JSON.

Repeat taps on an already claimed edition succeed without writing anything.
"""

from urllib.parse import urlencode

from flask import Blueprint, request, jsonify, redirect, current_app

from ..decorators import current_actor, json_error
from ..services import claim_service
from ..services.claim_service import ClaimError
from ..services.concurrency import ConcurrencyConflict
from ..services.ledger_service import LedgerWriteError
from ..services.token_service import InvalidTokenError, TokenConfigurationError
from ..validation import NotFoundError


nfc_bp = Blueprint("nfc", __name__)


def _claim_or_error(token: str, tag_id: str | None):
    """Returns (ClaimResult, None) or (None, error response)."""
    try:
        return claim_service.claim_edition(token, tag_id, actor=current_actor()), None
    except InvalidTokenError as e:
        current_app.logger.info("Rejected NFC claim token (%s)", e.reason)
        return None, json_error("invalid_token", str(e), 400)
    except NotFoundError as e:
        current_app.logger.info("NFC claim for unknown line item: %s", e)
        return None, json_error("not_found", str(e), 404)
    except ClaimError as e:
        return None, json_error("claim_failed", str(e), 400)
    except ConcurrencyConflict as e:
        current_app.logger.warning("NFC claim conflict: %s", e)
        return None, json_error("conflict", "Claim is being processed, please retry", 409)
    except TokenConfigurationError:
        current_app.logger.exception("Claim token secret is not configured")
        return None, json_error("configuration_error", "NFC claims are not configured", 500)
    except LedgerWriteError as e:
        current_app.logger.error("NFC claim not recorded: %s", e)
        return None, json_error("ledger_write_failed", "Claim could not be recorded", 500)
    except Exception:
        current_app.logger.exception("Failed to claim NFC tag")
        return None, json_error("internal_error", "Internal server error", 500)


@nfc_bp.get("/auth/nfc/<token>")
def nfc_claim_link_route(token: str):
    claim, err = _claim_or_error(token, request.args.get("tagId"))
    if err:
        return err

    template = current_app.config.get("ARTWORK_DETAIL_URL", "/collector/artwork/{line_item_id}")
    target = template.format(line_item_id=claim.line_item_id)
    separator = "&" if "?" in target else "?"
    return redirect(f"{target}{separator}{urlencode({'authenticated': 'true'})}", code=302)


@nfc_bp.post("/api/nfc-tags/claim")
def nfc_claim_route():
    """
    Request: {"token": "...", "tagId"?: "..."}
    Response: {"success": true, "lineItemId", "editionNumber", "tagId", "claimedAt", "alreadyClaimed"}
    """
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict) or not isinstance(payload.get("token"), str) or not payload["token"]:
        return json_error("validation_error", "token is required", 400)
    tag_id = payload.get("tagId")
    if tag_id is not None and not isinstance(tag_id, str):
        return json_error("validation_error", "tagId must be a string", 400)

    claim, err = _claim_or_error(payload["token"], tag_id)
    if err:
        return err
    return jsonify(claim.to_dict()), 200
