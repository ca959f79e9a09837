# Overview: Service-layer operations for NFC claims; binds a physical tag to an edition exactly once.

"""
NFC Claim State Machine

STATES (per line item):
    UNCLAIMED -> CLAIMED   (terminal; there is no unclaim)

FLOW:
    1. Validate the signed token                       -> InvalidTokenError
    2. Load the line item named by the token           -> NotFoundError
    3. Already claimed?                                -> idempotent success, no writes
    4. Resolve tag id (scanned, or self-programmed-<ms timestamp>)
    5. Conditional UPDATE ... WHERE nfc_claimed_at IS NULL
         rowcount 0 => another claim won; re-read and answer as step 3
    6. Insert the nfc_tags binding (insert-or-fail on tag_id)
    7. Append nfc_authenticated, commit
    8. Hand off certificate generation (after commit, never fails the claim)

Steps 5-7 run in one transaction; the conditional update is the per-line-item
critical section, so only one writer ever reaches steps 6-7.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import EditionEventType, LineItem, NfcTag, STATUS_ACTIVE
from ..validation import NotFoundError
from edition_ledger.time_utils import from_epoch_seconds, to_utc_precise, to_utc_z, utcnow
from . import certificate_service, token_service
from .concurrency import ConcurrencyConflict, run_with_retry
from .ledger_service import append_edition_event


SELF_PROGRAMMED_PREFIX = "self-programmed-"


class ClaimError(ValueError):
    """The edition cannot be claimed (inactive, unnumbered, or tag bound elsewhere)."""


@dataclass
class ClaimResult:
    line_item_id: str
    order_id: str
    product_id: str
    edition_number: Optional[int]
    tag_id: Optional[str]
    claimed_at: Optional[datetime]
    already_claimed: bool

    def to_dict(self) -> dict:
        return {
            "success": True,
            "lineItemId": self.line_item_id,
            "orderId": self.order_id,
            "productId": self.product_id,
            "editionNumber": self.edition_number,
            "tagId": self.tag_id,
            "claimedAt": to_utc_z(self.claimed_at),
            "alreadyClaimed": self.already_claimed,
        }


def _result(item: LineItem, *, already_claimed: bool) -> ClaimResult:
    return ClaimResult(
        line_item_id=item.line_item_id,
        order_id=item.order_id,
        product_id=item.product_id,
        edition_number=item.edition_number,
        tag_id=item.nfc_tag_id,
        claimed_at=item.nfc_claimed_at,
        already_claimed=already_claimed,
    )


def self_programmed_tag_id(now: Optional[datetime] = None) -> str:
    stamp = now or utcnow()
    millis = int((stamp - datetime(1970, 1, 1)).total_seconds() * 1000)
    return f"{SELF_PROGRAMMED_PREFIX}{millis}"


def _bind_tag(tag_id: str, item: LineItem, claimed_at: datetime) -> None:
    """Insert-or-fail on tag_id; an existing binding to this same item is accepted."""
    try:
        with db.session.begin_nested():
            db.session.add(NfcTag(
                tag_id=tag_id,
                line_item_id=item.line_item_id,
                order_id=item.order_id,
                claimed_at=claimed_at,
            ))
    except IntegrityError:
        existing = db.session.get(NfcTag, tag_id)
        if existing is not None and existing.line_item_id == item.line_item_id:
            return
        if existing is None:
            # tag_id is free, so the line item already holds a different tag
            bound = db.session.query(NfcTag).filter_by(line_item_id=item.line_item_id).first()
            bound_id = bound.tag_id if bound is not None else "another tag"
            raise ClaimError(f"Line item {item.line_item_id} is already bound to NFC tag {bound_id}")
        if tag_id.startswith(SELF_PROGRAMMED_PREFIX):
            # Two self-programmed claims in the same millisecond; retry mints a new id.
            raise ConcurrencyConflict(f"Self-programmed tag id {tag_id} already taken")
        raise ClaimError(f"NFC tag {tag_id} has already been claimed")


def claim_edition(token: str, scanned_tag_id: Optional[str] = None, *, actor: Optional[str] = None) -> ClaimResult:
    """
    Authenticate an edition by binding an NFC tag to it.

    Raises:
        InvalidTokenError / ExpiredTokenError: bad token
        NotFoundError: token names an unknown line item
        ClaimError: edition not claimable or tag owned by another edition
    """
    payload = token_service.validate_token(token)
    line_item_id = payload.get("lineItemId")
    order_id = payload.get("orderId")
    if not line_item_id:
        raise token_service.InvalidTokenError(token_service.REASON_MALFORMED, "Token has no lineItemId")
    scanned_tag_id = (scanned_tag_id or "").strip() or None

    def _op() -> ClaimResult:
        q = db.session.query(LineItem).filter_by(line_item_id=str(line_item_id))
        if order_id:
            q = q.filter_by(order_id=str(order_id))
        item = q.first()
        if item is None:
            raise NotFoundError(f"Line item {line_item_id} not found")

        if item.nfc_claimed_at is not None:
            return _result(item, already_claimed=True)

        if item.status != STATUS_ACTIVE:
            raise ClaimError("Cannot claim NFC tag: item is not active")
        if item.edition_number is None:
            raise ClaimError("Cannot claim NFC tag: edition number not assigned")

        if scanned_tag_id:
            existing = db.session.get(NfcTag, scanned_tag_id)
            if existing is not None and existing.line_item_id != item.line_item_id:
                raise ClaimError(f"NFC tag {scanned_tag_id} has already been claimed")

        claimed_at = utcnow()
        tag_id = scanned_tag_id or self_programmed_tag_id(claimed_at)

        stmt = (
            update(LineItem)
            .where(
                LineItem.line_item_id == item.line_item_id,
                LineItem.nfc_claimed_at.is_(None),
            )
            .values(nfc_tag_id=tag_id, nfc_claimed_at=claimed_at, updated_at=claimed_at)
            .execution_options(synchronize_session=False)
        )
        result = db.session.execute(stmt)
        if not result.rowcount:
            # Lost the race: another claim committed first.
            db.session.rollback()
            winner = db.session.get(LineItem, item.line_item_id, populate_existing=True)
            return _result(winner, already_claimed=True)

        db.session.refresh(item)
        _bind_tag(tag_id, item, claimed_at)
        append_edition_event(
            line_item=item,
            event_type=EditionEventType.NFC_AUTHENTICATED,
            event_data={
                "tagId": tag_id,
                "claimedAt": to_utc_precise(claimed_at),
                "selfProgrammed": scanned_tag_id is None,
                "tokenExp": payload.get("exp"),
            },
            created_by=actor,
        )
        db.session.commit()
        return _result(item, already_claimed=False)

    claim = run_with_retry(_op)

    if not claim.already_claimed:
        certificate_service.request_certificate(claim.line_item_id)
    return claim


def issue_claim_token(line_item_id: str, *, ttl_seconds: Optional[int] = None) -> dict:
    """Mint the claim token (and link) for an active, numbered edition."""
    item = db.session.get(LineItem, line_item_id)
    if item is None:
        raise NotFoundError(f"Line item {line_item_id} not found")
    if item.status != STATUS_ACTIVE or item.edition_number is None:
        raise ClaimError("Claim tokens are only issued for active, numbered editions")

    ttl = ttl_seconds if ttl_seconds is not None else current_app.config.get("CLAIM_TOKEN_TTL_SECONDS")
    token = token_service.issue_token(
        token_service.build_claim_payload(
            line_item_id=item.line_item_id,
            order_id=item.order_id,
            edition_number=item.edition_number,
        ),
        ttl,
    )
    base = (current_app.config.get("CLAIM_BASE_URL") or "").rstrip("/")
    exp = token_service.decode_token(token, secret=token_service.signing_secret()).get("exp")
    return {
        "token": token,
        "claimUrl": f"{base}/auth/nfc/{token}",
        "expiresAt": to_utc_z(from_epoch_seconds(exp)) if exp is not None else None,
    }
