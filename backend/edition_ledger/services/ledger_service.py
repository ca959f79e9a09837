# Overview: Service-layer operations for the provenance ledger; append, history, replay and audit.

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import EditionEvent, EditionEventType, LineItem, STATUS_ACTIVE, STATUS_INACTIVE
from edition_ledger.time_utils import parse_iso_datetime, to_utc_z, utcnow
"""
Provenance Ledger Invariants (authoritative)

- Append-only: append_edition_event is the only write path; rows are never
  updated or deleted (listeners in models/events.py reject it).
- Events are written inside the same DB transaction as the state change they
  record. A failed append propagates and the caller's transaction rolls back.
- Within one line item, (created_at, id) order equals commit order:
  created_at is clamped to the line item's latest event, and appends for one
  line item always run under its product lock or its claim update.
- Replaying a line item's events reproduces edition_number, status,
  nfc_tag_id, nfc_claimed_at, owner and certificate_url of the current row.
"""


class LedgerWriteError(RuntimeError):
    """Storage failure while appending an edition event. The enclosing operation must abort."""


def append_edition_event(
    *,
    line_item: LineItem,
    event_type: EditionEventType,
    event_data: Optional[dict] = None,
    edition_number: Optional[int] = None,
    created_by: Optional[str] = None,
) -> EditionEvent:
    """
    Append one event for `line_item`.

    edition_number defaults to the line item's current number; revocations
    pass the number that was in effect before it was cleared.
    """
    if not isinstance(event_type, EditionEventType):
        raise TypeError(f"event_type must be an EditionEventType, got {event_type!r}")

    try:
        latest = (
            db.session.query(func.max(EditionEvent.created_at))
            .filter(EditionEvent.line_item_id == line_item.line_item_id)
            .scalar()
        )
        created_at = utcnow()
        if latest is not None and _as_naive_utc(latest) > created_at:
            created_at = _as_naive_utc(latest)

        ev = EditionEvent(
            line_item_id=line_item.line_item_id,
            product_id=line_item.product_id,
            edition_number=line_item.edition_number if edition_number is None else edition_number,
            event_type=event_type,
            event_data=dict(event_data or {}),
            owner_id=line_item.owner_id,
            owner_name=line_item.owner_name,
            owner_email=line_item.owner_email,
            created_at=created_at,
            created_by=created_by,
        )
        db.session.add(ev)
        db.session.flush()  # ensures ev.id is assigned without committing
    except SQLAlchemyError as exc:
        raise LedgerWriteError(
            f"Failed to append {event_type.value} for line item {line_item.line_item_id}"
        ) from exc
    return ev


def get_history(line_item_id: str) -> list[EditionEvent]:
    return (
        db.session.query(EditionEvent)
        .filter(EditionEvent.line_item_id == line_item_id)
        .order_by(EditionEvent.created_at.asc(), EditionEvent.id.asc())
        .all()
    )


def get_ownership_history(line_item_id: str) -> list[EditionEvent]:
    return (
        db.session.query(EditionEvent)
        .filter(
            EditionEvent.line_item_id == line_item_id,
            EditionEvent.event_type == EditionEventType.OWNERSHIP_TRANSFER,
        )
        .order_by(EditionEvent.created_at.asc(), EditionEvent.id.asc())
        .all()
    )


def get_current_owner(line_item_id: str, order_id: str) -> Optional[dict]:
    """Owner of the edition right now, or None if unknown/unowned."""
    item = (
        db.session.query(LineItem)
        .filter_by(line_item_id=line_item_id, order_id=order_id)
        .first()
    )
    if item is None:
        return None
    if not (item.owner_id or item.owner_name or item.owner_email):
        return None
    return {"name": item.owner_name, "email": item.owner_email, "id": item.owner_id}


# ================================================================================
# REPLAY (left fold over the closed event set)
# ================================================================================

@dataclass
class EditionState:
    status: str = STATUS_INACTIVE
    edition_number: Optional[int] = None
    nfc_tag_id: Optional[str] = None
    nfc_claimed_at: Optional[datetime] = None
    owner_id: Optional[str] = None
    owner_name: Optional[str] = None
    owner_email: Optional[str] = None
    certificate_url: Optional[str] = None


def _apply_assigned(state: EditionState, ev: EditionEvent) -> None:
    data = ev.event_data or {}
    state.edition_number = data.get("newNumber", ev.edition_number)
    state.status = STATUS_ACTIVE
    if data.get("certificateUrl"):
        state.certificate_url = data["certificateUrl"]


def _apply_revoked(state: EditionState, ev: EditionEvent) -> None:
    state.edition_number = None
    state.status = STATUS_INACTIVE


def _apply_status_changed(state: EditionState, ev: EditionEvent) -> None:
    after = (ev.event_data or {}).get("afterStatus")
    if after:
        state.status = after
    if state.status == STATUS_INACTIVE:
        state.edition_number = None


def _apply_authenticated(state: EditionState, ev: EditionEvent) -> None:
    data = ev.event_data or {}
    state.nfc_tag_id = data.get("tagId")
    state.nfc_claimed_at = parse_iso_datetime(data.get("claimedAt")) or ev.created_at


def _apply_ownership(state: EditionState, ev: EditionEvent) -> None:
    to = (ev.event_data or {}).get("to") or {}
    state.owner_id = to.get("id")
    state.owner_name = to.get("name")
    state.owner_email = to.get("email")


def _apply_certificate(state: EditionState, ev: EditionEvent) -> None:
    state.certificate_url = (ev.event_data or {}).get("certificateUrl")


_REDUCERS = {
    EditionEventType.EDITION_ASSIGNED: _apply_assigned,
    EditionEventType.EDITION_REVOKED: _apply_revoked,
    EditionEventType.STATUS_CHANGED: _apply_status_changed,
    EditionEventType.NFC_AUTHENTICATED: _apply_authenticated,
    EditionEventType.OWNERSHIP_TRANSFER: _apply_ownership,
    EditionEventType.CERTIFICATE_GENERATED: _apply_certificate,
}

# A new event kind without a reducer is a programming error, caught at import.
_missing = set(EditionEventType) - set(_REDUCERS)
if _missing:
    raise RuntimeError(f"No replay reducer for event types: {sorted(m.value for m in _missing)}")


def _apply_owner_snapshot(state: EditionState, ev: EditionEvent) -> None:
    # Every event carries the owner as of its append, including ingest-time owners.
    state.owner_id = ev.owner_id
    state.owner_name = ev.owner_name
    state.owner_email = ev.owner_email


def replay(events: Iterable[EditionEvent], initial: Optional[EditionState] = None) -> EditionState:
    state = initial or EditionState()
    for ev in events:
        _apply_owner_snapshot(state, ev)
        _REDUCERS[ev.event_type](state, ev)
    return state


# ================================================================================
# INTEGRITY
# ================================================================================

@dataclass
class IntegrityReport:
    line_item_id: str
    is_valid: bool
    has_assignment: bool
    has_authentication: bool
    issues: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "lineItemId": self.line_item_id,
            "isValid": self.is_valid,
            "hasAssignment": self.has_assignment,
            "hasAuthentication": self.has_authentication,
            "issues": list(self.issues),
        }


def _as_naive_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def _replay_drift(item: LineItem, state: EditionState) -> list[str]:
    drift = []
    if state.edition_number != item.edition_number:
        drift.append(
            f"Replayed edition number {state.edition_number} differs from stored {item.edition_number}"
        )
    if _as_naive_utc(state.nfc_claimed_at) != _as_naive_utc(item.nfc_claimed_at):
        drift.append("Replayed NFC claim time differs from stored value")
    if state.nfc_tag_id != item.nfc_tag_id:
        drift.append("Replayed NFC tag differs from stored value")
    if (state.owner_id, state.owner_name, state.owner_email) != (item.owner_id, item.owner_name, item.owner_email):
        drift.append("Replayed owner differs from stored value")
    if state.certificate_url != item.certificate_url:
        drift.append("Replayed certificate URL differs from stored value")
    return drift


def verify_integrity(line_item_id: str) -> IntegrityReport:
    """
    Scan the full history for required events and replay it against the row.

    On-demand audit; O(events for this edition).
    """
    events = get_history(line_item_id)
    kinds = {ev.event_type for ev in events}
    has_assignment = EditionEventType.EDITION_ASSIGNED in kinds
    has_authentication = EditionEventType.NFC_AUTHENTICATED in kinds

    issues = []
    if not has_assignment:
        issues.append("Missing edition_assigned event")
    if not has_authentication:
        issues.append("Missing nfc_authenticated event")

    item = db.session.get(LineItem, line_item_id)
    if item is not None and events:
        issues.extend(_replay_drift(item, replay(events)))

    return IntegrityReport(
        line_item_id=line_item_id,
        is_valid=has_assignment and has_authentication and not issues,
        has_assignment=has_assignment,
        has_authentication=has_authentication,
        issues=issues,
    )


def provenance_record(item: LineItem) -> dict:
    """Read-model for the provenance endpoint."""
    return {
        "lineItemId": item.line_item_id,
        "orderId": item.order_id,
        "productId": item.product_id,
        "editionNumber": item.edition_number,
        "editionTotal": item.edition_total,
        "status": item.status,
        "nfcClaimedAt": to_utc_z(item.nfc_claimed_at),
        "events": [ev.to_dict() for ev in get_history(item.line_item_id)],
        "currentOwner": get_current_owner(item.line_item_id, item.order_id),
    }


def state_to_dict(state: EditionState) -> dict:
    data = asdict(state)
    data["nfc_claimed_at"] = to_utc_z(state.nfc_claimed_at)
    return data
