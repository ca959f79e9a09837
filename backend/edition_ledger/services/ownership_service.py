from __future__ import annotations

from typing import Optional

from ..extensions import db
from ..models import EditionEventType, LineItem
from ..validation import NotFoundError, ValidationError
from .concurrency import lock_for_update, run_with_retry
from .ledger_service import append_edition_event


def transfer_ownership(
    line_item_id: str,
    *,
    owner_id: Optional[str] = None,
    owner_name: Optional[str] = None,
    owner_email: Optional[str] = None,
    actor: Optional[str] = None,
) -> LineItem:
    """
    Hand an edition to a new owner and record an ownership_transfer event.

    Transferring to the current owner is a no-op (no event).
    """
    if not (owner_id or owner_name or owner_email):
        raise ValidationError("New owner requires at least one of ownerId, ownerName, ownerEmail")
    if owner_email is not None:
        owner_email = owner_email.strip().lower()

    def _op() -> LineItem:
        item = (
            lock_for_update(db.session.query(LineItem).filter_by(line_item_id=line_item_id))
            .populate_existing()
            .first()
        )
        if item is None:
            raise NotFoundError(f"Line item {line_item_id} not found")

        before = {"id": item.owner_id, "name": item.owner_name, "email": item.owner_email}
        after = {"id": owner_id, "name": owner_name, "email": owner_email}
        if before == after:
            db.session.rollback()
            return item

        item.owner_id = owner_id
        item.owner_name = owner_name
        item.owner_email = owner_email
        db.session.flush()

        append_edition_event(
            line_item=item,
            event_type=EditionEventType.OWNERSHIP_TRANSFER,
            event_data={"from": before, "to": after},
            created_by=actor,
        )
        db.session.commit()
        return item

    return run_with_retry(_op)
