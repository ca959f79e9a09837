from __future__ import annotations

import enum

from sqlalchemy import event
from sqlalchemy.orm import Session

from ..extensions import db
from edition_ledger.time_utils import to_utc_z, utcnow


class EditionEventType(str, enum.Enum):
    """Closed set of provenance event kinds. Readers must handle every member."""
    EDITION_ASSIGNED = "edition_assigned"
    NFC_AUTHENTICATED = "nfc_authenticated"
    OWNERSHIP_TRANSFER = "ownership_transfer"
    STATUS_CHANGED = "status_changed"
    CERTIFICATE_GENERATED = "certificate_generated"
    EDITION_REVOKED = "edition_revoked"


class AppendOnlyViolation(RuntimeError):
    """Raised when code attempts to modify or delete a ledger row."""


class EditionEvent(db.Model):
    """
    Provenance ledger row.

    Append-only: rows are inserted by ledger_service.append_edition_event and
    never updated or deleted (enforced by the listeners below).

    edition_number is the number in effect at event time; it may differ from
    the line item's current number after later resequencing or revocation.
    """
    __tablename__ = "edition_events"
    __table_args__ = (
        db.Index("ix_edition_events_line_item_created", "line_item_id", "created_at", "id"),
        db.Index("ix_edition_events_product_type", "product_id", "event_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    line_item_id = db.Column(db.String(64), db.ForeignKey("line_items.line_item_id"), nullable=False)
    product_id = db.Column(db.String(64), nullable=False)
    edition_number = db.Column(db.Integer, nullable=True)

    event_type = db.Column(
        db.Enum(
            EditionEventType,
            native_enum=False,
            length=32,
            validate_strings=True,
            values_callable=lambda members: [m.value for m in members],
        ),
        nullable=False,
        index=True,
    )
    event_data = db.Column(db.JSON, nullable=False, default=dict)

    # Owner snapshot at event time
    owner_id = db.Column(db.String(64), nullable=True)
    owner_name = db.Column(db.String(255), nullable=True)
    owner_email = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    created_by = db.Column(db.String(128), nullable=True)

    def __repr__(self) -> str:
        return f"<EditionEvent id={self.id} line_item_id={self.line_item_id!r} type={self.event_type.value}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "line_item_id": self.line_item_id,
            "product_id": self.product_id,
            "edition_number": self.edition_number,
            "event_type": self.event_type.value,
            "event_data": self.event_data or {},
            "owner_id": self.owner_id,
            "owner_name": self.owner_name,
            "owner_email": self.owner_email,
            "created_at": to_utc_z(self.created_at),
            "created_by": self.created_by,
        }


@event.listens_for(EditionEvent, "before_update")
def _reject_event_update(mapper, connection, target):
    raise AppendOnlyViolation(f"edition_events row {target.id} is immutable")


@event.listens_for(EditionEvent, "before_delete")
def _reject_event_delete(mapper, connection, target):
    raise AppendOnlyViolation(f"edition_events row {target.id} cannot be deleted")


@event.listens_for(Session, "do_orm_execute")
def _reject_bulk_event_mutation(orm_execute_state):
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    mapper = orm_execute_state.bind_mapper
    if mapper is not None and mapper.class_ is EditionEvent:
        raise AppendOnlyViolation("Bulk UPDATE/DELETE against edition_events is not allowed")
