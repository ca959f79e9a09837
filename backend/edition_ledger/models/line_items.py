from __future__ import annotations

from ..extensions import db
from edition_ledger.time_utils import to_utc_z, utcnow


# Line item status constants (validation.VALID_LINE_ITEM_STATUSES must match)
STATUS_ACTIVE = "active"
STATUS_INACTIVE = "inactive"


class LineItem(db.Model):
    """
    One order line item = one numbered edition of a product.

    INVARIANTS:
    - edition_number is non-null iff status == "active"
    - Among the active rows of a product, edition numbers are exactly 1..count(active)
    - Rows are never hard-deleted; history must survive status flips

    This row is the denormalized current state. The authoritative history is
    the append-only edition_events table (see models/events.py); replaying it
    must reproduce edition_number / nfc_claimed_at on this row.
    """
    __tablename__ = "line_items"
    __table_args__ = (
        db.Index("ix_line_items_product_status_created", "product_id", "status", "created_at"),
        db.Index("ix_line_items_owner_email", "owner_email"),
    )

    line_item_id = db.Column(db.String(64), primary_key=True)
    order_id = db.Column(db.String(64), nullable=False, index=True)
    product_id = db.Column(db.String(64), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default=STATUS_INACTIVE, index=True)
    fulfillment_status = db.Column(db.String(32), nullable=True)
    removed_reason = db.Column(db.String(32), nullable=True)

    edition_number = db.Column(db.Integer, nullable=True)
    edition_total = db.Column(db.Integer, nullable=True)

    owner_id = db.Column(db.String(64), nullable=True, index=True)
    owner_name = db.Column(db.String(255), nullable=True)
    owner_email = db.Column(db.String(255), nullable=True)

    nfc_tag_id = db.Column(db.String(128), nullable=True)
    nfc_claimed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    certificate_url = db.Column(db.String(512), nullable=True)
    certificate_token = db.Column(db.String(64), nullable=True)
    certificate_generated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Stable tiebreak for numbering: (created_at, line_item_id)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return (
            f"<LineItem id={self.line_item_id!r} product_id={self.product_id!r} "
            f"status={self.status!r} edition_number={self.edition_number}>"
        )

    def owner_snapshot(self) -> dict:
        return {
            "owner_id": self.owner_id,
            "owner_name": self.owner_name,
            "owner_email": self.owner_email,
        }

    def to_dict(self) -> dict:
        return {
            "line_item_id": self.line_item_id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "status": self.status,
            "fulfillment_status": self.fulfillment_status,
            "removed_reason": self.removed_reason,
            "edition_number": self.edition_number,
            "edition_total": self.edition_total,
            "owner_id": self.owner_id,
            "owner_name": self.owner_name,
            "owner_email": self.owner_email,
            "nfc_tag_id": self.nfc_tag_id,
            "nfc_claimed_at": to_utc_z(self.nfc_claimed_at),
            "nfc_authenticated": self.nfc_claimed_at is not None,
            "certificate_url": self.certificate_url,
            "certificate_generated_at": to_utc_z(self.certificate_generated_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class NfcTag(db.Model):
    """
    Physical NFC tag bound to at most one line item.

    tag_id is the primary key so that two claims racing on the same tag
    identifier (including timestamp-derived self-programmed ids) resolve by
    insert-or-fail, not by timestamp uniqueness.
    """
    __tablename__ = "nfc_tags"
    __table_args__ = (
        db.UniqueConstraint("line_item_id", name="uq_nfc_tags_line_item"),
    )

    tag_id = db.Column(db.String(128), primary_key=True)
    line_item_id = db.Column(db.String(64), db.ForeignKey("line_items.line_item_id"), nullable=False)
    order_id = db.Column(db.String(64), nullable=False)
    claimed_at = db.Column(db.DateTime(timezone=True), nullable=False)

    line_item = db.relationship("LineItem", backref=db.backref("nfc_tags", lazy=True))

    def to_dict(self) -> dict:
        return {
            "tag_id": self.tag_id,
            "line_item_id": self.line_item_id,
            "order_id": self.order_id,
            "claimed_at": to_utc_z(self.claimed_at),
        }


class ProductEditionLock(db.Model):
    """
    Per-product critical-section row for edition numbering.

    Every assignment pass bumps `generation` with a conditional UPDATE before
    reading the active set, which takes the row lock (or the database write
    lock on SQLite) for the rest of the transaction. Two passes for the same
    product therefore never interleave.
    """
    __tablename__ = "product_edition_locks"

    product_id = db.Column(db.String(64), primary_key=True)
    generation = db.Column(db.Integer, nullable=False, default=0)
    active_count = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "generation": self.generation,
            "active_count": self.active_count,
            "updated_at": to_utc_z(self.updated_at),
        }
