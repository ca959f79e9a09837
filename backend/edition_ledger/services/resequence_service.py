# Overview: Service-layer operations for line item status transitions and resequencing.

"""
Resequencing Engine

STATE MACHINE (per line item):
    inactive -> active:   status written, then the product is renumbered
    active   -> inactive: edition_number cleared on the row immediately,
                          status_changed + edition_revoked appended, then the
                          remaining active items collapse to 1..N
    same -> same:         no writes, no events (assignment still runs and is a no-op)

LOCK ORDER:
    product lock first, then the line item row. Every path that touches
    numbering follows this order so two workers cannot deadlock each other.

BATCHES:
    Changes are grouped by product. Each product is one transaction: all of
    its status writes, then a single assignment pass. A failing product does
    not affect the others; results are reported per product.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy.exc import OperationalError

from ..extensions import db
from ..models import EditionEventType, LineItem, STATUS_ACTIVE, STATUS_INACTIVE
from ..validation import ConflictError, NotFoundError, validate_reason, validate_status
from .concurrency import ConcurrencyConflict, lock_for_update, run_with_retry
from .edition_service import CapacityExceededError, acquire_product_lock, assign_edition_numbers
from .ledger_service import LedgerWriteError, append_edition_event


# Fulfillment states that make a freshly ingested line item active
ACTIVE_FULFILLMENT_STATES = {"fulfilled", "active"}

# Errors reported per product in batch results instead of aborting the batch
BATCH_REPORTABLE_ERRORS = (
    CapacityExceededError,
    ConcurrencyConflict,
    LedgerWriteError,
    NotFoundError,
    OperationalError,
)


@dataclass
class StatusChangeResult:
    line_item_id: str
    product_id: str
    before_status: str
    after_status: str
    changed: bool
    edition_number: Optional[int]
    edition_numbers_assigned: int

    def to_dict(self) -> dict:
        return {
            "success": True,
            "lineItemId": self.line_item_id,
            "productId": self.product_id,
            "beforeStatus": self.before_status,
            "afterStatus": self.after_status,
            "changed": self.changed,
            "editionNumber": self.edition_number,
            "editionNumbersAssigned": self.edition_numbers_assigned,
        }


@dataclass
class StatusChange:
    line_item_id: str
    order_id: str
    status: str
    reason: Optional[str] = None


@dataclass
class ProductBatchResult:
    product_id: Optional[str]
    success: bool
    line_item_ids: list[str] = field(default_factory=list)
    edition_numbers_assigned: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "productId": self.product_id,
            "success": self.success,
            "lineItemIds": list(self.line_item_ids),
        }
        if self.success:
            data["editionNumbersAssigned"] = self.edition_numbers_assigned
        else:
            data["error"] = self.error
        return data


def _find_item(line_item_id: str, order_id: str) -> LineItem:
    item = (
        db.session.query(LineItem)
        .filter_by(line_item_id=line_item_id, order_id=order_id)
        .first()
    )
    if item is None:
        raise NotFoundError(f"Line item {line_item_id} in order {order_id} not found")
    return item


def _lock_item(line_item_id: str) -> LineItem:
    return (
        lock_for_update(db.session.query(LineItem).filter_by(line_item_id=line_item_id))
        .populate_existing()
        .one()
    )


def _apply_status(item: LineItem, new_status: str, *, reason: Optional[str], actor: Optional[str]) -> bool:
    """Write one transition and its events. Caller holds the product lock."""
    before = item.status
    if before == new_status:
        return False

    previous_number = item.edition_number
    item.status = new_status
    if new_status == STATUS_INACTIVE:
        item.edition_number = None
        item.removed_reason = reason
    else:
        item.removed_reason = None
    db.session.flush()

    append_edition_event(
        line_item=item,
        event_type=EditionEventType.STATUS_CHANGED,
        event_data={"beforeStatus": before, "afterStatus": new_status, "reason": reason},
        edition_number=previous_number,
        created_by=actor,
    )
    if new_status == STATUS_INACTIVE and previous_number is not None:
        append_edition_event(
            line_item=item,
            event_type=EditionEventType.EDITION_REVOKED,
            event_data={"previousNumber": previous_number, "reason": reason},
            edition_number=previous_number,
            created_by=actor,
        )
    return True


def change_line_item_status(
    line_item_id: str,
    order_id: str,
    new_status: str,
    *,
    reason: Optional[str] = None,
    actor: Optional[str] = None,
) -> StatusChangeResult:
    """
    Move one line item to `new_status` and resequence its product.

    Raises:
        ValidationError: unknown status/reason
        NotFoundError: no such line item in that order
        CapacityExceededError: activation would exceed edition_total
    """
    new_status = validate_status(new_status)
    reason = validate_reason(reason)

    def _op() -> StatusChangeResult:
        product_id = _find_item(line_item_id, order_id).product_id
        acquire_product_lock(product_id)
        item = _lock_item(line_item_id)

        before = item.status
        changed = _apply_status(item, new_status, reason=reason, actor=actor)
        assigned = assign_edition_numbers(product_id, actor=actor)
        db.session.commit()

        return StatusChangeResult(
            line_item_id=item.line_item_id,
            product_id=product_id,
            before_status=before,
            after_status=item.status,
            changed=changed,
            edition_number=item.edition_number,
            edition_numbers_assigned=assigned,
        )

    return run_with_retry(_op)


def change_statuses_batch(
    changes: Iterable[StatusChange],
    *,
    actor: Optional[str] = None,
) -> list[ProductBatchResult]:
    """
    Apply many status changes, resequencing each distinct product exactly once.

    Validation errors abort the whole batch before anything is written.
    """
    normalized = [
        StatusChange(
            line_item_id=c.line_item_id,
            order_id=c.order_id,
            status=validate_status(c.status),
            reason=validate_reason(c.reason),
        )
        for c in changes
    ]

    results: list[ProductBatchResult] = []
    groups: dict[str, list[StatusChange]] = {}
    for change in normalized:
        try:
            product_id = _find_item(change.line_item_id, change.order_id).product_id
        except NotFoundError as exc:
            results.append(ProductBatchResult(
                product_id=None,
                success=False,
                line_item_ids=[change.line_item_id],
                error=str(exc),
            ))
            continue
        groups.setdefault(product_id, []).append(change)
    db.session.rollback()  # end the read transaction before taking locks

    for product_id, group in groups.items():
        def _op(product_id=product_id, group=group) -> int:
            acquire_product_lock(product_id)
            for change in group:
                item = _lock_item(change.line_item_id)
                _apply_status(item, change.status, reason=change.reason, actor=actor)
            assigned = assign_edition_numbers(product_id, actor=actor)
            db.session.commit()
            return assigned

        line_item_ids = [c.line_item_id for c in group]
        try:
            assigned = run_with_retry(_op)
        except BATCH_REPORTABLE_ERRORS as exc:
            results.append(ProductBatchResult(
                product_id=product_id,
                success=False,
                line_item_ids=line_item_ids,
                error=str(exc),
            ))
            continue
        results.append(ProductBatchResult(
            product_id=product_id,
            success=True,
            line_item_ids=line_item_ids,
            edition_numbers_assigned=assigned,
        ))

    return results


def ingest_line_item(
    *,
    line_item_id: str,
    order_id: str,
    product_id: str,
    status: Optional[str] = None,
    fulfillment_status: Optional[str] = None,
    edition_total: Optional[int] = None,
    owner_id: Optional[str] = None,
    owner_name: Optional[str] = None,
    owner_email: Optional[str] = None,
    created_at: Optional[datetime] = None,
    actor: Optional[str] = None,
) -> LineItem:
    """
    Record a line item from an ingested order.

    Without an explicit status the fulfillment state decides: fulfilled items
    start active (and are numbered immediately), everything else inactive.

    Raises:
        ConflictError: line_item_id already exists
    """
    if status is None:
        status = STATUS_ACTIVE if (fulfillment_status or "").lower() in ACTIVE_FULFILLMENT_STATES else STATUS_INACTIVE
    status = validate_status(status)

    def _op() -> LineItem:
        if db.session.get(LineItem, line_item_id) is not None:
            raise ConflictError(f"Line item {line_item_id} already exists")

        if status == STATUS_ACTIVE:
            acquire_product_lock(product_id)

        item = LineItem(
            line_item_id=line_item_id,
            order_id=order_id,
            product_id=product_id,
            status=STATUS_INACTIVE,
            fulfillment_status=fulfillment_status,
            edition_total=edition_total,
            owner_id=owner_id,
            owner_name=owner_name,
            owner_email=owner_email,
        )
        if created_at is not None:
            item.created_at = created_at
        db.session.add(item)
        db.session.flush()

        if status == STATUS_ACTIVE:
            _apply_status(item, STATUS_ACTIVE, reason=None, actor=actor)
            assign_edition_numbers(product_id, actor=actor)

        db.session.commit()
        return item

    return run_with_retry(_op)
