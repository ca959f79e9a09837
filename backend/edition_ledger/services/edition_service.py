# Overview: Service-layer operations for edition numbering; encapsulates business logic and database work.

"""
Edition Assignment Engine

================================================================================
PURPOSE: Keep the active line items of a product numbered 1..N
================================================================================

ORDERING:
    Active line items are numbered by (created_at, line_item_id) ascending.
    Same active set => same order => same numbers, so re-running assignment
    on an unchanged product is a no-op (no writes, no events).

CRITICAL SECTION:
    The product is the lock key. acquire_product_lock() bumps the product's
    ProductEditionLock row with a conditional UPDATE, which holds the row lock
    (or SQLite's write lock) until the caller commits or rolls back. Callers
    must invoke assign_edition_numbers inside that same transaction.

    After writing, the active set is re-read; anything other than exactly
    1..N raises ConcurrencyConflict so run_with_retry starts over.

EVENTS:
    One edition_assigned event per item whose number actually changed, with
    event_data = {previousNumber, newNumber}, plus certificateUrl on the
    assignment that first gave the item its certificate URL.

CAPACITY:
    With ENFORCE_EDITION_CAPACITY on, an active count above the product's
    edition_total raises CapacityExceededError before any number is written.
    Only growth is rejected: a product already over its cap can still shrink.
================================================================================
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Optional

from flask import current_app
from sqlalchemy import update, func
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import EditionEventType, LineItem, ProductEditionLock, STATUS_ACTIVE
from .concurrency import ConcurrencyConflict, lock_for_update, run_with_retry
from .ledger_service import append_edition_event, get_history


class CapacityExceededError(RuntimeError):
    """Active editions would exceed the product's edition_total."""

    def __init__(self, product_id: str, active_count: int, edition_total: int):
        self.product_id = product_id
        self.active_count = active_count
        self.edition_total = edition_total
        super().__init__(
            f"Product {product_id} has {active_count} active items but edition total is {edition_total}"
        )


def acquire_product_lock(product_id: str) -> ProductEditionLock:
    """
    Enter the per-product critical section for the current transaction.

    Released by the caller's commit/rollback.
    """
    stmt = (
        update(ProductEditionLock)
        .where(ProductEditionLock.product_id == product_id)
        .values(generation=ProductEditionLock.generation + 1)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if not result.rowcount:
        try:
            with db.session.begin_nested():
                db.session.add(ProductEditionLock(product_id=product_id, generation=1, active_count=0))
        except IntegrityError:
            # Another writer created the row first; wait on its lock.
            result = db.session.execute(stmt)
            if not result.rowcount:
                raise ConcurrencyConflict(f"Could not lock product {product_id}")

    lock = lock_for_update(
        db.session.query(ProductEditionLock).filter_by(product_id=product_id)
    ).populate_existing().one()
    return lock


def _active_items(product_id: str) -> list[LineItem]:
    return (
        lock_for_update(
            db.session.query(LineItem).filter(
                LineItem.product_id == product_id,
                LineItem.status == STATUS_ACTIVE,
            )
        )
        .order_by(LineItem.created_at.asc(), LineItem.line_item_id.asc())
        .all()
    )


def _capacity_for(items: list[LineItem]) -> Optional[int]:
    totals = [item.edition_total for item in items if item.edition_total]
    return min(totals) if totals else None


def _fill_certificate_fields(item: LineItem) -> Optional[str]:
    """Give a first-time edition its certificate URL and token. Returns the URL if it was set here."""
    assigned_url = None
    if not item.certificate_url:
        base = (current_app.config.get("CERTIFICATE_BASE_URL") or "").rstrip("/")
        item.certificate_url = assigned_url = f"{base}/certificate/{item.line_item_id}"
    if not item.certificate_token:
        item.certificate_token = str(uuid.uuid4())
    return assigned_url


def _verify_contiguous(product_id: str, expected_count: int) -> None:
    numbers = [
        n for (n,) in db.session.query(LineItem.edition_number).filter(
            LineItem.product_id == product_id,
            LineItem.status == STATUS_ACTIVE,
        )
    ]
    if None in numbers or sorted(numbers) != list(range(1, expected_count + 1)):
        raise ConcurrencyConflict(
            f"Edition numbers for product {product_id} changed during assignment: {numbers}"
        )


def assign_edition_numbers(product_id: str, *, actor: Optional[str] = None) -> int:
    """
    Number the active line items of `product_id` as 1..N inside the current transaction.

    Returns N (the number of items holding an edition number afterwards).
    Does not commit; the caller owns the transaction and the product lock.

    Raises:
        CapacityExceededError: N grew past edition_total and enforcement is enabled
        ConcurrencyConflict: verifying re-read found a non-contiguous set
        LedgerWriteError: event append failed (caller must roll back)
    """
    lock = acquire_product_lock(product_id)
    items = _active_items(product_id)

    if current_app.config.get("ENFORCE_EDITION_CAPACITY", True):
        total = _capacity_for(items)
        # A pass that shrinks the active set is always allowed, even over the cap.
        if total is not None and len(items) > total and len(items) > lock.active_count:
            raise CapacityExceededError(product_id, len(items), total)

    # Two-phase write: clear numbers that will move first so a unique index on
    # (product_id, edition_number) would never see a transient duplicate.
    changes = []
    for position, item in enumerate(items, start=1):
        if item.edition_number != position:
            changes.append((item, item.edition_number, position))

    for item, _previous, _new in changes:
        item.edition_number = None
    db.session.flush()

    certificate_urls = {}
    for item, previous, new in changes:
        item.edition_number = new
        certificate_urls[item.line_item_id] = _fill_certificate_fields(item)
    db.session.flush()

    for item, previous, new in changes:
        event_data = {"previousNumber": previous, "newNumber": new}
        if certificate_urls[item.line_item_id]:
            event_data["certificateUrl"] = certificate_urls[item.line_item_id]
        append_edition_event(
            line_item=item,
            event_type=EditionEventType.EDITION_ASSIGNED,
            event_data=event_data,
            created_by=actor,
        )

    lock.active_count = len(items)
    db.session.flush()

    _verify_contiguous(product_id, len(items))
    return len(items)


def assign_product(product_id: str, *, actor: Optional[str] = None) -> int:
    """Standalone assignment pass for a product in its own transaction (admin trigger)."""
    def _op() -> int:
        count = assign_edition_numbers(product_id, actor=actor)
        db.session.commit()
        return count

    return run_with_retry(_op)


# ================================================================================
# READ MODELS / AUDIT
# ================================================================================

@dataclass
class NumberingAudit:
    product_id: str
    active_count: int
    duplicates: dict[int, list[str]] = field(default_factory=dict)
    missing_numbers: list[int] = field(default_factory=list)
    unexpected_numbers: list[int] = field(default_factory=list)
    active_without_number: list[str] = field(default_factory=list)
    inactive_with_number: list[str] = field(default_factory=list)

    @property
    def is_contiguous(self) -> bool:
        return not (
            self.duplicates
            or self.missing_numbers
            or self.unexpected_numbers
            or self.active_without_number
            or self.inactive_with_number
        )

    def to_dict(self) -> dict:
        return {
            "productId": self.product_id,
            "activeCount": self.active_count,
            "isContiguous": self.is_contiguous,
            "duplicates": {str(k): v for k, v in self.duplicates.items()},
            "missingNumbers": self.missing_numbers,
            "unexpectedNumbers": self.unexpected_numbers,
            "activeWithoutNumber": self.active_without_number,
            "inactiveWithNumber": self.inactive_with_number,
        }


def audit_product_numbering(product_id: str) -> NumberingAudit:
    """Check a product against the numbering invariants without changing anything."""
    rows = db.session.query(LineItem).filter(LineItem.product_id == product_id).all()
    active = [r for r in rows if r.status == STATUS_ACTIVE]
    audit = NumberingAudit(product_id=product_id, active_count=len(active))

    by_number: dict[int, list[str]] = {}
    for row in active:
        if row.edition_number is None:
            audit.active_without_number.append(row.line_item_id)
        else:
            by_number.setdefault(row.edition_number, []).append(row.line_item_id)
    for row in rows:
        if row.status != STATUS_ACTIVE and row.edition_number is not None:
            audit.inactive_with_number.append(row.line_item_id)

    audit.duplicates = {n: ids for n, ids in sorted(by_number.items()) if len(ids) > 1}
    expected = set(range(1, len(active) + 1))
    audit.missing_numbers = sorted(expected - set(by_number))
    audit.unexpected_numbers = sorted(set(by_number) - expected)
    return audit


def product_editions(product_id: str, *, include_history: bool = False) -> list[dict]:
    items = (
        db.session.query(LineItem)
        .filter(
            LineItem.product_id == product_id,
            LineItem.status == STATUS_ACTIVE,
            LineItem.edition_number.isnot(None),
        )
        .order_by(LineItem.edition_number.asc())
        .all()
    )
    editions = []
    for item in items:
        data = item.to_dict()
        if include_history:
            data["history"] = [ev.to_dict() for ev in get_history(item.line_item_id)]
        editions.append(data)
    return editions


def collector_editions(collector: str) -> list[dict]:
    """Active editions owned by a collector, matched by owner id or (case-insensitive) email."""
    q = db.session.query(LineItem).filter(LineItem.status == STATUS_ACTIVE)
    if "@" in collector:
        q = q.filter(func.lower(LineItem.owner_email) == collector.strip().lower())
    else:
        q = q.filter(LineItem.owner_id == collector)
    items = q.order_by(LineItem.product_id.asc(), LineItem.edition_number.asc()).all()
    return [item.to_dict() for item in items]
