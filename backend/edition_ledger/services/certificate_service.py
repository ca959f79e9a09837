# Overview: Service-layer operations for certificate handoff; async dispatch and generator callback.

"""
Certificate issuance is owned by an external generator.

- request_certificate() hands the line item to the app's CertificateDispatcher
  and returns immediately. It never raises: a claim that already committed
  must not fail because the generator is slow or down.
- The dispatcher POSTs {"lineItemId": ...} to CERTIFICATE_SERVICE_URL on a
  worker thread, retrying with exponential backoff, then gives up and logs.
- The generator reports back through record_certificate(), which is what
  appends certificate_generated.
"""

from __future__ import annotations

import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional

import httpx
from flask import Flask, current_app

from ..extensions import db
from ..models import EditionEventType, LineItem
from ..validation import NotFoundError, ValidationError
from edition_ledger.time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry
from .ledger_service import append_edition_event


EXTENSION_KEY = "certificate_dispatcher"


class CertificateDispatcher:
    """Background sender for certificate generation requests."""

    def __init__(self, app: Flask, *, max_workers: int = 2):
        self.app = app
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="certificate")

    def submit(self, line_item_id: str) -> Optional[Future]:
        url = self.app.config.get("CERTIFICATE_SERVICE_URL")
        if not url:
            self.app.logger.info(
                "CERTIFICATE_SERVICE_URL not set; skipping certificate request for %s", line_item_id
            )
            return None
        return self.executor.submit(self._send, url, line_item_id)

    def _send(self, url: str, line_item_id: str) -> bool:
        attempts = max(1, int(self.app.config.get("CERTIFICATE_DISPATCH_ATTEMPTS", 3)))
        timeout = float(self.app.config.get("CERTIFICATE_DISPATCH_TIMEOUT", 10))
        for attempt in range(attempts):
            try:
                response = httpx.post(url, json={"lineItemId": line_item_id}, timeout=timeout)
                response.raise_for_status()
                return True
            except httpx.HTTPError as exc:
                self.app.logger.warning(
                    "Certificate request for %s failed (attempt %d/%d): %s",
                    line_item_id, attempt + 1, attempts, exc,
                )
                if attempt < attempts - 1:
                    time.sleep(0.5 * (2 ** attempt))
        self.app.logger.error("Giving up on certificate request for %s", line_item_id)
        return False

    def shutdown(self, wait: bool = False) -> None:
        self.executor.shutdown(wait=wait)


def init_app(app: Flask) -> None:
    app.extensions[EXTENSION_KEY] = CertificateDispatcher(app)


def request_certificate(line_item_id: str) -> bool:
    """Fire-and-forget handoff. Returns False if the handoff itself failed."""
    dispatcher = current_app.extensions.get(EXTENSION_KEY)
    if dispatcher is None:
        current_app.logger.warning("No certificate dispatcher configured; %s not requested", line_item_id)
        return False
    try:
        dispatcher.submit(line_item_id)
    except Exception:
        current_app.logger.exception("Failed to hand off certificate request for %s", line_item_id)
        return False
    return True


def record_certificate(
    line_item_id: str,
    certificate_url: str,
    *,
    actor: Optional[str] = None,
) -> LineItem:
    """Generator callback: store the certificate URL and append certificate_generated."""
    if not certificate_url:
        raise ValidationError("certificateUrl is required")

    def _op() -> LineItem:
        item = (
            lock_for_update(db.session.query(LineItem).filter_by(line_item_id=line_item_id))
            .populate_existing()
            .first()
        )
        if item is None:
            raise NotFoundError(f"Line item {line_item_id} not found")

        item.certificate_url = certificate_url
        item.certificate_generated_at = utcnow()
        db.session.flush()

        append_edition_event(
            line_item=item,
            event_type=EditionEventType.CERTIFICATE_GENERATED,
            event_data={"certificateUrl": certificate_url},
            created_by=actor,
        )
        db.session.commit()
        return item

    return run_with_retry(_op)
