# backend/edition_ledger/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Config:
    # Optional "SECRET_KEY", with default dev key (Flask sessions only, never used for claim tokens)
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/editions.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///editions.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Claim token signing secrets, first non-empty candidate wins.
    # No default: a missing secret is a fatal configuration error.
    CLAIM_TOKEN_SECRET = os.environ.get("CLAIM_TOKEN_SECRET")
    NFC_TOKEN_SECRET = os.environ.get("NFC_TOKEN_SECRET")
    CERTIFICATE_TOKEN_SECRET = os.environ.get("CERTIFICATE_TOKEN_SECRET")

    CLAIM_TOKEN_TTL_SECONDS = int(os.environ.get("CLAIM_TOKEN_TTL_SECONDS", str(7 * 24 * 3600)))

    # Reject assignment when the active count would exceed edition_total
    ENFORCE_EDITION_CAPACITY = _env_bool("ENFORCE_EDITION_CAPACITY", True)

    # Public URLs
    ARTWORK_DETAIL_URL = os.environ.get("ARTWORK_DETAIL_URL", "/collector/artwork/{line_item_id}")
    CLAIM_BASE_URL = os.environ.get("CLAIM_BASE_URL", "")
    CERTIFICATE_BASE_URL = os.environ.get("CERTIFICATE_BASE_URL", "")

    # External certificate generator (unset => handoff skipped)
    CERTIFICATE_SERVICE_URL = os.environ.get("CERTIFICATE_SERVICE_URL")
    CERTIFICATE_DISPATCH_ATTEMPTS = int(os.environ.get("CERTIFICATE_DISPATCH_ATTEMPTS", "3"))
    CERTIFICATE_DISPATCH_TIMEOUT = float(os.environ.get("CERTIFICATE_DISPATCH_TIMEOUT", "10"))
