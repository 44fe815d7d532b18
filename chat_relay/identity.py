"""Session identifiers and opaque secrets."""

from __future__ import annotations

import base64
import secrets
import time
import uuid
from datetime import datetime, timezone

SECRET_BYTES = 32


def utc_timestamp() -> int:
    """Current UTC time in whole seconds since the epoch."""
    return int(time.time())


def utc_date(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return now.strftime("%Y-%m-%d")


def make_id(now: datetime | None = None) -> str:
    """Session id: ``<UTC date>-<uuid4>``.

    The date prefix makes ids sort by day; the random suffix keeps two ids
    minted in the same instant distinct.
    """
    return f"{utc_date(now)}-{uuid.uuid4()}"


def make_secret() -> str:
    """32 random bytes, base64 without padding, for out-of-band credentials."""
    raw = secrets.token_bytes(SECRET_BYTES)
    return base64.b64encode(raw).decode("ascii").rstrip("=")
