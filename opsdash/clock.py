"""
opsdash.clock — Time Source & Identifiers
==========================================

Every timestamp written to the user directory, stamped into a session token
or attached to a metric snapshot comes from :func:`utcnow`.  The wall clock
is clamped so it never moves backwards inside one process; ``last_login``
and ``updated_at`` therefore advance monotonically even if the host clock is
stepped back by NTP.
"""

from __future__ import annotations

import secrets
import threading
import time
from datetime import UTC, datetime

_lock = threading.Lock()
_last: datetime | None = None


def utcnow() -> datetime:
    """Timezone-aware UTC now, never earlier than the previous call."""
    global _last
    now = datetime.now(UTC)
    with _lock:
        if _last is not None and now < _last:
            now = _last
        _last = now
    return now


def monotonic() -> float:
    return time.monotonic()


def new_id(prefix: str = "", nbytes: int = 8) -> str:
    """Random hex identifier, optionally prefixed (``sub_3f9a…``)."""
    token = secrets.token_hex(nbytes)
    return f"{prefix}_{token}" if prefix else token
