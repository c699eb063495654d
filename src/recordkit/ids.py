"""Process-unique integer record ids."""

from __future__ import annotations

import itertools
import threading
import time


# Ids stay below 2**53 so they survive a round trip through JSON numbers.
MAX_SAFE_ID = (1 << 53) - 1

_LOCK = threading.Lock()
_COUNTER = itertools.count(int(time.time() * 1000) * 1000)


def generate_id() -> int:
    """Return a fresh id, unique for the lifetime of the process."""
    with _LOCK:
        value = next(_COUNTER)
    if value > MAX_SAFE_ID:
        raise OverflowError("record id space exhausted")
    return value
