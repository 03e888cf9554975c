"""Client transaction identifiers."""

from __future__ import annotations

import itertools
import secrets
import time

_COUNTER = itertools.count()


def new_txn_id() -> str:
    """Return a unique transaction id for an idempotent PUT.

    Millisecond timestamp, process-local counter and random suffix.
    """
    return f"{int(time.time() * 1000)}.{next(_COUNTER)}.{secrets.token_hex(4)}"
