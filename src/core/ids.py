"""Helpers for the two rule id namespaces.

Locally-minted ids are generated client-side before a rule reaches the
store; server ids are UUIDs assigned by the rule store. Both coexist in
the cache until a reconciliation swaps one for the other.
"""

from __future__ import annotations

import re
import secrets
import time
import uuid
from typing import Optional

LOCAL_PREFIX = "local_"

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def now_ms() -> int:
    return int(time.time() * 1000)


def is_server_id(rule_id: Optional[str]) -> bool:
    """Return True when the id is a well-formed server id (UUID)."""

    return bool(rule_id) and bool(_UUID_RE.match(rule_id))


def generate_local_id(timestamp_ms: Optional[int] = None) -> str:
    """Return a locally-minted id such as ``local_1718000000000_k3j9x0a``."""

    stamp = now_ms() if timestamp_ms is None else timestamp_ms
    suffix = "".join(secrets.choice(_BASE36) for _ in range(7))
    return f"{LOCAL_PREFIX}{stamp}_{suffix}"


def generate_server_id() -> str:
    return str(uuid.uuid4())
