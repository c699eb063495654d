"""Record tree hashing."""

from __future__ import annotations

import hashlib
from typing import Any

from .canonical_json import canonical_dumps


def tree_hash(record: Any) -> str:
    """Return ``sha256:<hex>`` over the canonical wire form of a record tree.

    The wire form has string record ids, so a loaded tree (int ids) and its
    persisted form hash the same. Store heads and audit entries use this value.
    """
    data = canonical_dumps(record).encode("utf-8")
    digest = hashlib.sha256(data).hexdigest()
    return f"sha256:{digest}"
