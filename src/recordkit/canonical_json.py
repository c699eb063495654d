"""Deterministic canonical JSON for record trees."""

from __future__ import annotations

import json
import math
from typing import Any


class CanonicalJsonTypeError(TypeError):
    """Raised when a record tree holds something JSON cannot carry."""


def _stringify_keys(obj: Any, path: str = "$") -> Any:
    if isinstance(obj, dict):
        out = {}
        for key, value in obj.items():
            if isinstance(key, bool) or not isinstance(key, (str, int)):
                raise CanonicalJsonTypeError(
                    f"Unsupported key type at {path}: {type(key).__name__}"
                )
            # record map ids are ints in memory, strings on the wire
            out[str(key)] = _stringify_keys(value, f"{path}.{key}")
        return out
    if isinstance(obj, (list, tuple)):
        return [_stringify_keys(item, f"{path}[{idx}]") for idx, item in enumerate(obj)]
    if obj is None:
        return None
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise ValueError(f"Non-finite float at {path}: {obj!r}")
        return obj
    if isinstance(obj, (str, int, bool)):
        return obj
    raise CanonicalJsonTypeError(
        f"Unsupported type at {path}: {type(obj).__name__}"
    )


def to_wire(obj: Any) -> Any:
    """Return a copy of ``obj`` with every mapping key as a string."""
    return _stringify_keys(obj)


def canonical_dumps(obj: Any) -> str:
    """Serialize a record tree (or any JSON value) deterministically.

    Rules:
    - Integer record-map ids become string keys.
    - Sort dict keys recursively.
    - Preserve list order.
    - UTF-8 with non-ASCII preserved.
    - No extra whitespace.
    """
    return json.dumps(
        _stringify_keys(obj),
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
        allow_nan=False,
    )
