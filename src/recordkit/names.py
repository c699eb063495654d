"""Sibling-unique record names."""

from __future__ import annotations

import re
from typing import Iterable


_SUFFIX_RE = re.compile(r"^(?P<base>.*?)_(?P<num>\d+)$")
_SPACE_RE = re.compile(r"\s+")


def safe_name(name: str) -> str:
    return _SPACE_RE.sub(" ", name).strip()


def safe_unique_name(name: str, existing: Iterable[str]) -> str:
    """Return ``name`` or the first free ``base_<n>`` variant not in ``existing``.

    A trailing ``_<n>`` on the requested name is treated as a previous suffix,
    so asking for ``Scene_1`` when it is taken yields ``Scene_2`` rather than
    ``Scene_1_1``.
    """
    taken = set(existing)
    candidate = safe_name(name)
    if candidate not in taken:
        return candidate
    base = candidate
    match = _SUFFIX_RE.match(candidate)
    if match and match.group("base"):
        base = match.group("base")
    num = 1
    while f"{base}_{num}" in taken:
        num += 1
    return f"{base}_{num}"
