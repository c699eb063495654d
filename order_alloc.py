"""Fractional order keys for sibling records.

Positions name the gap to insert into::

    [0] r0 [1] r1 [2] r2 [3]

Gap 0 is before the first record, gap ``len`` (or ``None``) is after the last.
Interior gaps subdivide the interval between their neighbours, so existing
siblings are never renumbered. Repeated midpoint inserts between the same two
neighbours keep halving the interval; float precision eventually runs out in
that pathological case.
"""

from __future__ import annotations

from typing import Iterable, List

from record_node import RecordNode


Order = float


def backfill_orders(records: Iterable[RecordNode]) -> int:
    """Give every record lacking ``order`` the next value above the current max.

    Assignment follows iteration order. Returns how many records were touched.
    """
    records = list(records)
    missing = [r for r in records if r.get("order") is None]
    if not missing:
        return 0
    max_order = max((r["order"] for r in records if r.get("order") is not None), default=0)
    for record in missing:
        max_order += 1
        record["order"] = max_order
    return len(missing)


def sort_key(record: RecordNode) -> Order:
    return record["order"]


def new_orders(sorted_records: List[RecordNode], count: int, position: int | None = None) -> List[Order]:
    """Return ``count`` order values for inserting into gap ``position``.

    ``sorted_records`` must already be sorted and fully ordered.
    """
    if count <= 0:
        return []
    size = len(sorted_records)
    if size == 0:
        return [i + 1 for i in range(count)]

    if position is not None:
        position = max(0, min(position, size))

    if position == 0:
        min_order = sorted_records[0].get("order") or 0
        return [min_order - (i + 1) for i in range(count)]

    if position is None or position == size:
        max_order = sorted_records[-1].get("order") or 0
        return [max_order + (i + 1) for i in range(count)]

    prev_order = sorted_records[position - 1].get("order") or 0
    next_order = sorted_records[position].get("order") or 0
    step = (next_order - prev_order) / (count + 1)
    return [prev_order + step * (i + 1) for i in range(count)]
