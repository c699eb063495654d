"""Record address codec: ``type:id|type:id!property>index``."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Tuple


Segment = Tuple[str, int]

RECORD_SEPARATOR = "|"
TYPE_ID_SEPARATOR = ":"
PROPERTY_PREFIX = "!"
INDEX_PREFIX = ">"


@dataclass
class AddressError(Exception):
    message: str
    segment: str
    address_so_far: str

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.message} (segment={self.segment!r}, address={self.address_so_far!r})"


class AddressSyntaxError(AddressError):
    pass


@dataclass
class Address:
    segments: List[Segment] = field(default_factory=list)
    prop: str | None = None
    index: int | None = None

    @property
    def record_address(self) -> str:
        return format_address(self.segments)

    def __str__(self) -> str:
        return format_address(self.segments, self.prop, self.index)


def _is_int(token: str) -> bool:
    if token.startswith("-"):
        token = token[1:]
    return token.isdigit()


def segment(record_type: str, record_id: int) -> str:
    return f"{record_type}{TYPE_ID_SEPARATOR}{record_id}"


def format_address(segments: List[Segment], prop: str | None = None, index: int | None = None) -> str:
    address = RECORD_SEPARATOR.join(segment(t, i) for t, i in segments)
    if prop:
        suffix = f"{prop}{INDEX_PREFIX}{index}" if isinstance(index, int) else prop
        address = f"{address}{PROPERTY_PREFIX}{suffix}"
    return address


def child_address(
    record_type: str,
    record_id: int,
    self_addr: str | None = None,
    prop: str | None = None,
    index: int | None = None,
) -> str:
    """Address of a child, optionally prefixed with its parent's address."""
    address = segment(record_type, record_id)
    if self_addr:
        address = f"{self_addr}{RECORD_SEPARATOR}{address}"
    if prop:
        suffix = f"{prop}{INDEX_PREFIX}{index}" if isinstance(index, int) else prop
        address = f"{address}{PROPERTY_PREFIX}{suffix}"
    return address


def parse_address(address: str) -> Address:
    if not isinstance(address, str) or address == "":
        raise AddressSyntaxError("Empty address", "", "")

    record_part, sep, property_part = address.partition(PROPERTY_PREFIX)
    segments: List[Segment] = []
    for raw_segment in record_part.split(RECORD_SEPARATOR):
        address_so_far = format_address(segments)
        record_type, colon, raw_id = raw_segment.partition(TYPE_ID_SEPARATOR)
        if not colon or not record_type:
            raise AddressSyntaxError("Segment must be type:id", raw_segment, address_so_far)
        if not _is_int(raw_id):
            raise AddressSyntaxError("Record id must be an integer", raw_segment, address_so_far)
        segments.append((record_type, int(raw_id)))

    if not sep:
        return Address(segments=segments)

    prop, idx_sep, raw_index = property_part.partition(INDEX_PREFIX)
    if not prop:
        raise AddressSyntaxError("Missing property after '!'", property_part, record_part)
    if not idx_sep:
        return Address(segments=segments, prop=prop)
    if not raw_index.isdigit():
        raise AddressSyntaxError("Array index must be a non-negative integer", property_part, record_part)
    return Address(segments=segments, prop=prop, index=int(raw_index))
