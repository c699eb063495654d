"""recordkit kernel utilities."""

from .address import (
    Address,
    AddressError,
    AddressSyntaxError,
    child_address,
    format_address,
    parse_address,
)
from .canonical_json import CanonicalJsonTypeError, canonical_dumps, to_wire
from .ids import generate_id
from .names import safe_unique_name
from .tree_hash import tree_hash

__all__ = [
    "Address",
    "AddressError",
    "AddressSyntaxError",
    "CanonicalJsonTypeError",
    "canonical_dumps",
    "child_address",
    "format_address",
    "generate_id",
    "parse_address",
    "safe_unique_name",
    "to_wire",
    "tree_hash",
]
