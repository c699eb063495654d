"""Record node shape: constructors, deep clone, persisted-form conversion."""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Dict

from record_types import TypeRegistry, get_registry
from recordkit.canonical_json import to_wire


RecordNode = Dict[str, Any]
RecordMap = Dict[int, RecordNode]


@dataclass
class RecordShapeError(ValueError):
    message: str
    path: str

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.message} (path={self.path})"


def create_record(record_type: str, registry: TypeRegistry | None = None, name: str | None = None) -> RecordNode:
    """New record of ``record_type`` with no stored props; named types get a name."""
    registry = registry or get_registry()
    record: RecordNode = {"type": record_type, "props": {}}
    if name is None:
        name = registry.default_name(record_type)
    if name is not None:
        record["name"] = name
    return record


def clone_record(record: RecordNode) -> RecordNode:
    return copy.deepcopy(record)


def _parse_id(raw: Any, path: str) -> int:
    if isinstance(raw, bool):
        raise RecordShapeError("record id must be an integer", path)
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str):
        token = raw[1:] if raw.startswith("-") else raw
        if token.isdigit():
            return int(raw)
    raise RecordShapeError("record id must be an integer", path)


def _load(data: Any, path: str) -> RecordNode:
    if not isinstance(data, dict):
        raise RecordShapeError("record must be an object", path)
    if not isinstance(data.get("type"), str) or not data["type"]:
        raise RecordShapeError("record.type must be a non-empty string", f"{path}.type")
    if "name" in data and data["name"] is not None and not isinstance(data["name"], str):
        raise RecordShapeError("record.name must be a string", f"{path}.name")
    order = data.get("order")
    if order is not None and (isinstance(order, bool) or not isinstance(order, (int, float))):
        raise RecordShapeError("record.order must be a number", f"{path}.order")
    props = data.get("props", {})
    if not isinstance(props, dict):
        raise RecordShapeError("record.props must be an object", f"{path}.props")

    record: RecordNode = {"type": data["type"], "props": copy.deepcopy(props)}
    if data.get("name") is not None:
        record["name"] = data["name"]
    if order is not None:
        record["order"] = order

    records = data.get("records")
    if records is None:
        return record
    if not isinstance(records, dict):
        raise RecordShapeError("record.records must be an object", f"{path}.records")
    record["records"] = {}
    for child_type, record_map in records.items():
        map_path = f"{path}.records.{child_type}"
        if not isinstance(record_map, dict):
            raise RecordShapeError("record map must be an object", map_path)
        loaded: RecordMap = {}
        for raw_id, child in record_map.items():
            child_path = f"{map_path}.{raw_id}"
            loaded[_parse_id(raw_id, child_path)] = _load(child, child_path)
        record["records"][child_type] = loaded
    return record


def load_record(data: Any) -> RecordNode:
    """Build an in-memory record (int ids) from its persisted form (string ids).

    Raises ``RecordShapeError`` on malformed input. The input is not modified.
    """
    return _load(data, "$")


def dump_record(record: RecordNode) -> dict:
    """Persisted form of ``record``: a detached copy with string ids."""
    return to_wire(record)
