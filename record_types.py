"""Record type registry: allowed nesting, declared properties, defaults and names."""

from __future__ import annotations

import copy
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, List, Tuple


logger = logging.getLogger("recordkit.types")


@dataclass(frozen=True)
class PropertyDef:
    key: str
    default: Any = None


@dataclass(frozen=True)
class RecordTypeDef:
    type: str
    children: Tuple[str, ...] = ()
    properties: Tuple[PropertyDef, ...] = ()
    default_name: str | None = None


class TypeRegistryError(ValueError):
    pass


class TypeRegistry:
    """Read-only catalog of record types.

    Defaults held here are templates; callers that hand a default to a record
    must copy it first (``default_values`` already does).
    """

    def __init__(self, defs: Iterable[RecordTypeDef]) -> None:
        self._defs: Dict[str, RecordTypeDef] = {}
        for d in defs:
            if d.type in self._defs:
                raise TypeRegistryError(f"duplicate record type {d.type!r}")
            self._defs[d.type] = d
        for d in self._defs.values():
            for child in d.children:
                if child not in self._defs:
                    raise TypeRegistryError(f"type {d.type!r} allows unknown child type {child!r}")
        self._defaults: Dict[str, Dict[str, Any]] = {
            t: {p.key: p.default for p in d.properties} for t, d in self._defs.items()
        }

    @classmethod
    def from_table(cls, table: dict) -> "TypeRegistry":
        if not isinstance(table, dict) or not isinstance(table.get("types"), dict):
            raise TypeRegistryError("type table must be an object with a 'types' object")
        defs: List[RecordTypeDef] = []
        for type_name, entry in table["types"].items():
            if not isinstance(entry, dict):
                raise TypeRegistryError(f"type {type_name!r} must be an object")
            props = []
            for idx, prop in enumerate(entry.get("properties") or []):
                if not isinstance(prop, dict) or not isinstance(prop.get("key"), str):
                    raise TypeRegistryError(f"types.{type_name}.properties[{idx}].key must be a string")
                props.append(PropertyDef(prop["key"], copy.deepcopy(prop.get("default"))))
            default_name = entry.get("default_name")
            if default_name is not None and not isinstance(default_name, str):
                raise TypeRegistryError(f"types.{type_name}.default_name must be a string or null")
            defs.append(
                RecordTypeDef(
                    type=type_name,
                    children=tuple(entry.get("children") or ()),
                    properties=tuple(props),
                    default_name=default_name,
                )
            )
        return cls(defs)

    def types(self) -> list[str]:
        return list(self._defs.keys())

    def is_known_type(self, record_type: Any) -> bool:
        return isinstance(record_type, str) and record_type in self._defs

    def allowed_child_types(self, parent_type: str) -> FrozenSet[str]:
        d = self._defs.get(parent_type)
        return frozenset(d.children) if d else frozenset()

    def is_child_type(self, parent_type: str, child_type: str) -> bool:
        return child_type in self.allowed_child_types(parent_type)

    def declared_properties(self, record_type: str) -> list[str]:
        d = self._defs.get(record_type)
        return [p.key for p in d.properties] if d else []

    def default_value(self, record_type: str, key: str) -> Any:
        return self._defaults.get(record_type, {}).get(key)

    def default_values(self, record_type: str) -> dict:
        return copy.deepcopy(self._defaults.get(record_type, {}))

    def default_name(self, record_type: str) -> str | None:
        d = self._defs.get(record_type)
        return d.default_name if d else None

    def is_named(self, record_type: str) -> bool:
        return self.default_name(record_type) is not None


def _props(*pairs: Tuple[str, Any]) -> Tuple[PropertyDef, ...]:
    return tuple(PropertyDef(k, v) for k, v in pairs)


DEFAULT_TYPE_DEFS: Tuple[RecordTypeDef, ...] = (
    RecordTypeDef(
        "project",
        children=("scene", "variable", "menu", "tour_mode", "lead_gen_field"),
        properties=_props(
            ("initial_scene_id", None),
            ("description", ""),
            ("thumbnail", None),
            ("tour_mode_enabled", False),
            ("lead_gen_enabled", False),
        ),
        default_name="Project",
    ),
    RecordTypeDef(
        "scene",
        children=("element", "rule"),
        properties=_props(
            ("scene_yaw_correction", 0),
            ("scene_allow_zooming", True),
            ("scene_bgm", None),
            ("background_color", "#000000"),
            ("linked_scene_id", None),
        ),
        default_name="Scene",
    ),
    RecordTypeDef(
        "element",
        children=("element", "substitute"),
        properties=_props(
            ("element_type", "image"),
            ("source", {}),
            ("opacity", 1),
            ("wh", [1, 1]),
            ("pos", [0, 0, 0]),
            ("hidden", False),
            ("target_scene_id", None),
            ("volume", 1),
            ("muted", False),
            ("loop", True),
        ),
        default_name="Element",
    ),
    RecordTypeDef(
        "rule",
        children=("when_event", "then_action"),
        properties=_props(
            ("rule_enabled", True),
            ("delay", 0),
        ),
        default_name="Rule",
    ),
    RecordTypeDef(
        "when_event",
        properties=_props(
            ("co_id", None),
            ("co_type", None),
            ("event", None),
            ("we_properties", []),
        ),
    ),
    RecordTypeDef(
        "then_action",
        properties=_props(
            ("co_id", None),
            ("co_type", None),
            ("action", None),
            ("ta_properties", []),
        ),
    ),
    RecordTypeDef(
        "variable",
        properties=_props(
            ("var_type", "number"),
            ("var_default", 0),
        ),
        default_name="var",
    ),
    RecordTypeDef(
        "menu",
        properties=_props(
            ("menu_scene_id", None),
            ("menu_show", True),
            ("menu_icon", None),
        ),
    ),
    RecordTypeDef(
        "tour_mode",
        properties=_props(
            ("tour_scene_id", None),
            ("tour_show", True),
        ),
    ),
    RecordTypeDef(
        "lead_gen_field",
        properties=_props(
            ("field_type", "text"),
            ("required", False),
        ),
        default_name="Field",
    ),
    RecordTypeDef(
        "substitute",
        properties=_props(
            ("substitute_variable", None),
            ("substitute_source", {}),
        ),
    ),
)


_REGISTRY: TypeRegistry | None = None


def load_registry(path: str) -> TypeRegistry:
    with open(path, "r", encoding="utf-8") as fh:
        table = json.load(fh)
    registry = TypeRegistry.from_table(table)
    logger.info("type_registry_loaded path=%s types=%s", path, len(registry.types()))
    return registry


def get_registry() -> TypeRegistry:
    """Process-wide registry, built on first use.

    ``RECORDKIT_TYPES_FILE`` names a JSON table that replaces the built-in one.
    """
    global _REGISTRY
    if _REGISTRY is None:
        path = os.getenv("RECORDKIT_TYPES_FILE", "").strip()
        _REGISTRY = load_registry(path) if path else TypeRegistry(DEFAULT_TYPE_DEFS)
    return _REGISTRY


def set_registry(registry: TypeRegistry | None) -> None:
    global _REGISTRY
    _REGISTRY = registry
