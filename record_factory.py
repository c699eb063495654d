"""RecordFactory: query and mutate a record node and everything below it.

A record node does not know its own id; ids are the keys of the parent's
record maps. Every node is a valid factory root, so deep operations build
child factories as they descend.

Method groups:

- props: get/set/reset/delete, get_value_or_default/get_default,
  change_property_name
- records: get_record_map_of_type/get_record_map/get_deep_record_map,
  get_record_of_type/get_record/get_deep_record, sorted variants
- addresses: get_address, get_record_and_parent, get_bread_crumbs,
  get_property_at_address/update_property_at_address
- ids: change_deep_record_id, cycle_all_sub_record_ids
- crud: add_record/add_blank_record, duplicate/delete/change name (plain and
  deep variants)
- move/copy: reorder_records, move_deep_records_to_address,
  copy_deep_records_to_address, clipboard copy/paste

Misses return None (or False); only constructing a factory over a record of an
unknown type raises.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Tuple, Union

import clipboard
from order_alloc import backfill_orders, new_orders, sort_key
from record_node import RecordMap, RecordNode, clone_record, create_record
from record_types import TypeRegistry, get_registry
from recordkit.address import Address, AddressSyntaxError, Segment, child_address, parse_address
from recordkit.ids import generate_id
from recordkit.names import safe_unique_name


logger = logging.getLogger("recordkit.factory")

IdOrAddress = Union[int, str]
IdAndRecord = Dict[str, Any]
RecordAndParent = Dict[str, Any]


@dataclass
class RecordTypeError(Exception):
    message: str
    record_type: Any = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.message} (type={self.record_type!r})"


def _is_id(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _record_of_type(node: RecordNode, record_type: str, record_id: int) -> RecordNode | None:
    return (node.get("records") or {}).get(record_type, {}).get(record_id)


def _contains(root: RecordNode, target: RecordNode) -> bool:
    if root is target:
        return True
    for record_map in (root.get("records") or {}).values():
        for child in record_map.values():
            if _contains(child, target):
                return True
    return False


class RecordFactory:
    def __init__(self, record: RecordNode, registry: TypeRegistry | None = None) -> None:
        self._registry = registry or get_registry()
        record_type = record.get("type") if isinstance(record, dict) else None
        if not self._registry.is_known_type(record_type):
            raise RecordTypeError("record.type is not a known record type", record_type)
        self._json = record
        self._type: str = record_type

    @property
    def registry(self) -> TypeRegistry:
        return self._registry

    def factory_for(self, record: RecordNode) -> "RecordFactory":
        return RecordFactory(record, self._registry)

    def json(self) -> RecordNode:
        return self._json

    def get_name(self) -> str | None:
        return self._json.get("name")

    def get_type(self) -> str:
        return self._type

    # props

    def _props(self) -> dict:
        props = self._json.get("props")
        if props is None:
            props = self._json["props"] = {}
        return props

    def get_props(self) -> list[str]:
        """Keys stored on this record."""
        return list(self._props().keys())

    def get_all_possible_props(self) -> list[str]:
        """Keys this record type declares, stored or not."""
        return self._registry.declared_properties(self._type)

    def get(self, prop: str) -> Any:
        return self._props().get(prop)

    def set(self, prop: str, value: Any) -> "RecordFactory":
        self._props()[prop] = value
        return self

    def reset(self, prop: str) -> "RecordFactory":
        self._props()[prop] = self.get_default(prop)
        return self

    def delete(self, prop: str) -> "RecordFactory":
        self._props().pop(prop, None)
        return self

    def get_value_or_default(self, prop: str) -> Any:
        props = self._props()
        if prop in props:
            return props[prop]
        return self.get_default(prop)

    def get_default(self, prop: str) -> Any:
        """Independent copy of the declared default, or None."""
        default = self._registry.default_value(self._type, prop)
        if default is None:
            return None
        return copy.deepcopy(default)

    def change_property_name(self, prop: str, new_prop: str) -> "RecordFactory":
        # migrations rename keys the registry may no longer declare
        props = self._props()
        if prop in props:
            props[new_prop] = props.pop(prop)
        return self

    # records

    def get_record_types(self) -> list[str]:
        return list((self._json.get("records") or {}).keys())

    def get_record_map_of_type(self, record_type: str) -> RecordMap:
        return (self._json.get("records") or {}).get(record_type) or {}

    def get_record_map(self) -> RecordMap:
        record_map: RecordMap = {}
        for record_type in self.get_record_types():
            record_map.update(self.get_record_map_of_type(record_type))
        return record_map

    def get_deep_record_map(self) -> RecordMap:
        """Every descendant keyed by id, depth first. Colliding ids overwrite."""
        record_map: RecordMap = {}
        children = self.get_record_map()
        record_map.update(children)
        for child in children.values():
            record_map.update(self.factory_for(child).get_deep_record_map())
        return record_map

    def get_deep_record_entries(self, record_type: str) -> List[Tuple[int, RecordNode]]:
        entries: List[Tuple[int, RecordNode]] = []
        for child_type, record_map in (self._json.get("records") or {}).items():
            for record_id, child in record_map.items():
                if child_type == record_type:
                    entries.append((record_id, child))
                entries.extend(self.factory_for(child).get_deep_record_entries(record_type))
        return entries

    def get_record_of_type(self, record_type: str, record_id: int) -> RecordNode | None:
        return _record_of_type(self._json, record_type, record_id)

    def get_record(self, record_id: int) -> RecordNode | None:
        return self.get_record_map().get(record_id)

    def get_deep_record(self, id_or_address: IdOrAddress) -> RecordNode | None:
        found = self.get_record_and_parent(id_or_address)
        return found["record"] if found else None

    # sorted records

    def _ensure_order_key_present_of_type(self, record_type: str) -> None:
        backfill_orders(self.get_record_map_of_type(record_type).values())

    def ensure_deep_order_keys(self) -> int:
        """Backfill ``order`` on every record in the subtree. Returns how many were set."""
        count = 0
        for record_map in (self._json.get("records") or {}).values():
            count += backfill_orders(record_map.values())
            for child in record_map.values():
                count += self.factory_for(child).ensure_deep_order_keys()
        return count

    def get_sorted_record_entries_of_type(self, record_type: str) -> List[Tuple[int, RecordNode]]:
        self._ensure_order_key_present_of_type(record_type)
        entries = self.get_record_map_of_type(record_type).items()
        return sorted(entries, key=lambda entry: sort_key(entry[1]))

    def get_sorted_record_ids_of_type(self, record_type: str) -> list[int]:
        return [record_id for record_id, _ in self.get_sorted_record_entries_of_type(record_type)]

    def get_sorted_records_of_type(self, record_type: str) -> list[RecordNode]:
        return [record for _, record in self.get_sorted_record_entries_of_type(record_type)]

    # addresses

    def get_address(
        self,
        record_id: int,
        record_type: str | None = None,
        self_addr: str | None = None,
        prop: str | None = None,
        index: int | None = None,
    ) -> str | None:
        """Address of a direct child, e.g. ``scene:1|element:2!wh>1``.

        With ``self_addr`` (this record's own address from the root) the result
        is absolute; without it, it is relative to this record.
        """
        if record_type:
            record = self.get_record_of_type(record_type, record_id)
        else:
            record = self.get_record(record_id)
        if record is None:
            return None
        return child_address(record_type or record["type"], record_id, self_addr, prop, index)

    def _parse(self, address: str) -> Address | None:
        try:
            return parse_address(address)
        except AddressSyntaxError as exc:
            logger.debug("address_invalid address=%s error=%s", address, exc)
            return None

    def _walk_segments(self, segments: List[Segment]) -> Iterator[RecordAndParent]:
        node = self._json
        for record_type, record_id in segments:
            child = _record_of_type(node, record_type, record_id)
            if child is None:
                return
            yield {"id": record_id, "record": child, "parent": node}
            node = child

    def _resolve_address(self, address: str) -> List[RecordAndParent] | None:
        parsed = self._parse(address)
        if parsed is None:
            return None
        steps = list(self._walk_segments(parsed.segments))
        if len(steps) != len(parsed.segments):
            return None
        return steps

    def _get_record_and_parent_with_id(self, record_id: int) -> RecordAndParent | None:
        for child_id, child in self.get_record_map().items():
            if child_id == record_id:
                return {"id": child_id, "record": child, "parent": self._json}
            found = self.factory_for(child)._get_record_and_parent_with_id(record_id)
            if found is not None:
                return found
        return None

    def get_record_and_parent(self, id_or_address: IdOrAddress) -> RecordAndParent | None:
        """Find a descendant by id (depth-first search) or by address."""
        if _is_id(id_or_address):
            return self._get_record_and_parent_with_id(id_or_address)
        if isinstance(id_or_address, str):
            steps = self._resolve_address(id_or_address)
            return steps[-1] if steps else None
        return None

    def _get_bread_crumbs_with_id(self, record_id: int) -> List[IdAndRecord] | None:
        for child_id, child in self.get_record_map().items():
            if child_id == record_id:
                return [{"id": child_id, "record": child}]
            crumbs = self.factory_for(child)._get_bread_crumbs_with_id(record_id)
            if crumbs is not None:
                return [{"id": child_id, "record": child}] + crumbs
        return None

    def get_bread_crumbs(self, id_or_address: IdOrAddress) -> List[IdAndRecord] | None:
        """``{id, record}`` pairs from this record's child down to the target."""
        if _is_id(id_or_address):
            return self._get_bread_crumbs_with_id(id_or_address)
        if isinstance(id_or_address, str):
            steps = self._resolve_address(id_or_address)
            if not steps:
                return None
            return [{"id": step["id"], "record": step["record"]} for step in steps]
        return None

    def _property_target(self, address: str) -> Tuple["RecordFactory", str, int | None] | None:
        parsed = self._parse(address)
        if parsed is None or parsed.prop is None:
            return None
        steps = list(self._walk_segments(parsed.segments))
        if len(steps) != len(parsed.segments):
            return None
        return self.factory_for(steps[-1]["record"]), parsed.prop, parsed.index

    def get_property_at_address(self, address: str) -> Any:
        target = self._property_target(address)
        if target is None:
            return None
        record_f, prop, index = target
        value = record_f.get_value_or_default(prop)
        if index is None:
            return value
        if isinstance(value, list) and index < len(value):
            return value[index]
        return None

    def update_property_at_address(self, address: str, value: Any) -> bool:
        """Write ``value`` at ``address``; ``prop>index`` targets one list slot.

        An index equal to the list length appends. Indexes past that would
        leave holes, so they are refused along with non-list values.
        """
        target = self._property_target(address)
        if target is None:
            return False
        record_f, prop, index = target
        if index is None:
            record_f.set(prop, value)
            return True
        current = record_f.get_value_or_default(prop)
        if not isinstance(current, list) or index > len(current):
            return False
        if index == len(current):
            current.append(value)
        else:
            current[index] = value
        record_f.set(prop, current)
        return True

    # ids

    def change_deep_record_id(self, record_id: int, new_id: int | None = None) -> int:
        """Rename ``record_id`` to ``new_id`` everywhere in this subtree.

        Any integer property value equal to the old id is treated as a
        reference to it and rewritten, so an unrelated number that happens to
        equal the id is rewritten too.
        """
        if new_id is None:
            new_id = generate_id()

        props = self._props()
        for key, value in props.items():
            if _is_id(value) and value == record_id:
                props[key] = new_id

        for record_map in (self._json.get("records") or {}).values():
            for child_id in list(record_map.keys()):
                child = record_map[child_id]
                if child_id == record_id:
                    record_map[new_id] = record_map.pop(record_id)
                # references can sit anywhere below, even when the id was found here
                self.factory_for(child).change_deep_record_id(record_id, new_id)
        return new_id

    def cycle_all_sub_record_ids(self) -> Dict[int, int]:
        """Give every descendant a fresh id. Returns ``{old_id: new_id}``."""
        mapping: Dict[int, int] = {}
        for record_id in list(self.get_deep_record_map().keys()):
            mapping[record_id] = self.change_deep_record_id(record_id)
        return mapping

    # crud

    def accepts_child_type(self, record_type: Any) -> bool:
        if not self._registry.is_known_type(record_type):
            return False
        if record_type in (self._json.get("records") or {}):
            return True
        return self._registry.is_child_type(self._type, record_type)

    def _initialize_record_map(self, record_type: Any) -> bool:
        if not self._registry.is_known_type(record_type):
            logger.warning("record_add_rejected reason=unknown_type type=%s", record_type)
            return False
        records = self._json.get("records")
        if records is None or record_type not in records:
            if not self._registry.is_child_type(self._type, record_type):
                logger.warning(
                    "record_add_rejected reason=child_not_allowed parent_type=%s type=%s",
                    self._type,
                    record_type,
                )
                return False
            self._json.setdefault("records", {})[record_type] = {}
        return True

    def add_record(
        self,
        record: RecordNode,
        position: int | None = None,
        id: int | None = None,
        dont_cycle_sub_record_ids: bool = False,
        parent_id_or_address: IdOrAddress | None = None,
    ) -> IdAndRecord | None:
        """Insert ``record`` as a child, at gap ``position`` (None = end).

        The record is inserted as is (not copied). Its descendants get fresh
        ids unless ``dont_cycle_sub_record_ids`` is set, which moves use to
        keep identity. With ``parent_id_or_address`` the record goes under that
        descendant instead of under this record.
        """
        if parent_id_or_address is not None:
            parent = self.get_deep_record(parent_id_or_address)
            if parent is None:
                logger.debug("record_add_parent_missing parent=%s", parent_id_or_address)
                return None
            return self.factory_for(parent).add_record(
                record,
                position=position,
                id=id,
                dont_cycle_sub_record_ids=dont_cycle_sub_record_ids,
            )

        record_type = record.get("type") if isinstance(record, dict) else None
        if not self._initialize_record_map(record_type):
            return None
        record_map = self._json["records"][record_type]
        siblings = self.get_sorted_records_of_type(record_type)
        record["order"] = new_orders(siblings, 1, position)[0]
        if not dont_cycle_sub_record_ids:
            self.factory_for(record).cycle_all_sub_record_ids()

        if id is None:
            id = generate_id()
        elif id in record_map:
            logger.warning("record_add_replaced type=%s id=%s", record_type, id)
        record_map[id] = record
        self.change_record_name(record_type, id, record.get("name"))
        return {"id": id, "record": record}

    def add_blank_record(self, record_type: str, position: int | None = None) -> IdAndRecord | None:
        if not self._registry.is_known_type(record_type):
            logger.warning("record_add_rejected reason=unknown_type type=%s", record_type)
            return None
        return self.add_record(create_record(record_type, self._registry), position=position)

    def duplicate_record(self, record_type: str, record_id: int) -> IdAndRecord | None:
        original = self.get_record_of_type(record_type, record_id)
        if original is None:
            return None
        cloned = clone_record(original)
        ids = self.get_sorted_record_ids_of_type(record_type)
        return self.add_record(cloned, position=ids.index(record_id) + 1)

    def duplicate_deep_record(self, id_or_address: IdOrAddress) -> RecordAndParent | None:
        found = self.get_record_and_parent(id_or_address)
        if found is None:
            return None
        parent = found["parent"]
        duplicated = self.factory_for(parent).duplicate_record(found["record"]["type"], found["id"])
        if duplicated is None:
            return None
        return {"id": duplicated["id"], "record": duplicated["record"], "parent": parent}

    def delete_record(self, record_type: str, record_id: int) -> IdAndRecord | None:
        record_map = self.get_record_map_of_type(record_type)
        record = record_map.pop(record_id, None)
        if record is None:
            return None
        return {"id": record_id, "record": record}

    def delete_deep_record(self, id_or_address: IdOrAddress) -> IdAndRecord | None:
        found = self.get_record_and_parent(id_or_address)
        if found is None:
            return None
        return self.factory_for(found["parent"]).delete_record(found["record"]["type"], found["id"])

    def change_record_name(self, record_type: str, record_id: int, new_name: str | None = None) -> RecordNode | None:
        record = self.get_record_of_type(record_type, record_id)
        if record is None:
            return None
        default_name = self._registry.default_name(record_type)
        if default_name is None:
            return None
        if new_name is None:
            new_name = default_name
        existing = [
            sibling.get("name")
            for sibling_id, sibling in self.get_record_map_of_type(record_type).items()
            if sibling_id != record_id and sibling.get("name") is not None
        ]
        if new_name in existing:
            record["name"] = safe_unique_name(new_name, existing)
        else:
            record["name"] = new_name
        return record

    def change_deep_record_name(self, id_or_address: IdOrAddress, new_name: str | None = None) -> RecordNode | None:
        found = self.get_record_and_parent(id_or_address)
        if found is None:
            return None
        return self.factory_for(found["parent"]).change_record_name(found["record"]["type"], found["id"], new_name)

    # move/copy

    def reorder_records(self, record_type: str, ids: List[int], position: int | None) -> List[int]:
        """Move the siblings named by ``ids`` into gap ``position``, in list order.

        The gap indexes the current sorted list, moved records included. Only
        ``order`` changes. Returns the ids that were reordered.
        """
        sorted_records = self.get_sorted_records_of_type(record_type)
        orders = sorted(new_orders(sorted_records, len(ids), position))
        record_map = self.get_record_map_of_type(record_type)
        moved: List[int] = []
        for record_id, order in zip(ids, orders):
            record = record_map.get(record_id)
            if record is None:
                logger.debug("record_reorder_miss type=%s id=%s", record_type, record_id)
                continue
            record["order"] = order
            moved.append(record_id)
        return moved

    def _resolve_sources(
        self,
        sources: List[IdOrAddress],
        dest: RecordAndParent,
        action: str,
        check_containment: bool,
        strict: bool,
    ) -> List[RecordAndParent] | None:
        dest_f = self.factory_for(dest["record"])
        resolved: List[RecordAndParent] = []
        skipped: List[Tuple[IdOrAddress, str]] = []
        seen: set = set()
        for source in sources:
            found = self.get_record_and_parent(source)
            if found is None:
                skipped.append((source, "not_found"))
                continue
            if found["id"] in seen:
                skipped.append((source, "duplicate"))
                continue
            if not dest_f.accepts_child_type(found["record"]["type"]):
                skipped.append((source, "child_not_allowed"))
                continue
            if check_containment and _contains(found["record"], dest["record"]):
                skipped.append((source, "contains_destination"))
                continue
            seen.add(found["id"])
            resolved.append(found)
        if skipped:
            logger.warning("record_%s_sources_skipped skipped=%s", action, skipped)
            return None if strict else resolved
        return resolved

    def move_deep_records_to_address(
        self,
        sources: List[IdOrAddress],
        dest: IdOrAddress,
        dest_position: int | None = None,
        strict: bool = False,
    ) -> bool:
        """Move records under ``dest`` keeping their ids and content.

        Sources that cannot be resolved, that ``dest`` does not accept, or that
        contain ``dest`` are skipped; with ``strict`` any skip cancels the whole
        move before anything changes.
        """
        dest_found = self.get_record_and_parent(dest)
        if dest_found is None:
            logger.debug("record_move_dest_missing dest=%s", dest)
            return False
        resolved = self._resolve_sources(sources, dest_found, "move", check_containment=True, strict=strict)
        if resolved is None:
            return False

        deleted: List[IdAndRecord] = []
        for found in resolved:
            removed = self.factory_for(found["parent"]).delete_record(found["record"]["type"], found["id"])
            if removed is not None:
                deleted.append(removed)

        # a fixed gap receives each insert in front of the previous one
        if dest_position is not None:
            deleted.reverse()
        dest_f = self.factory_for(dest_found["record"])
        for item in deleted:
            dest_f.add_record(item["record"], position=dest_position, id=item["id"], dont_cycle_sub_record_ids=True)
        return True

    def copy_deep_records_to_address(
        self,
        sources: List[IdOrAddress],
        dest: IdOrAddress,
        dest_position: int | None = None,
        strict: bool = False,
    ) -> bool:
        """Insert deep copies of the sources under ``dest``; copies get fresh ids."""
        dest_found = self.get_record_and_parent(dest)
        if dest_found is None:
            logger.debug("record_copy_dest_missing dest=%s", dest)
            return False
        resolved = self._resolve_sources(sources, dest_found, "copy", check_containment=False, strict=strict)
        if resolved is None:
            return False

        clones = [clone_record(found["record"]) for found in resolved]
        if dest_position is not None:
            clones.reverse()
        dest_f = self.factory_for(dest_found["record"])
        for cloned in clones:
            dest_f.add_record(cloned, position=dest_position)
        return True

    def copy_selection_to_clipboard(self, selection: List[IdOrAddress]) -> clipboard.ClipboardData:
        return clipboard.copy_selection(self, selection)

    def paste_from_clipboard(
        self,
        parent_id_or_address: IdOrAddress | None,
        clipboard_data: clipboard.ClipboardData,
        position: int | None = None,
    ) -> List[IdAndRecord] | None:
        return clipboard.paste(self, parent_id_or_address, clipboard_data, position)
