"""Clipboard payloads: snapshot a selection of records and paste it elsewhere."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Dict, List

from record_node import RecordShapeError, clone_record, load_record
from recordkit.canonical_json import canonical_dumps

if TYPE_CHECKING:  # pragma: no cover
    from record_factory import IdAndRecord, IdOrAddress, RecordFactory


logger = logging.getLogger("recordkit.clipboard")

ClipboardData = Dict[str, Any]


def copy_selection(factory: "RecordFactory", selection: List["IdOrAddress"]) -> ClipboardData:
    """Capture ``{id, record}`` for each resolvable selection entry.

    Records are captured by reference; serialize with ``dumps_clipboard``
    before the tree changes if the payload must not follow later edits.
    """
    nodes = []
    for ref in selection:
        found = factory.get_record_and_parent(ref)
        if found is None:
            logger.debug("clipboard_copy_miss ref=%s", ref)
            continue
        nodes.append({"id": found["id"], "record": found["record"]})
    return {"nodes": nodes}


def paste(
    factory: "RecordFactory",
    parent: "IdOrAddress | None",
    data: ClipboardData,
    position: int | None = None,
) -> List["IdAndRecord"] | None:
    """Insert copies of the clipboard nodes under ``parent`` (None = factory root).

    Copies get fresh ids. Returns the inserted ``{id, record}`` pairs in
    clipboard order, or None when ``parent`` cannot be resolved.
    """
    if parent is None:
        parent_f = factory
    else:
        parent_record = factory.get_deep_record(parent)
        if parent_record is None:
            logger.debug("clipboard_paste_parent_missing parent=%s", parent)
            return None
        parent_f = factory.factory_for(parent_record)

    nodes = list(data.get("nodes") or [])
    if position is not None:
        nodes.reverse()
    added = []
    for node in nodes:
        result = parent_f.add_record(clone_record(node["record"]), position=position)
        if result is None:
            logger.info(
                "clipboard_paste_rejected type=%s parent_type=%s",
                node["record"].get("type"),
                parent_f.get_type(),
            )
            continue
        added.append(result)
    if position is not None:
        added.reverse()
    return added


def dumps_clipboard(data: ClipboardData) -> str:
    return canonical_dumps(data)


def loads_clipboard(text: str) -> ClipboardData:
    """Parse a serialized clipboard. Raises ``RecordShapeError`` on bad input."""
    try:
        raw = json.loads(text)
    except (TypeError, ValueError) as exc:
        raise RecordShapeError(f"clipboard is not valid JSON: {exc}", "$") from exc
    if not isinstance(raw, dict) or not isinstance(raw.get("nodes"), list):
        raise RecordShapeError("clipboard must be an object with a nodes list", "$.nodes")
    nodes = []
    for idx, node in enumerate(raw["nodes"]):
        if not isinstance(node, dict):
            raise RecordShapeError("clipboard node must be an object", f"$.nodes[{idx}]")
        node_id = node.get("id")
        if isinstance(node_id, bool) or not isinstance(node_id, int):
            raise RecordShapeError("clipboard node id must be an integer", f"$.nodes[{idx}].id")
        nodes.append({"id": node_id, "record": load_record(node.get("record"))})
    return {"nodes": nodes}
