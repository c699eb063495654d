"""In-memory project store: one record tree per project, single writer."""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from record_factory import RecordFactory, RecordTypeError
from record_node import RecordNode, RecordShapeError, dump_record, load_record
from record_types import TypeRegistry, get_registry
from recordkit.tree_hash import tree_hash


logger = logging.getLogger("recordkit.store")

Issue = Dict[str, Any]


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


class MemoryProjectStore:
    """Project trees keyed by project id.

    Mutations run on a private copy of the tree which replaces the live one
    only if the callback returns without raising. Readers therefore always see
    a tree that no writer touches, and results handed out by ``mutate`` stay
    valid after later writes.
    """

    def __init__(self, registry: TypeRegistry | None = None) -> None:
        self._registry = registry or get_registry()
        self._lock = threading.Lock()
        self._trees: Dict[str, RecordNode] = {}
        self._head: Dict[str, str] = {}
        self._audit: Dict[str, List[dict]] = {}

    def _audit_entry(self, project_id: str, action: str, from_hash: str | None, to_hash: str, actor: dict | None, detail: dict | None = None) -> str:
        audit_id = str(uuid.uuid4())
        audit = {
            "audit_id": audit_id,
            "project_id": project_id,
            "action": action,
            "from_hash": from_hash,
            "to_hash": to_hash,
            "actor": actor,
            "detail": detail,
            "at": _now(),
        }
        self._audit.setdefault(project_id, []).insert(0, audit)
        return audit_id

    def init_project(self, project_id: str, data: Any, actor: dict | None = None, reason: str = "init") -> dict:
        errors: List[Issue] = []
        warnings: List[Issue] = []
        try:
            tree = load_record(data)
            root = RecordFactory(tree, self._registry)
            # every record has an order from here on; reads never backfill
            backfilled = root.ensure_deep_order_keys()
        except RecordShapeError as exc:
            errors.append(_issue("PROJECT_INVALID", exc.message, exc.path))
            return {"ok": False, "errors": errors, "warnings": warnings, "to_hash": None, "audit_id": None}
        except RecordTypeError as exc:
            errors.append(_issue("PROJECT_TYPE_UNKNOWN", exc.message, "type", {"type": exc.record_type}))
            return {"ok": False, "errors": errors, "warnings": warnings, "to_hash": None, "audit_id": None}
        if root.get_type() != "project":
            warnings.append(_issue("PROJECT_ROOT_TYPE", "root record is not a project", "type", {"type": root.get_type()}))
        if backfilled:
            warnings.append(_issue("PROJECT_ORDERS_BACKFILLED", "records without order were given one", "order", {"count": backfilled}))

        with self._lock:
            if project_id in self._trees:
                errors.append(_issue("PROJECT_ALREADY_EXISTS", "project already exists", "project_id"))
                return {"ok": False, "errors": errors, "warnings": warnings, "to_hash": None, "audit_id": None}
            new_hash = tree_hash(tree)
            self._trees[project_id] = tree
            self._head[project_id] = new_hash
            audit_id = self._audit_entry(project_id, "init", None, new_hash, actor, {"reason": reason})
        logger.info("project_init project_id=%s hash=%s", project_id, new_hash)
        return {"ok": True, "errors": errors, "warnings": warnings, "to_hash": new_hash, "audit_id": audit_id}

    def list_projects(self) -> list[dict]:
        items = []
        for project_id in sorted(self._trees.keys()):
            tree = self._trees[project_id]
            items.append({"project_id": project_id, "name": tree.get("name"), "head": self._head.get(project_id)})
        return items

    def has_project(self, project_id: str) -> bool:
        return project_id in self._trees

    def get_head(self, project_id: str) -> str | None:
        return self._head.get(project_id)

    def get_project(self, project_id: str) -> dict | None:
        """Persisted form (string ids) of the current tree."""
        tree = self._trees.get(project_id)
        if tree is None:
            return None
        return dump_record(tree)

    def read(self, project_id: str, fn: Callable[[RecordFactory], Any]) -> Any:
        tree = self._trees.get(project_id)
        if tree is None:
            raise KeyError("project not found")
        return fn(RecordFactory(tree, self._registry))

    def mutate(
        self,
        project_id: str,
        fn: Callable[[RecordFactory], Any],
        action: str,
        actor: dict | None = None,
        expected_hash: str | None = None,
    ) -> dict:
        errors: List[Issue] = []
        warnings: List[Issue] = []
        with self._lock:
            tree = self._trees.get(project_id)
            if tree is None:
                errors.append(_issue("PROJECT_NOT_FOUND", "project not found", "project_id"))
                return {"ok": False, "errors": errors, "warnings": warnings, "result": None, "from_hash": None, "to_hash": None, "audit_id": None}
            from_hash = self._head[project_id]
            if expected_hash is not None and expected_hash != from_hash:
                errors.append(_issue("PROJECT_HASH_MISMATCH", "expected_hash does not match head", "expected_hash"))
                return {"ok": False, "errors": errors, "warnings": warnings, "result": None, "from_hash": from_hash, "to_hash": None, "audit_id": None}

            work = copy.deepcopy(tree)
            try:
                root = RecordFactory(work, self._registry)
                result = fn(root)
                # the hashed tree has an order on every record
                root.ensure_deep_order_keys()
                to_hash = tree_hash(work)
            except Exception as exc:
                logger.exception("project_mutation_failed project_id=%s action=%s", project_id, action)
                errors.append(_issue("MUTATION_FAILED", str(exc), action))
                return {"ok": False, "errors": errors, "warnings": warnings, "result": None, "from_hash": from_hash, "to_hash": None, "audit_id": None}

            if to_hash == from_hash:
                warnings.append(_issue("PROJECT_UNCHANGED", "mutation left the tree unchanged", action))
                return {"ok": True, "errors": errors, "warnings": warnings, "result": result, "from_hash": from_hash, "to_hash": to_hash, "audit_id": None}

            self._trees[project_id] = work
            self._head[project_id] = to_hash
            audit_id = self._audit_entry(project_id, action, from_hash, to_hash, actor)
        logger.info("project_mutated project_id=%s action=%s from=%s to=%s", project_id, action, from_hash, to_hash)
        return {"ok": True, "errors": errors, "warnings": warnings, "result": result, "from_hash": from_hash, "to_hash": to_hash, "audit_id": audit_id}

    def list_history(self, project_id: str) -> list[dict]:
        return copy.deepcopy(self._audit.get(project_id, []))

    def delete_project(self, project_id: str) -> bool:
        with self._lock:
            if project_id not in self._trees:
                return False
            del self._trees[project_id]
            del self._head[project_id]
            self._audit.pop(project_id, None)
        logger.info("project_deleted project_id=%s", project_id)
        return True
