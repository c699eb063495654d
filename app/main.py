from __future__ import annotations

import os
import sys
import time
import logging
import uuid
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


_load_env_file(ROOT / "app" / ".env")

from app.stores import MemoryProjectStore
from clipboard import dumps_clipboard, loads_clipboard
from record_factory import RecordFactory
from record_node import RecordShapeError, create_record, dump_record, load_record
from record_types import get_registry
from recordkit.address import child_address


LOG_LEVEL = os.getenv("RECORDKIT_LOG_LEVEL", "INFO").strip().upper() or "INFO"
STRICT_BATCH = os.getenv("RECORDKIT_STRICT_BATCH", "").strip().lower() in ("1", "true", "yes")
REQ_SLOW_MS = float(os.getenv("RECORDKIT_REQ_SLOW_MS", "500"))
_CORS_ORIGINS = {
    origin.strip().rstrip("/")
    for origin in os.getenv("RECORDKIT_CORS_ORIGINS", "").split(",")
    if origin.strip()
}

app = FastAPI(title="recordkit")
logger = logging.getLogger("recordkit.http")
logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO))

registry = get_registry()
store = MemoryProjectStore(registry)


@app.middleware("http")
async def timing_middleware(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    total_ms = (time.perf_counter() - start) * 1000
    route = request.scope.get("route")
    route_name = getattr(route, "name", None) or "unknown"
    logger.info(
        "%s %s %s route=%s total_ms=%.1f",
        request.method,
        request.url.path,
        response.status_code,
        route_name,
        total_ms,
    )
    if total_ms >= REQ_SLOW_MS:
        logger.warning(
            "slow_request method=%s path=%s route=%s total_ms=%.1f status=%s",
            request.method,
            request.url.path,
            route_name,
            total_ms,
            response.status_code,
        )
    return response


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _ok_response(payload: dict, warnings: list | None = None, status: int = 200) -> JSONResponse:
    body = {"ok": True, **payload, "errors": [], "warnings": warnings or []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _store_failure(result: dict) -> JSONResponse:
    errors = result.get("errors") or []
    code = errors[0]["code"] if errors else "STORE_FAILED"
    status = 404 if code == "PROJECT_NOT_FOUND" else 409 if code == "PROJECT_HASH_MISMATCH" else 400
    body = {"ok": False, "errors": errors, "warnings": result.get("warnings") or []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except Exception:
        return {}
    return body if isinstance(body, dict) else {}


def _parse_ref(value: Any) -> int | str | None:
    """Record reference from a path or body: an int id, digit string id, or address."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value:
        token = value[1:] if value.startswith("-") else value
        return int(value) if token.isdigit() else value
    return None


def _parse_position(value: Any) -> tuple[bool, int | None]:
    if value is None:
        return True, None
    if isinstance(value, int) and not isinstance(value, bool):
        return True, value
    return False, None


def _wire_pair(item: dict | None) -> dict | None:
    if item is None:
        return None
    return {"id": item["id"], "record": dump_record(item["record"])}


class ActorContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        actor_id = (request.headers.get("x-actor-id") or "").strip()
        request.state.actor = {"id": actor_id} if actor_id else None
        return await call_next(request)


app.add_middleware(
    CORSMiddleware,
    allow_origins=sorted(_CORS_ORIGINS),
    allow_origin_regex=r"http://localhost:\d+|http://127\.0\.0\.1:\d+",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(ActorContextMiddleware)


def _actor(request: Request) -> dict | None:
    return getattr(request.state, "actor", None)


@app.get("/health")
async def health() -> dict:
    return {"ok": True}


@app.get("/record_types")
async def list_record_types() -> JSONResponse:
    types = []
    for record_type in registry.types():
        types.append(
            {
                "type": record_type,
                "children": sorted(registry.allowed_child_types(record_type)),
                "properties": registry.declared_properties(record_type),
                "defaults": registry.default_values(record_type),
                "default_name": registry.default_name(record_type),
            }
        )
    return _ok_response({"record_types": types})


@app.get("/projects")
async def list_projects() -> JSONResponse:
    return _ok_response({"projects": store.list_projects()})


@app.post("/projects")
async def create_project(request: Request) -> JSONResponse:
    body = await _json_body(request)
    project_id = body.get("project_id") or uuid.uuid4().hex
    if not isinstance(project_id, str):
        return _error_response("PROJECT_ID_INVALID", "project_id must be a string", "project_id")
    data = body.get("project")
    if data is None:
        name = body.get("name")
        data = create_record("project", registry, name=name if isinstance(name, str) and name.strip() else None)
    result = store.init_project(project_id, data, actor=_actor(request))
    if not result.get("ok"):
        return _store_failure(result)
    return _ok_response(
        {"project_id": project_id, "project_hash": result["to_hash"], "project": store.get_project(project_id)},
        warnings=result.get("warnings"),
        status=201,
    )


@app.get("/projects/{project_id}")
async def get_project(project_id: str) -> JSONResponse:
    project = store.get_project(project_id)
    if project is None:
        return _error_response("PROJECT_NOT_FOUND", "project not found", "project_id", status=404)
    return _ok_response({"project_id": project_id, "project_hash": store.get_head(project_id), "project": project})


@app.delete("/projects/{project_id}")
async def delete_project(project_id: str) -> JSONResponse:
    if not store.delete_project(project_id):
        return _error_response("PROJECT_NOT_FOUND", "project not found", "project_id", status=404)
    return _ok_response({"project_id": project_id})


@app.get("/projects/{project_id}/history")
async def project_history(project_id: str) -> JSONResponse:
    if not store.has_project(project_id):
        return _error_response("PROJECT_NOT_FOUND", "project not found", "project_id", status=404)
    return _ok_response({"history": store.list_history(project_id)})


@app.get("/projects/{project_id}/records/{ref}")
async def get_record(project_id: str, ref: str) -> JSONResponse:
    if not store.has_project(project_id):
        return _error_response("PROJECT_NOT_FOUND", "project not found", "project_id", status=404)
    record_ref = _parse_ref(ref)

    def _read(root: RecordFactory) -> dict | None:
        crumbs = root.get_bread_crumbs(record_ref)
        if not crumbs:
            return None
        address = None
        for crumb in crumbs:
            address = child_address(crumb["record"]["type"], crumb["id"], address)
        target = crumbs[-1]
        return {
            "id": target["id"],
            "address": address,
            "record": dump_record(target["record"]),
            "bread_crumbs": [{"id": c["id"], "type": c["record"]["type"], "name": c["record"].get("name")} for c in crumbs],
        }

    found = store.read(project_id, _read)
    if found is None:
        return _error_response("RECORD_NOT_FOUND", "record not found", "ref", {"ref": ref}, status=404)
    return _ok_response(found)


@app.get("/projects/{project_id}/records/{ref}/children/{record_type}")
async def list_children(project_id: str, ref: str, record_type: str) -> JSONResponse:
    if not store.has_project(project_id):
        return _error_response("PROJECT_NOT_FOUND", "project not found", "project_id", status=404)
    record_ref = _parse_ref(ref)

    def _read(root: RecordFactory) -> list | None:
        parent = root if ref == "root" else None
        if parent is None:
            record = root.get_deep_record(record_ref)
            if record is None:
                return None
            parent = root.factory_for(record)
        return [{"id": rid, "record": dump_record(rec)} for rid, rec in parent.get_sorted_record_entries_of_type(record_type)]

    children = store.read(project_id, _read)
    if children is None:
        return _error_response("RECORD_NOT_FOUND", "record not found", "ref", {"ref": ref}, status=404)
    return _ok_response({"children": children})


@app.post("/projects/{project_id}/records")
async def add_record(project_id: str, request: Request) -> JSONResponse:
    body = await _json_body(request)
    parent = _parse_ref(body.get("parent")) if body.get("parent") is not None else None
    ok, position = _parse_position(body.get("position"))
    if not ok:
        return _error_response("POSITION_INVALID", "position must be an integer", "position")
    raw_record = body.get("record")
    record_type = body.get("type")
    if raw_record is not None:
        try:
            record = load_record(raw_record)
        except RecordShapeError as exc:
            return _error_response("RECORD_INVALID", exc.message, f"record{exc.path[1:]}")
    elif isinstance(record_type, str) and registry.is_known_type(record_type):
        record = create_record(record_type, registry)
    else:
        return _error_response("RECORD_TYPE_UNKNOWN", "type must be a known record type", "type", {"type": record_type})
    if isinstance(body.get("name"), str):
        record["name"] = body["name"]

    def _mutate(root: RecordFactory) -> dict | None:
        target = root
        if parent is not None:
            parent_record = root.get_deep_record(parent)
            if parent_record is None:
                return None
            target = root.factory_for(parent_record)
        if not target.accepts_child_type(record["type"]):
            return {"rejected": target.get_type()}
        return _wire_pair(target.add_record(record, position=position))

    result = store.mutate(project_id, _mutate, "add_record", actor=_actor(request), expected_hash=body.get("expected_hash"))
    if not result.get("ok"):
        return _store_failure(result)
    added = result["result"]
    if added is None:
        return _error_response("RECORD_NOT_FOUND", "parent not found", "parent", status=404)
    if "rejected" in added:
        return _error_response(
            "RECORD_TYPE_REJECTED",
            "parent type does not allow this child type",
            "type",
            {"parent_type": added["rejected"], "type": record["type"]},
        )
    return _ok_response({**added, "project_hash": result["to_hash"]}, status=201)


@app.post("/projects/{project_id}/records/{ref}/duplicate")
async def duplicate_record(project_id: str, ref: str, request: Request) -> JSONResponse:
    record_ref = _parse_ref(ref)
    result = store.mutate(
        project_id,
        lambda root: _wire_pair(root.duplicate_deep_record(record_ref)),
        "duplicate_record",
        actor=_actor(request),
    )
    if not result.get("ok"):
        return _store_failure(result)
    if result["result"] is None:
        return _error_response("RECORD_NOT_FOUND", "record not found", "ref", {"ref": ref}, status=404)
    return _ok_response({**result["result"], "project_hash": result["to_hash"]}, status=201)


@app.delete("/projects/{project_id}/records/{ref}")
async def delete_record(project_id: str, ref: str, request: Request) -> JSONResponse:
    record_ref = _parse_ref(ref)
    result = store.mutate(
        project_id,
        lambda root: _wire_pair(root.delete_deep_record(record_ref)),
        "delete_record",
        actor=_actor(request),
    )
    if not result.get("ok"):
        return _store_failure(result)
    if result["result"] is None:
        return _error_response("RECORD_NOT_FOUND", "record not found", "ref", {"ref": ref}, status=404)
    return _ok_response({"deleted": result["result"], "project_hash": result["to_hash"]})


@app.post("/projects/{project_id}/records/{ref}/name")
async def rename_record(project_id: str, ref: str, request: Request) -> JSONResponse:
    body = await _json_body(request)
    name = body.get("name")
    if name is not None and not isinstance(name, str):
        return _error_response("NAME_INVALID", "name must be a string or null", "name")
    record_ref = _parse_ref(ref)

    def _mutate(root: RecordFactory) -> dict | None:
        found = root.get_record_and_parent(record_ref)
        if found is None:
            return None
        renamed = root.change_deep_record_name(record_ref, name)
        return {"id": found["id"], "name": renamed.get("name") if renamed else None, "named": renamed is not None}

    result = store.mutate(project_id, _mutate, "rename_record", actor=_actor(request))
    if not result.get("ok"):
        return _store_failure(result)
    renamed = result["result"]
    if renamed is None:
        return _error_response("RECORD_NOT_FOUND", "record not found", "ref", {"ref": ref}, status=404)
    if not renamed["named"]:
        return _error_response("RECORD_UNNAMED_TYPE", "record type does not use names", "name")
    return _ok_response({"id": renamed["id"], "name": renamed["name"], "project_hash": result["to_hash"]})


@app.get("/projects/{project_id}/property")
async def get_property(project_id: str, address: str) -> JSONResponse:
    if not store.has_project(project_id):
        return _error_response("PROJECT_NOT_FOUND", "project not found", "project_id", status=404)

    def _read(root: RecordFactory) -> tuple[bool, Any]:
        if root.get_deep_record(address) is None:
            return False, None
        return True, root.get_property_at_address(address)

    found, value = store.read(project_id, _read)
    if not found:
        return _error_response("RECORD_NOT_FOUND", "record not found", "address", {"address": address}, status=404)
    return _ok_response({"address": address, "value": value})


@app.put("/projects/{project_id}/property")
async def update_property(project_id: str, request: Request) -> JSONResponse:
    body = await _json_body(request)
    address = body.get("address")
    if not isinstance(address, str) or "!" not in address:
        return _error_response("ADDRESS_INVALID", "address must include a !property suffix", "address")
    result = store.mutate(
        project_id,
        lambda root: root.update_property_at_address(address, body.get("value")),
        "update_property",
        actor=_actor(request),
        expected_hash=body.get("expected_hash"),
    )
    if not result.get("ok"):
        return _store_failure(result)
    if not result["result"]:
        return _error_response("PROPERTY_UPDATE_FAILED", "record not found or property is not an array", "address", {"address": address})
    return _ok_response({"address": address, "project_hash": result["to_hash"]})


@app.post("/projects/{project_id}/reorder")
async def reorder_records(project_id: str, request: Request) -> JSONResponse:
    body = await _json_body(request)
    record_type = body.get("type")
    ids = body.get("ids")
    ok, position = _parse_position(body.get("position"))
    if not isinstance(record_type, str) or not isinstance(ids, list) or not all(isinstance(_parse_ref(i), int) for i in ids) or not ok:
        return _error_response("REORDER_INVALID", "type, ids and integer position required", "$")
    ids = [_parse_ref(i) for i in ids]
    parent = _parse_ref(body.get("parent")) if body.get("parent") is not None else None

    def _mutate(root: RecordFactory) -> list | None:
        target = root
        if parent is not None:
            parent_record = root.get_deep_record(parent)
            if parent_record is None:
                return None
            target = root.factory_for(parent_record)
        target.reorder_records(record_type, ids, position)
        return target.get_sorted_record_ids_of_type(record_type)

    result = store.mutate(project_id, _mutate, "reorder_records", actor=_actor(request))
    if not result.get("ok"):
        return _store_failure(result)
    if result["result"] is None:
        return _error_response("RECORD_NOT_FOUND", "parent not found", "parent", status=404)
    return _ok_response({"ids": result["result"], "project_hash": result["to_hash"]})


async def _batch(project_id: str, request: Request, action: str) -> JSONResponse:
    body = await _json_body(request)
    sources = body.get("sources")
    dest = _parse_ref(body.get("dest"))
    ok, position = _parse_position(body.get("position"))
    if not isinstance(sources, list) or dest is None or not ok:
        return _error_response("BATCH_INVALID", "sources list, dest and integer position required", "$")
    refs = [_parse_ref(s) for s in sources]
    strict = body.get("strict")
    strict = STRICT_BATCH if strict is None else bool(strict)

    def _mutate(root: RecordFactory) -> bool:
        if action == "move_records":
            return root.move_deep_records_to_address(refs, dest, position, strict=strict)
        return root.copy_deep_records_to_address(refs, dest, position, strict=strict)

    result = store.mutate(project_id, _mutate, action, actor=_actor(request))
    if not result.get("ok"):
        return _store_failure(result)
    if not result["result"]:
        return _error_response("BATCH_REJECTED", "destination not found or a source was rejected", "dest", {"dest": body.get("dest")})
    return _ok_response({"project_hash": result["to_hash"]}, warnings=result.get("warnings"))


@app.post("/projects/{project_id}/move")
async def move_records(project_id: str, request: Request) -> JSONResponse:
    return await _batch(project_id, request, "move_records")


@app.post("/projects/{project_id}/copy")
async def copy_records(project_id: str, request: Request) -> JSONResponse:
    return await _batch(project_id, request, "copy_records")


@app.post("/projects/{project_id}/clipboard/copy")
async def clipboard_copy(project_id: str, request: Request) -> JSONResponse:
    body = await _json_body(request)
    selection = body.get("selection")
    if not isinstance(selection, list):
        return _error_response("SELECTION_INVALID", "selection must be a list", "selection")
    if not store.has_project(project_id):
        return _error_response("PROJECT_NOT_FOUND", "project not found", "project_id", status=404)
    refs = [_parse_ref(s) for s in selection]
    # serialize while reading so the payload cannot follow later edits
    payload = store.read(project_id, lambda root: dumps_clipboard(root.copy_selection_to_clipboard(refs)))
    return _ok_response({"clipboard": payload})


@app.post("/projects/{project_id}/clipboard/paste")
async def clipboard_paste(project_id: str, request: Request) -> JSONResponse:
    body = await _json_body(request)
    ok, position = _parse_position(body.get("position"))
    if not ok:
        return _error_response("POSITION_INVALID", "position must be an integer", "position")
    try:
        data = loads_clipboard(body.get("clipboard"))
    except RecordShapeError as exc:
        return _error_response("CLIPBOARD_INVALID", exc.message, exc.path)
    parent = _parse_ref(body.get("parent")) if body.get("parent") is not None else None

    def _mutate(root: RecordFactory) -> list | None:
        added = root.paste_from_clipboard(parent, data, position)
        return None if added is None else [_wire_pair(item) for item in added]

    result = store.mutate(project_id, _mutate, "paste_records", actor=_actor(request))
    if not result.get("ok"):
        return _store_failure(result)
    if result["result"] is None:
        return _error_response("RECORD_NOT_FOUND", "parent not found", "parent", status=404)
    return _ok_response({"added": result["result"], "project_hash": result["to_hash"]}, status=201)
