import json
import os
import sys
import unittest
import uuid
from unittest.mock import patch

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from fastapi.testclient import TestClient

os.environ["RECORDKIT_LOG_LEVEL"] = "WARNING"
os.environ.pop("RECORDKIT_TYPES_FILE", None)

import app.main as main


def _project_wire() -> dict:
    return {
        "type": "project",
        "name": "Tour",
        "props": {},
        "records": {
            "scene": {
                "1": {
                    "type": "scene",
                    "name": "Lobby",
                    "order": 1,
                    "props": {},
                    "records": {
                        "element": {
                            "11": {"type": "element", "name": "Door", "order": 1, "props": {"wh": [2, 3]}},
                            "12": {"type": "element", "name": "Sign", "order": 2, "props": {}},
                        }
                    },
                },
                "2": {"type": "scene", "name": "Hall", "order": 2, "props": {}},
            }
        },
    }


class TestProjectApi(unittest.TestCase):
    def setUp(self) -> None:
        self.client = TestClient(main.app)
        self.project_id = f"tour_{uuid.uuid4().hex[:8]}"
        res = self.client.post("/projects", json={"project_id": self.project_id, "project": _project_wire()})
        self.assertEqual(res.status_code, 201, res.text)

    def _scene_element_ids(self, scene_id: str) -> list:
        res = self.client.get(f"/projects/{self.project_id}/records/{scene_id}/children/element")
        return [c["id"] for c in res.json()["children"]]

    def test_health(self) -> None:
        res = self.client.get("/health")
        self.assertEqual(res.json(), {"ok": True})

    def test_record_types(self) -> None:
        body = self.client.get("/record_types").json()
        scene = next(t for t in body["record_types"] if t["type"] == "scene")
        self.assertEqual(scene["children"], ["element", "rule"])
        self.assertEqual(scene["default_name"], "Scene")

    def test_create_blank_project(self) -> None:
        res = self.client.post("/projects", json={"name": "Empty"})
        body = res.json()
        self.assertEqual(res.status_code, 201)
        self.assertEqual(body["project"]["name"], "Empty")
        self.assertEqual(body["project"]["type"], "project")

    def test_create_duplicate_project(self) -> None:
        res = self.client.post("/projects", json={"project_id": self.project_id, "project": _project_wire()})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["code"], "PROJECT_ALREADY_EXISTS")

    def test_create_invalid_project(self) -> None:
        res = self.client.post("/projects", json={"project": {"type": "project", "records": []}})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["code"], "PROJECT_INVALID")

    def test_get_and_delete_project(self) -> None:
        body = self.client.get(f"/projects/{self.project_id}").json()
        self.assertTrue(body["ok"])
        self.assertIn("11", body["project"]["records"]["scene"]["1"]["records"]["element"])
        self.assertEqual(self.client.delete(f"/projects/{self.project_id}").status_code, 200)
        self.assertEqual(self.client.get(f"/projects/{self.project_id}").status_code, 404)

    def test_get_record_by_id_and_address(self) -> None:
        body = self.client.get(f"/projects/{self.project_id}/records/11").json()
        self.assertEqual(body["address"], "scene:1|element:11")
        self.assertEqual([c["id"] for c in body["bread_crumbs"]], [1, 11])
        by_address = self.client.get(f"/projects/{self.project_id}/records/scene:1|element:12").json()
        self.assertEqual(by_address["record"]["name"], "Sign")

    def test_get_record_missing(self) -> None:
        res = self.client.get(f"/projects/{self.project_id}/records/999")
        self.assertEqual(res.status_code, 404)
        self.assertEqual(res.json()["errors"][0]["code"], "RECORD_NOT_FOUND")

    def test_add_record(self) -> None:
        res = self.client.post(f"/projects/{self.project_id}/records", json={"parent": "scene:1", "type": "element", "position": 0})
        body = res.json()
        self.assertEqual(res.status_code, 201, body)
        self.assertEqual(body["record"]["order"], 0)
        self.assertEqual(self._scene_element_ids("1")[0], body["id"])

    def test_add_record_rejected_type(self) -> None:
        res = self.client.post(f"/projects/{self.project_id}/records", json={"type": "element"})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["code"], "RECORD_TYPE_REJECTED")

    def test_add_record_unknown_type(self) -> None:
        res = self.client.post(f"/projects/{self.project_id}/records", json={"type": "hotspot"})
        self.assertEqual(res.json()["errors"][0]["code"], "RECORD_TYPE_UNKNOWN")

    def test_duplicate_and_delete_record(self) -> None:
        dup = self.client.post(f"/projects/{self.project_id}/records/11/duplicate").json()
        self.assertEqual(dup["record"]["name"], "Door_1")
        self.assertEqual(self._scene_element_ids("1"), [11, dup["id"], 12])
        res = self.client.delete(f"/projects/{self.project_id}/records/{dup['id']}")
        self.assertEqual(res.status_code, 200)
        self.assertEqual(self._scene_element_ids("1"), [11, 12])
        self.assertEqual(self.client.delete(f"/projects/{self.project_id}/records/{dup['id']}").status_code, 404)

    def test_rename_record(self) -> None:
        res = self.client.post(f"/projects/{self.project_id}/records/12/name", json={"name": "Door"})
        self.assertEqual(res.json()["name"], "Door_1")

    def test_property_read_and_write(self) -> None:
        res = self.client.get(f"/projects/{self.project_id}/property", params={"address": "scene:1|element:11!wh>1"})
        self.assertEqual(res.json()["value"], 3)
        res = self.client.put(
            f"/projects/{self.project_id}/property",
            json={"address": "scene:1|element:11!wh>1", "value": 5},
        )
        self.assertTrue(res.json()["ok"], res.text)
        res = self.client.get(f"/projects/{self.project_id}/property", params={"address": "scene:1|element:11!wh"})
        self.assertEqual(res.json()["value"], [2, 5])

    def test_property_write_out_of_range(self) -> None:
        res = self.client.put(f"/projects/{self.project_id}/property", json={"address": "scene:1|element:11!wh>4", "value": 5})
        self.assertEqual(res.json()["errors"][0]["code"], "PROPERTY_UPDATE_FAILED")

    def test_property_missing_record(self) -> None:
        res = self.client.get(f"/projects/{self.project_id}/property", params={"address": "scene:1|element:99!wh"})
        self.assertEqual(res.status_code, 404)
        self.assertEqual(res.json()["errors"][0]["code"], "RECORD_NOT_FOUND")

    def test_property_lookup_reads_once(self) -> None:
        with patch.object(main.store, "read", wraps=main.store.read) as read:
            res = self.client.get(f"/projects/{self.project_id}/property", params={"address": "scene:1|element:11!wh>0"})
        self.assertEqual(res.json()["value"], 2)
        self.assertEqual(read.call_count, 1)

    def test_property_append_at_end(self) -> None:
        res = self.client.put(f"/projects/{self.project_id}/property", json={"address": "scene:1|element:11!wh>2", "value": 7})
        self.assertTrue(res.json()["ok"], res.text)
        res = self.client.get(f"/projects/{self.project_id}/property", params={"address": "scene:1|element:11!wh"})
        self.assertEqual(res.json()["value"], [2, 3, 7])

    def test_reorder_accepts_zero_id(self) -> None:
        project_id = f"zero_{uuid.uuid4().hex[:8]}"
        project = {
            "type": "project",
            "props": {},
            "records": {
                "scene": {
                    "0": {"type": "scene", "name": "First", "order": 1, "props": {}},
                    "1": {"type": "scene", "name": "Second", "order": 2, "props": {}},
                }
            },
        }
        self.assertEqual(self.client.post("/projects", json={"project_id": project_id, "project": project}).status_code, 201)
        res = self.client.post(f"/projects/{project_id}/reorder", json={"type": "scene", "ids": [1, 0], "position": 0})
        self.assertTrue(res.json()["ok"], res.text)
        self.assertEqual(res.json()["ids"], [1, 0])

    def test_reorder_rejects_address_ids(self) -> None:
        res = self.client.post(f"/projects/{self.project_id}/reorder", json={"type": "scene", "ids": ["scene:1"], "position": 0})
        self.assertEqual(res.json()["errors"][0]["code"], "REORDER_INVALID")

    def test_reorder(self) -> None:
        res = self.client.post(f"/projects/{self.project_id}/reorder", json={"type": "scene", "ids": [2, 1], "position": 0})
        self.assertEqual(res.json()["ids"], [2, 1])

    def test_move_and_copy(self) -> None:
        res = self.client.post(f"/projects/{self.project_id}/move", json={"sources": [11], "dest": "scene:2"})
        self.assertTrue(res.json()["ok"], res.text)
        self.assertEqual(self._scene_element_ids("2"), [11])
        res = self.client.post(f"/projects/{self.project_id}/copy", json={"sources": ["scene:2|element:11"], "dest": 1})
        self.assertTrue(res.json()["ok"], res.text)
        ids = self._scene_element_ids("1")
        self.assertEqual(len(ids), 2)
        self.assertNotIn(11, ids)

    def test_strict_move_rejected(self) -> None:
        res = self.client.post(f"/projects/{self.project_id}/move", json={"sources": [11, 999], "dest": "scene:2", "strict": True})
        self.assertEqual(res.json()["errors"][0]["code"], "BATCH_REJECTED")
        self.assertEqual(self._scene_element_ids("1"), [11, 12])

    def test_clipboard_round_trip(self) -> None:
        copied = self.client.post(f"/projects/{self.project_id}/clipboard/copy", json={"selection": [11, 12]}).json()
        payload = json.loads(copied["clipboard"])
        self.assertEqual([n["id"] for n in payload["nodes"]], [11, 12])
        res = self.client.post(
            f"/projects/{self.project_id}/clipboard/paste",
            json={"parent": "scene:2", "clipboard": copied["clipboard"]},
        )
        body = res.json()
        self.assertEqual(res.status_code, 201, body)
        self.assertEqual([a["record"]["name"] for a in body["added"]], ["Door", "Sign"])
        self.assertEqual(self._scene_element_ids("2"), [a["id"] for a in body["added"]])

    def test_clipboard_paste_invalid(self) -> None:
        res = self.client.post(f"/projects/{self.project_id}/clipboard/paste", json={"clipboard": "nope"})
        self.assertEqual(res.json()["errors"][0]["code"], "CLIPBOARD_INVALID")

    def test_history(self) -> None:
        self.client.post(f"/projects/{self.project_id}/records/11/name", json={"name": "Gate"}, headers={"x-actor-id": "u9"})
        history = self.client.get(f"/projects/{self.project_id}/history").json()["history"]
        self.assertEqual([h["action"] for h in history], ["rename_record", "init"])
        self.assertEqual(history[0]["actor"], {"id": "u9"})

    def test_stale_hash_conflict(self) -> None:
        res = self.client.put(
            f"/projects/{self.project_id}/property",
            json={"address": "scene:2!background_color", "value": "#fff", "expected_hash": "sha256:stale"},
        )
        self.assertEqual(res.status_code, 409)


if __name__ == "__main__":
    unittest.main()
