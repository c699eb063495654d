import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from recordkit.ids import MAX_SAFE_ID, generate_id
from recordkit.names import safe_name, safe_unique_name


class TestSafeUniqueName(unittest.TestCase):
    def test_free_name_is_kept(self) -> None:
        self.assertEqual(safe_unique_name("Scene", ["Lobby"]), "Scene")

    def test_taken_name_gets_suffix(self) -> None:
        self.assertEqual(safe_unique_name("Scene", ["Scene"]), "Scene_1")
        self.assertEqual(safe_unique_name("Scene", ["Scene", "Scene_1"]), "Scene_2")

    def test_existing_suffix_is_bumped(self) -> None:
        self.assertEqual(safe_unique_name("Scene_1", ["Scene", "Scene_1"]), "Scene_2")

    def test_gap_in_suffixes_is_reused(self) -> None:
        self.assertEqual(safe_unique_name("var", ["var", "var_2"]), "var_1")

    def test_bare_suffix_name(self) -> None:
        self.assertEqual(safe_unique_name("_1", ["_1"]), "_1_1")

    def test_whitespace_collapsed(self) -> None:
        self.assertEqual(safe_name("  Main   hall "), "Main hall")
        self.assertEqual(safe_unique_name("Main  hall", ["Main hall"]), "Main hall_1")


class TestGenerateId(unittest.TestCase):
    def test_ids_are_unique_and_increasing(self) -> None:
        ids = [generate_id() for _ in range(1000)]
        self.assertEqual(len(set(ids)), 1000)
        self.assertEqual(ids, sorted(ids))

    def test_ids_are_json_safe_ints(self) -> None:
        value = generate_id()
        self.assertIsInstance(value, int)
        self.assertLessEqual(value, MAX_SAFE_ID)


if __name__ == "__main__":
    unittest.main()
