import json
import os
import tempfile
import unittest
from playon_sync.config import settings
from playon_sync.storage import ENTRIES_KEY, FileStorage, MemoryStorage
from playon_sync.store import EntryStore

class TestFileStorage(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.storage = FileStorage(self.tmp.name)
        settings.PERSIST_ENABLED = True

    def tearDown(self):
        self.tmp.cleanup()

    def test_set_get_remove(self):
        self.assertIsNone(self.storage.get("missing"))

        self.storage.set("offline_queue", "[]")
        self.assertEqual(self.storage.get("offline_queue"), "[]")
        self.assertTrue(os.path.exists(os.path.join(self.tmp.name, "offline_queue.json")))
        self.assertFalse(os.path.exists(os.path.join(self.tmp.name, "offline_queue.tmp")))

        self.storage.remove("offline_queue")
        self.assertIsNone(self.storage.get("offline_queue"))
        # Removing twice is fine
        self.storage.remove("offline_queue")

    def test_overwrite(self):
        self.storage.set("k", "one")
        self.storage.set("k", "two")
        self.assertEqual(self.storage.get("k"), "two")

    def test_invalid_key(self):
        for key in ["../escape", "a/b", ""]:
            with self.assertRaises(ValueError):
                self.storage.set(key, "x")

    def test_persist_disabled(self):
        settings.PERSIST_ENABLED = False
        try:
            self.storage.set("k", "value")
        finally:
            settings.PERSIST_ENABLED = True
        self.assertIsNone(self.storage.get("k"))

    def test_entries_survive_restart(self):
        store = EntryStore(self.storage)
        store.upsert_progress("101", {"title": "Frieren", "remote_id": 101, "progress": 7})
        store.add_bookmark("101", "ch-2")
        store.add_bookmark("101", "ch-1")

        with open(os.path.join(self.tmp.name, f"{ENTRIES_KEY}.json"), encoding="utf-8") as f:
            doc = json.load(f)
        self.assertEqual(doc["101"]["bookmarks"], ["ch-1", "ch-2"])

        reopened = EntryStore(FileStorage(self.tmp.name))
        entry = reopened.get("101")
        self.assertEqual(entry.progress, 7)
        self.assertEqual(entry.bookmarks, {"ch-1", "ch-2"})

class TestMemoryStorage(unittest.TestCase):
    def test_initial_data_is_copied(self):
        initial = {"k": "v"}
        storage = MemoryStorage(initial)
        storage.set("k", "changed")
        self.assertEqual(initial["k"], "v")
        storage.remove("k")
        self.assertIsNone(storage.get("k"))

if __name__ == '__main__':
    unittest.main()
