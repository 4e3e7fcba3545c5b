"""Tests for StateStore - lock-protected, crash-safe block state."""

import json
import os
import shutil
import sys
import tempfile
import time
import unittest
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from database.state_store import StateSnapshot, StateStore
from models import BlockEntry
from utils.filelock import FileLock, LockTimeout, StateIntegrityError


def make_entry(address="203.0.113.7", created_at=1000.0, expires_at=4600.0, ports=None):
    return BlockEntry(
        address=address,
        reason="Failed SSH login from",
        classification="sshd",
        created_at=created_at,
        expires_at=expires_at,
        ports=ports,
    )


class StoreTestCase(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.path = Path(self.temp_dir) / "blocks.json"
        self.lock_path = Path(self.temp_dir) / "blocks.lock"
        self.store = StateStore(str(self.path), str(self.lock_path), lock_timeout=0.2)

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class TestLoadSave(StoreTestCase):

    def test_missing_file_is_empty_state(self):
        snapshot = self.store.load()
        self.assertIsInstance(snapshot, StateSnapshot)
        self.assertEqual(snapshot.blocks, {})
        self.assertEqual(snapshot.history, {})
        self.assertFalse(self.path.exists())

    def test_save_and_reload_in_new_instance(self):
        entry = make_entry(ports=(22,))
        self.store.save({entry.address: entry}, {entry.address: [1000.0]})

        other = StateStore(str(self.path), str(self.lock_path))
        snapshot = other.load()
        self.assertEqual(vars(snapshot.blocks["203.0.113.7"]), vars(entry))
        self.assertEqual(snapshot.history, {"203.0.113.7": [1000.0]})

    def test_document_layout(self):
        entry = make_entry(expires_at=None)
        self.store.save({entry.address: entry})

        with open(self.path) as f:
            data = json.load(f)
        self.assertEqual(data["version"], "1.0")
        self.assertEqual(data["revision"], 1)
        self.assertIn("updated_at", data)
        self.assertIsNone(data["blocks"]["203.0.113.7"]["expires_at"])
        self.assertNotIn("address", data["blocks"]["203.0.113.7"])

    def test_load_returns_copy(self):
        entry = make_entry()
        self.store.save({entry.address: entry})
        snapshot = self.store.load()
        snapshot.blocks.clear()
        self.assertIn("203.0.113.7", self.store.load().blocks)


class TestTransaction(StoreTestCase):

    def test_unchanged_transaction_does_not_write(self):
        with self.store.transaction():
            pass
        self.assertFalse(self.path.exists())

    def test_revision_increments(self):
        with self.store.transaction() as state:
            state.blocks["203.0.113.7"] = make_entry()
        with self.store.transaction() as state:
            state.blocks["198.51.100.1"] = make_entry("198.51.100.1")
        self.assertEqual(self.store.load().revision, 2)

    def test_exception_discards_changes(self):
        with self.assertRaises(RuntimeError):
            with self.store.transaction() as state:
                state.blocks["203.0.113.7"] = make_entry()
                raise RuntimeError("abort")
        self.assertEqual(self.store.load().blocks, {})
        self.assertFalse(self.path.exists())

    def test_holds_lock_during_transaction(self):
        other = FileLock(str(self.lock_path), timeout=0.05, poll_interval=0.01)
        with self.store.transaction():
            with self.assertRaises(LockTimeout):
                other.acquire()
        with other:
            pass

    def test_lock_timeout_raises(self):
        with FileLock(str(self.lock_path)):
            with self.assertRaises(LockTimeout):
                with self.store.transaction():
                    pass

    def test_with_lock(self):
        self.assertEqual(self.store.with_lock(lambda: self.store.lock.locked), True)
        self.assertFalse(self.store.lock.locked)


class TestCrashSafety(StoreTestCase):
    """Interrupted writes never leave a partial file."""

    def test_interrupted_rename_keeps_previous_file(self):
        first = make_entry()
        self.store.save({first.address: first})
        before = self.path.read_bytes()

        with patch.object(StateStore, "_replace", side_effect=OSError("power loss")):
            with self.assertRaises(OSError):
                with self.store.transaction() as state:
                    state.blocks["198.51.100.1"] = make_entry("198.51.100.1")

        self.assertEqual(self.path.read_bytes(), before)
        leftovers = [p for p in os.listdir(self.temp_dir) if p.endswith(".tmp")]
        self.assertEqual(leftovers, [])

        # the in-memory cache was not updated either
        fresh = StateStore(str(self.path), str(self.lock_path))
        self.assertEqual(list(fresh.load().blocks), ["203.0.113.7"])
        self.assertEqual(list(self.store.load().blocks), ["203.0.113.7"])

    def test_stray_temp_file_ignored(self):
        entry = make_entry()
        self.store.save({entry.address: entry})
        (Path(self.temp_dir) / ".blocks.json.abc.tmp").write_text("{partial")

        fresh = StateStore(str(self.path), str(self.lock_path))
        self.assertIn("203.0.113.7", fresh.load().blocks)

    def test_corrupt_file_raises(self):
        self.path.write_text("{not json")
        with self.assertRaises(StateIntegrityError):
            self.store.load()

    def test_wrong_layout_raises(self):
        self.path.write_text(json.dumps({"blocks": ["203.0.113.7"]}))
        with self.assertRaises(StateIntegrityError):
            self.store.load()

    def test_malformed_record_raises(self):
        self.path.write_text(json.dumps({"blocks": {"203.0.113.7": {"reason": "x"}}}))
        with self.assertRaises(StateIntegrityError):
            self.store.load()

    def test_corrupt_file_not_overwritten(self):
        self.path.write_text("{not json")
        with self.assertRaises(StateIntegrityError):
            with self.store.transaction() as state:
                state.blocks["203.0.113.7"] = make_entry()
        self.assertEqual(self.path.read_text(), "{not json")


class TestExternalModification(StoreTestCase):
    """A second process (the admin CLI) writing the same file."""

    def test_reloads_after_external_write(self):
        self.assertEqual(self.store.load().blocks, {})

        admin = StateStore(str(self.path), str(self.lock_path))
        entry = make_entry("198.51.100.1")
        admin.save({entry.address: entry})

        self.assertIn("198.51.100.1", self.store.load().blocks)

    def test_transaction_merges_external_changes(self):
        with self.store.transaction() as state:
            state.blocks["203.0.113.7"] = make_entry()

        admin = StateStore(str(self.path), str(self.lock_path))
        with admin.transaction() as state:
            del state.blocks["203.0.113.7"]
            state.blocks["198.51.100.1"] = make_entry("198.51.100.1")

        with self.store.transaction() as state:
            state.blocks["192.0.2.50"] = make_entry("192.0.2.50")

        self.assertEqual(sorted(self.store.load().blocks), ["192.0.2.50", "198.51.100.1"])

    def test_invalidate(self):
        entry = make_entry()
        self.store.save({entry.address: entry})
        with open(self.path) as f:
            data = json.load(f)
        data["blocks"] = {}
        with open(self.path, "w") as f:
            json.dump(data, f)
        os.utime(self.path, ns=(time.time_ns(), time.time_ns()))
        self.store.invalidate()
        self.assertEqual(self.store.load().blocks, {})


if __name__ == '__main__':
    unittest.main()
