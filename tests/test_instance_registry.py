import json
import os
import tempfile
import unittest
from pathlib import Path


class TestInstanceRegistry(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.addCleanup(self._td.cleanup)
        self.dir = Path(self._td.name) / "instances"
        self.alive = {os.getpid()}

    def _registry(self, pid: int):
        from wired.kernel.registry import InstanceRegistry

        return InstanceRegistry(self.dir, host="box", pid=pid, probe=lambda p: p in self.alive)

    def test_lowest_free_slot(self) -> None:
        self.alive |= {1001, 1002, 1003}
        a = self._registry(1001)
        b = self._registry(1002)
        c = self._registry(1003)

        self.assertEqual(a.acquire_slot(), 1)
        self.assertEqual(b.acquire_slot(), 2)
        a.release_slot(1)
        self.assertEqual(c.acquire_slot(), 1)

        rec = c.load(1)
        assert rec is not None
        self.assertEqual(rec.owner_pid, 1003)
        self.assertEqual(rec.instance_name, "wired-1")
        self.assertEqual(rec.host, "box")

    def test_orphaned_record_is_purged_and_reused(self) -> None:
        self.alive.add(2001)
        dead = self._registry(2001)
        self.assertEqual(dead.acquire_slot(), 1)
        self.alive.discard(2001)

        live = self._registry(os.getpid())
        self.assertEqual(live.acquire_slot(), 1)
        rec = live.load(1)
        assert rec is not None
        self.assertEqual(rec.owner_pid, os.getpid())

    def test_dead_slot_below_live_slot_is_reused_first(self) -> None:
        self.alive |= {3001, 3002, 3003}
        self.assertEqual(self._registry(3001).acquire_slot(), 1)
        self.assertEqual(self._registry(3002).acquire_slot(), 2)
        self.assertEqual(self._registry(3003).acquire_slot(), 3)
        self._registry(3002).release_slot(2)
        self.alive.discard(3001)

        reg = self._registry(os.getpid())
        self.assertEqual(reg.acquire_slot(), 1)
        kept = reg.load(3)
        assert kept is not None
        self.assertEqual(kept.owner_pid, 3003)
        self.alive.add(3004)
        self.assertEqual(self._registry(3004).acquire_slot(), 2)

    def test_corrupt_record_is_purged(self) -> None:
        self.dir.mkdir(parents=True)
        (self.dir / "wired-instance-1.json").write_text("{not json", encoding="utf-8")
        (self.dir / "wired-instance-2.json").write_text(
            json.dumps({"slot": 5, "owner_pid": os.getpid()}), encoding="utf-8"
        )

        reg = self._registry(os.getpid())
        self.assertEqual(reg.list_records(), [])
        self.assertFalse((self.dir / "wired-instance-1.json").exists())
        self.assertFalse((self.dir / "wired-instance-2.json").exists())

    def test_remote_host_records_are_kept(self) -> None:
        from wired.kernel.registry import InstanceRegistry

        remote = InstanceRegistry(self.dir, host="elsewhere", pid=99999, probe=lambda p: True)
        self.assertEqual(remote.acquire_slot(), 1)

        local = self._registry(os.getpid())
        self.assertEqual(local.acquire_slot(), 2)
        self.assertEqual([r.slot for r in local.list_records()], [1, 2])

    def test_release_is_idempotent(self) -> None:
        reg = self._registry(os.getpid())
        slot = reg.acquire_slot()
        reg.release_slot(slot)
        reg.release_slot(slot)
        self.assertIsNone(reg.load(slot))

    def test_update_slot_merges(self) -> None:
        reg = self._registry(os.getpid())
        slot = reg.acquire_slot(channels={"category": "9"})
        reg.update_slot(slot, channels={"primary": "100", "overwatch": "200"})
        rec = reg.update_slot(slot, child_pids={"llm": 321})
        self.assertEqual(rec.channels, {"category": "9", "primary": "100", "overwatch": "200"})
        self.assertEqual(rec.child_pids.llm, 321)
        self.assertIsNone(rec.child_pids.overwatch)

        rec = reg.update_slot(slot, child_pids={"overwatch": 654})
        self.assertEqual((rec.child_pids.llm, rec.child_pids.overwatch), (321, 654))

        on_disk = json.loads(reg.record_path(slot).read_text(encoding="utf-8"))
        self.assertEqual(on_disk["child_pids"], {"llm": 321, "overwatch": 654})

    def test_migration_marker(self) -> None:
        reg = self._registry(os.getpid())
        path = reg.write_migration_marker("mars.local", "/opt/wired", instance=3)
        doc = json.loads(path.read_text(encoding="utf-8"))
        self.assertEqual(path.name, "wired-migration.json")
        self.assertEqual(doc["target_host"], "mars.local")
        self.assertEqual(doc["target_path"], "/opt/wired")
        self.assertEqual(doc["source_host"], "box")
        self.assertEqual(doc["instance"], 3)
        self.assertTrue(doc["timestamp"])
