import json
import os
import tempfile
import time
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

from skillcrate.config import Config
from skillcrate.errors import LockHeldError
from skillcrate.locking import (
    LockAcquired,
    LockDenied,
    acquire_update_lock,
    has_active_update_lock,
    lock_path_for,
    read_lock,
    release_lock,
    update_lock,
)


def _write_lock(path: Path, *, pid: int, started: datetime) -> None:
    payload = {
        "pid": pid,
        "timestamp": started.isoformat(),
        "operationType": "update",
        "packagePath": "/tmp/demo.skill",
    }
    path.write_text(json.dumps(payload), encoding="utf-8")


class TestUpdateLock(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.target = Path(self._td.name) / "demo"
        self.target.mkdir()
        self.cfg = Config(backup_dir=str(Path(self._td.name) / "backups"))

    def tearDown(self) -> None:
        self._td.cleanup()

    def test_lock_file_sits_next_to_target(self) -> None:
        self.assertEqual(lock_path_for(self.target), self.target.parent / "demo.update.lock")

    def test_second_acquire_is_denied(self) -> None:
        first = acquire_update_lock(self.target, "a.skill", self.cfg)
        second = acquire_update_lock(self.target, "b.skill", self.cfg)

        self.assertIsInstance(first, LockAcquired)
        self.assertIsInstance(second, LockDenied)
        assert isinstance(second, LockDenied)
        self.assertIsNotNone(second.record)
        assert second.record is not None
        self.assertEqual(second.record.pid, os.getpid())
        self.assertEqual(second.record.package_path, "a.skill")
        self.assertTrue(has_active_update_lock(self.target, self.cfg))

    def test_record_is_json_with_camel_case_keys(self) -> None:
        result = acquire_update_lock(self.target, "a.skill", self.cfg)

        raw = json.loads(result.lock_path.read_text(encoding="utf-8"))
        self.assertEqual(sorted(raw), ["operationType", "packagePath", "pid", "timestamp"])
        self.assertEqual(raw["operationType"], "update")

    def test_release_is_idempotent(self) -> None:
        result = acquire_update_lock(self.target, "a.skill", self.cfg)
        release_lock(result.lock_path)
        release_lock(result.lock_path)

        self.assertFalse(result.lock_path.exists())
        self.assertFalse(has_active_update_lock(self.target, self.cfg))

    def test_dead_owner_lock_is_reclaimed(self) -> None:
        lock = lock_path_for(self.target)
        _write_lock(lock, pid=424242, started=datetime.now(timezone.utc))

        with patch("skillcrate.locking.psutil.pid_exists", return_value=False):
            result = acquire_update_lock(self.target, "a.skill", self.cfg)

        self.assertIsInstance(result, LockAcquired)
        record = read_lock(lock)
        assert record is not None
        self.assertEqual(record.pid, os.getpid())

    def test_old_lock_from_live_pid_is_reclaimed(self) -> None:
        lock = lock_path_for(self.target)
        _write_lock(lock, pid=os.getpid(), started=datetime.now(timezone.utc) - timedelta(hours=1))

        result = acquire_update_lock(self.target, "a.skill", self.cfg)

        self.assertIsInstance(result, LockAcquired)

    def test_reclaim_never_removes_a_lock_taken_in_the_meantime(self) -> None:
        lock = lock_path_for(self.target)
        _write_lock(lock, pid=os.getpid(), started=datetime.now(timezone.utc) - timedelta(hours=1))
        stale = read_lock(lock)

        first = acquire_update_lock(self.target, "a.skill", self.cfg)
        self.assertIsInstance(first, LockAcquired)

        # The second caller judged the lock by the old record, read before the first reclaimed it.
        reads = []

        def outdated_first_read(path: Path):
            reads.append(path)
            return stale if len(reads) == 1 else read_lock(path)

        with patch("skillcrate.locking.read_lock", side_effect=outdated_first_read):
            second = acquire_update_lock(self.target, "b.skill", self.cfg)

        self.assertIsInstance(second, LockDenied)
        record = read_lock(lock)
        assert record is not None
        self.assertEqual(record.package_path, "a.skill")
        self.assertEqual(sorted(p.name for p in self.target.parent.iterdir()), ["demo", "demo.update.lock"])

    def test_recent_corrupt_lock_is_respected(self) -> None:
        lock = lock_path_for(self.target)
        lock.write_text("{not json", encoding="utf-8")

        self.assertIsInstance(acquire_update_lock(self.target, "a.skill", self.cfg), LockDenied)

        old = time.time() - 3600
        os.utime(lock, (old, old))
        self.assertIsInstance(acquire_update_lock(self.target, "a.skill", self.cfg), LockAcquired)

    def test_context_manager_releases_on_error(self) -> None:
        with self.assertRaises(ValueError):
            with update_lock(self.target, "a.skill", self.cfg):
                self.assertTrue(lock_path_for(self.target).exists())
                raise ValueError("boom")

        self.assertFalse(lock_path_for(self.target).exists())

    def test_context_manager_raises_when_held(self) -> None:
        acquire_update_lock(self.target, "a.skill", self.cfg)

        with self.assertRaises(LockHeldError) as ctx:
            with update_lock(self.target, "b.skill", self.cfg):
                self.fail("lock should not be granted")

        self.assertEqual(ctx.exception.pid, os.getpid())


if __name__ == "__main__":
    unittest.main()
