import signal
import tempfile
import threading
import unittest
from pathlib import Path

from support import make_config

from skillcrate.interrupts import EXIT_SIGTERM, cleanup_on_signal
from skillcrate.locking import lock_path_for, update_lock


class TestCleanupOnSignal(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.base = Path(self._td.name)
        self.target = self.base / "demo"
        self.target.mkdir()
        self.cfg = make_config(self.base)

    def tearDown(self) -> None:
        self._td.cleanup()

    def test_sigterm_exits_and_releases_lock(self) -> None:
        previous = signal.getsignal(signal.SIGTERM)

        with self.assertRaises(SystemExit) as ctx:
            with cleanup_on_signal(), update_lock(self.target, "demo.skill", self.cfg):
                self.assertTrue(lock_path_for(self.target).exists())
                signal.raise_signal(signal.SIGTERM)

        self.assertEqual(ctx.exception.code, EXIT_SIGTERM)
        self.assertFalse(lock_path_for(self.target).exists())
        self.assertIs(signal.getsignal(signal.SIGTERM), previous)

    def test_worker_thread_is_left_alone(self) -> None:
        seen = []

        def worker() -> None:
            with cleanup_on_signal():
                seen.append(signal.getsignal(signal.SIGTERM))

        before = signal.getsignal(signal.SIGTERM)
        t = threading.Thread(target=worker)
        t.start()
        t.join()

        self.assertEqual(seen, [before])


if __name__ == "__main__":
    unittest.main()
