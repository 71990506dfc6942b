import json
import os
import stat
import tempfile
import unittest
from pathlib import Path

from support import make_config

from skillcrate.audit import (
    format_uninstall_entry,
    format_update_entry,
    read_audit_log,
    record_uninstall,
    record_update,
    scope_label,
)
from skillcrate.config import Config


class TestAuditFormat(unittest.TestCase):
    def test_uninstall_entry(self) -> None:
        line = format_uninstall_entry(
            "demo",
            "project",
            "SUCCESS",
            files_removed=4,
            bytes_freed=7800,
            path="/work/my skills/demo",
        )
        self.assertEqual(line, "UNINSTALL demo project SUCCESS removed=4 size=7800 path=/work/my\\ skills/demo")

    def test_uninstall_error_is_one_token(self) -> None:
        line = format_uninstall_entry("demo", "personal", "SECURITY_BLOCKED", error="symlink escape\nfound" + "x" * 300)
        error = line.split(" error=", 1)[1]
        self.assertNotIn(" ", error)
        self.assertNotIn("\n", error)
        self.assertEqual(len(error), 200)

    def test_update_entry_details_are_json(self) -> None:
        line = format_update_entry(
            "demo",
            "custom",
            "ROLLED_BACK",
            package_path="/tmp/demo.skill",
            error="Extraction failed",
        )
        head, details = line.split(" ROLLED_BACK ", 1)
        self.assertEqual(head, "UPDATE demo custom")
        self.assertEqual(json.loads(details), {"packagePath": "/tmp/demo.skill", "error": "Extraction failed"})

    def test_scope_label(self) -> None:
        cfg = Config(default_scope="personal")
        self.assertEqual(scope_label(None, cfg), "personal")
        self.assertEqual(scope_label("project", cfg), "project")
        self.assertEqual(scope_label("/srv/skills", cfg), "custom")


class TestAuditLog(unittest.TestCase):
    def test_appends_private_lines(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg = make_config(Path(td), audit_log=str(Path(td) / "data" / "audit.log"))

            self.assertTrue(record_uninstall(cfg, "demo", "project", "NOT_FOUND", error="missing"))
            self.assertTrue(record_update(cfg, "demo", "project", "FAILED", package_path="demo.skill"))

            lines = read_audit_log(cfg)
            mode = stat.S_IMODE(os.stat(cfg.audit_log_path).st_mode)
            self.assertEqual(read_audit_log(cfg, limit=1), lines[-1:])

        self.assertEqual(len(lines), 2)
        self.assertRegex(lines[0], r"^\[[0-9T:.\-]+Z\] UNINSTALL demo project NOT_FOUND error=missing$")
        self.assertIn(" UPDATE demo project FAILED ", lines[1])
        self.assertEqual(mode, 0o600)

    def test_unwritable_log_does_not_raise(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            blocker = Path(td) / "not-a-dir"
            blocker.write_text("x", encoding="utf-8")
            cfg = make_config(Path(td), audit_log=str(blocker / "audit.log"))

            with self.assertLogs("skillcrate.audit", level="WARNING"):
                self.assertFalse(record_uninstall(cfg, "demo", "project", "FAILED"))

            self.assertEqual(read_audit_log(cfg), [])


if __name__ == "__main__":
    unittest.main()
