import os
import tempfile
import unittest
from pathlib import Path

from support import make_config, write_skill

from skillcrate.audit import read_audit_log
from skillcrate.errors import LockHeldError, SecurityError, SkillNotFoundError, ValidationError
from skillcrate.locking import acquire_update_lock, release_lock
from skillcrate.uninstaller import (
    UninstallDryRunPreview,
    UninstallSuccess,
    detect_unexpected_files,
    discover_skill,
    safe_unlink,
    stream_removal_progress,
    uninstall_skill,
)


class TestUninstall(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.base = Path(self._td.name)
        self.skills = self.base / "skills"
        self.cfg = make_config(self.base)
        self.target = write_skill(self.skills, "demo", files={"scripts/run.py": "print('hi')\n"})

    def tearDown(self) -> None:
        self._td.cleanup()

    def uninstall(self, name: str, **kwargs):
        return uninstall_skill(name, scope=str(self.skills), config=self.cfg, **kwargs)

    def test_dry_run_lists_files(self) -> None:
        result = self.uninstall("demo", dry_run=True)

        self.assertIsInstance(result, UninstallDryRunPreview)
        assert isinstance(result, UninstallDryRunPreview)
        self.assertEqual(
            sorted(f.relative_path for f in result.files),
            ["SKILL.md", "scripts", "scripts/run.py"],
        )
        self.assertEqual(result.findings, [])
        self.assertTrue(self.target.is_dir())

    def test_removes_skill(self) -> None:
        expected_bytes = (self.target / "SKILL.md").stat().st_size + len("print('hi')\n")

        result = self.uninstall("demo")

        self.assertIsInstance(result, UninstallSuccess)
        assert isinstance(result, UninstallSuccess)
        self.assertEqual(result.files_removed, 2)
        self.assertEqual(result.bytes_freed, expected_bytes)
        self.assertFalse(self.target.exists())
        self.assertTrue(self.skills.is_dir())

    def test_missing_skill(self) -> None:
        with self.assertRaises(SkillNotFoundError):
            self.uninstall("missing")

    def test_invalid_name(self) -> None:
        with self.assertRaises(ValidationError):
            self.uninstall("../demo")

    def test_git_directory_needs_force(self) -> None:
        (self.target / ".git").mkdir()
        (self.target / ".git" / "HEAD").write_text("ref: refs/heads/main\n", encoding="utf-8")

        with self.assertRaises(SecurityError) as ctx:
            self.uninstall("demo")
        self.assertTrue(ctx.exception.advisory)
        self.assertEqual(ctx.exception.reason, "unexpected-content")
        self.assertIn("Use --force", str(ctx.exception))
        self.assertTrue(self.target.is_dir())

        result = self.uninstall("demo", force=True)
        self.assertIsInstance(result, UninstallSuccess)
        self.assertFalse(self.target.exists())

    def test_missing_descriptor_needs_force(self) -> None:
        (self.target / "SKILL.md").unlink()
        with self.assertRaises(SecurityError):
            self.uninstall("demo")

    def test_hard_links_need_force(self) -> None:
        shared = self.base / "shared.txt"
        os.link(self.target / "scripts" / "run.py", shared)

        with self.assertRaises(SecurityError) as ctx:
            self.uninstall("demo")
        self.assertIn("hard-link-detected", [f.kind for f in ctx.exception.findings])

        self.uninstall("demo", force=True)
        self.assertFalse(self.target.exists())
        self.assertEqual(shared.read_text(encoding="utf-8"), "print('hi')\n")

    def test_symlink_targets_survive(self) -> None:
        outside = self.base / "outside"
        outside.mkdir()
        (outside / "secret.txt").write_text("keep me", encoding="utf-8")
        (self.target / "data").symlink_to(outside, target_is_directory=True)

        result = self.uninstall("demo")

        assert isinstance(result, UninstallSuccess)
        self.assertFalse(self.target.exists())
        self.assertEqual((outside / "secret.txt").read_text(encoding="utf-8"), "keep me")
        self.assertTrue(any("outside the skill directory" in w for w in result.warnings))

    def test_symlinked_skill_directory_is_refused(self) -> None:
        elsewhere = write_skill(self.base / "elsewhere", "linked")
        (self.skills / "linked").symlink_to(elsewhere, target_is_directory=True)

        with self.assertRaises(SecurityError) as ctx:
            self.uninstall("linked")

        self.assertEqual(ctx.exception.reason, "symlink-escape")
        self.assertTrue((elsewhere / "SKILL.md").is_file())

    def test_active_update_blocks_removal(self) -> None:
        held = acquire_update_lock(self.target, "demo.skill", self.cfg)
        try:
            with self.assertRaises(LockHeldError):
                self.uninstall("demo", force=True)
        finally:
            release_lock(held.lock_path)
        self.assertTrue(self.target.is_dir())

    def test_outcomes_are_audited(self) -> None:
        self.uninstall("demo", dry_run=True)
        with self.assertRaises(SkillNotFoundError):
            self.uninstall("missing")
        (self.target / ".git").mkdir()
        with self.assertRaises(SecurityError):
            self.uninstall("demo")
        self.uninstall("demo", force=True)

        lines = read_audit_log(self.cfg)

        self.assertEqual(len(lines), 3)
        self.assertIn(" UNINSTALL missing custom NOT_FOUND error=", lines[0])
        self.assertIn(" UNINSTALL demo custom SECURITY_BLOCKED error=", lines[1])
        self.assertRegex(lines[2], r" UNINSTALL demo custom SUCCESS removed=2 size=\d+ path=")


class TestRemovalHelpers(unittest.TestCase):
    def test_progress_stream_counts_every_path(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            scope = Path(td)
            write_skill(scope, "demo", files={"a/b.txt": "b"})
            info = discover_skill("demo", scope)

            events = list(stream_removal_progress(info))

            self.assertFalse((scope / "demo").exists())

        self.assertEqual([e.processed_count for e in events], [1, 2, 3, 4])
        self.assertTrue(all(e.total_count == 4 for e in events))
        self.assertTrue(all(e.success for e in events))
        self.assertEqual(events[-1].relative_path, ".")

    def test_detect_unexpected_files(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            skill = write_skill(Path(td), "demo", files={"node_modules/pkg/index.js": "", "notes.txt~": "draft"})

            unexpected = detect_unexpected_files(skill)

        kinds = sorted(u.kind for u in unexpected.detected)
        self.assertEqual(kinds, ["dependency-directory", "temp-file"])
        self.assertEqual(len(unexpected.warnings), 2)

    def test_safe_unlink_skips_paths_outside_base(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            base = Path(td) / "skill"
            base.mkdir()
            victim = Path(td) / "victim.txt"
            victim.write_text("x", encoding="utf-8")

            result = safe_unlink(base, victim)

            self.assertEqual(result.status, "skipped")
            self.assertTrue(victim.exists())


if __name__ == "__main__":
    unittest.main()
