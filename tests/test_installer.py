import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from support import build_package, make_config, skill_md, write_skill, zip_bytes

from skillcrate.archive import SkillArchive
from skillcrate.errors import (
    FileSystemError,
    InvalidPackageError,
    PackageValidationError,
    ResourceLimitError,
    SecurityError,
)
from skillcrate.installer import DryRunPreview, InstallResult, OverwriteRequired, install_skill
from skillcrate.validation import ValidationReport


def _reject(_: Path) -> ValidationReport:
    return ValidationReport(valid=False, errors=["rejected by test validator"])


class InstallerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.base = Path(self._td.name)
        self.skills = self.base / "skills"
        self.cfg = make_config(self.base)
        self.pkg = build_package(
            write_skill(self.base / "src", "demo", description="First release"),
            self.base / "dist",
        )

    def tearDown(self) -> None:
        self._td.cleanup()

    def install(self, source, **kwargs):
        return install_skill(source, scope=str(self.skills), config=self.cfg, **kwargs)

    def backups(self) -> list[Path]:
        root = self.cfg.backup_path
        return sorted(root.glob("*.skill")) if root.exists() else []


class TestInstall(InstallerTestCase):
    def test_fresh_install(self) -> None:
        result = self.install(self.pkg)

        self.assertIsInstance(result, InstallResult)
        assert isinstance(result, InstallResult)
        self.assertEqual(result.skill_name, "demo")
        self.assertEqual(result.file_count, 1)
        self.assertFalse(result.was_overwritten)
        self.assertIsNone(result.backup_path)
        self.assertEqual(result.skill_path, self.skills / "demo")
        self.assertIn("First release", (self.skills / "demo" / "SKILL.md").read_text(encoding="utf-8"))

    def test_existing_skill_requires_overwrite(self) -> None:
        self.install(self.pkg)

        result = self.install(self.pkg)

        self.assertIsInstance(result, OverwriteRequired)
        assert isinstance(result, OverwriteRequired)
        self.assertEqual([f.path for f in result.files], ["SKILL.md"])
        self.assertTrue(result.files[0].exists_in_target)
        self.assertFalse(result.files[0].would_modify)

    def test_thorough_comparison_sees_same_size_edits(self) -> None:
        self.install(self.pkg)
        installed = self.skills / "demo" / "SKILL.md"
        text = installed.read_text(encoding="utf-8")
        installed.write_text(text.replace("First", "Firzt"), encoding="utf-8")

        quick = self.install(self.pkg)
        thorough = self.install(self.pkg, thorough=True)

        assert isinstance(quick, OverwriteRequired) and isinstance(thorough, OverwriteRequired)
        self.assertFalse(quick.files[0].would_modify)
        self.assertTrue(thorough.files[0].would_modify)
        self.assertIsNotNone(thorough.files[0].package_hash)

    def test_forced_reinstall_is_idempotent(self) -> None:
        first = self.install(self.pkg, force=True)
        second = self.install(self.pkg, force=True)

        assert isinstance(first, InstallResult) and isinstance(second, InstallResult)
        self.assertTrue(second.was_overwritten)
        self.assertEqual(first.file_count, second.file_count)
        self.assertEqual(sorted(p.name for p in (self.skills / "demo").iterdir()), ["SKILL.md"])
        self.assertEqual(self.backups(), [])

    def test_force_removes_stale_files(self) -> None:
        self.install(self.pkg)
        (self.skills / "demo" / "leftover.txt").write_text("old", encoding="utf-8")

        self.install(self.pkg, force=True)

        self.assertFalse((self.skills / "demo" / "leftover.txt").exists())

    def test_keep_backup_retains_snapshot(self) -> None:
        self.install(self.pkg)
        result = self.install(self.pkg, force=True, keep_backup=True)

        assert isinstance(result, InstallResult)
        self.assertIsNotNone(result.backup_path)
        self.assertEqual(self.backups(), [result.backup_path])

    def test_dry_run_does_not_touch_disk(self) -> None:
        result = self.install(self.pkg, dry_run=True)

        self.assertIsInstance(result, DryRunPreview)
        assert isinstance(result, DryRunPreview)
        self.assertFalse(result.would_overwrite)
        self.assertEqual([f.path for f in result.files], ["SKILL.md"])
        self.assertFalse(self.skills.exists())

    def test_resource_limits_need_force(self) -> None:
        self.cfg = make_config(self.base, max_file_count=0)

        with self.assertRaises(ResourceLimitError):
            self.install(self.pkg)
        self.assertFalse((self.skills / "demo").exists())

        result = self.install(self.pkg, force=True)
        assert isinstance(result, InstallResult)
        self.assertTrue(any("file count" in w for w in result.warnings))

    def test_limits_are_checked_before_members_are_inflated(self) -> None:
        self.cfg = make_config(self.base, max_skill_bytes=1)

        with patch.object(SkillArchive, "verify_integrity") as verify:
            with self.assertRaises(ResourceLimitError):
                self.install(self.pkg)

        verify.assert_not_called()


class TestInstallSafety(InstallerTestCase):
    def test_path_traversal_is_rejected_before_writing(self) -> None:
        data = zip_bytes(
            {
                "demo/SKILL.md": skill_md("demo").encode("utf-8"),
                "demo/../evil.txt": b"pwned",
            }
        )

        with self.assertRaises(InvalidPackageError):
            self.install(data)

        self.assertFalse((self.skills / "demo").exists())
        self.assertFalse((self.skills / "evil.txt").exists())

    def test_invalid_skill_name_in_package(self) -> None:
        data = zip_bytes({"Bad_Name/SKILL.md": skill_md("Bad_Name").encode("utf-8")})
        with self.assertRaises(InvalidPackageError):
            self.install(data)

    def test_validator_failure_on_fresh_install_leaves_nothing(self) -> None:
        with self.assertRaises(PackageValidationError):
            self.install(self.pkg, validator=_reject)

        self.assertFalse((self.skills / "demo").exists())

    def test_validator_failure_restores_previous_version(self) -> None:
        self.install(self.pkg)
        newer = build_package(
            write_skill(self.base / "src2", "demo", description="Second release", files={"extra.txt": "new"}),
            self.base / "dist2",
        )

        with self.assertRaises(PackageValidationError):
            self.install(newer, force=True, validator=_reject)

        target = self.skills / "demo"
        self.assertIn("First release", (target / "SKILL.md").read_text(encoding="utf-8"))
        self.assertFalse((target / "extra.txt").exists())
        self.assertEqual(self.backups(), [])

    def test_symlinked_target_outside_scope_is_refused(self) -> None:
        elsewhere = self.base / "elsewhere"
        elsewhere.mkdir()
        (elsewhere / "keep.txt").write_text("precious", encoding="utf-8")
        self.skills.mkdir()
        (self.skills / "demo").symlink_to(elsewhere, target_is_directory=True)

        with self.assertRaises(SecurityError) as ctx:
            self.install(self.pkg, force=True)

        self.assertEqual(ctx.exception.reason, "symlink-escape")
        self.assertEqual((elsewhere / "keep.txt").read_text(encoding="utf-8"), "precious")

    def test_target_that_is_a_file_is_refused(self) -> None:
        self.skills.mkdir()
        (self.skills / "demo").write_text("not a directory", encoding="utf-8")

        with self.assertRaises(FileSystemError) as ctx:
            self.install(self.pkg, force=True)
        self.assertIn("not a directory", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
