import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from support import skill_md, write_skill, zip_bytes

from skillcrate.archive import open_archive
from skillcrate.versions import (
    FileChange,
    SkillMetadata,
    compare_trees,
    compare_versions,
    detect_downgrade,
    format_diff_line,
)


class TestCompareVersions(unittest.TestCase):
    def test_numeric_ordering(self) -> None:
        self.assertEqual(compare_versions("1.10.0", "1.9.0"), 1)
        self.assertEqual(compare_versions("1.0", "1.0.0"), 0)
        self.assertEqual(compare_versions("v2.0.0", "2.0.1"), -1)

    def test_prerelease_sorts_before_release(self) -> None:
        self.assertEqual(compare_versions("1.0.0-beta.1", "1.0.0"), -1)
        self.assertEqual(compare_versions("1.0.0-alpha", "1.0.0-beta"), -1)
        self.assertEqual(compare_versions("1.0.0-beta.2", "1.0.0-beta.11"), -1)

    def test_build_metadata_is_ignored(self) -> None:
        self.assertEqual(compare_versions("1.2.3+build.5", "1.2.3"), 0)


class TestDowngrade(unittest.TestCase):
    def test_version_downgrade(self) -> None:
        info = detect_downgrade(SkillMetadata("demo", version="2.0.0"), SkillMetadata("demo", version="1.5.0"))
        self.assertIsNotNone(info)
        assert info is not None
        self.assertIn("2.0.0", info.message)

    def test_upgrade_is_not_reported(self) -> None:
        self.assertIsNone(detect_downgrade(SkillMetadata("demo", version="1.0.0"), SkillMetadata("demo", version="1.0.1")))

    def test_versions_take_precedence_over_dates(self) -> None:
        now = datetime.now(timezone.utc)
        installed = SkillMetadata("demo", version="1.0.0", last_modified=now)
        package = SkillMetadata("demo", version="1.1.0", last_modified=now - timedelta(days=30))
        self.assertIsNone(detect_downgrade(installed, package))

    def test_falls_back_to_modification_time(self) -> None:
        now = datetime.now(timezone.utc)
        installed = SkillMetadata("demo", last_modified=now)

        self.assertIsNone(detect_downgrade(installed, SkillMetadata("demo", last_modified=now - timedelta(seconds=1))))
        older = detect_downgrade(installed, SkillMetadata("demo", last_modified=now - timedelta(hours=2)))
        self.assertIsNotNone(older)

    def test_missing_metadata_is_not_a_downgrade(self) -> None:
        self.assertIsNone(detect_downgrade(SkillMetadata("demo"), SkillMetadata("demo")))


class TestCompareTrees(unittest.TestCase):
    def test_added_removed_modified(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            skill = write_skill(Path(td), "demo", files={"old.txt": "gone soon", "same.txt": "abc"})
            data = zip_bytes(
                {
                    "demo/SKILL.md": skill_md("demo", description="A much longer description").encode("utf-8"),
                    "demo/same.txt": b"xyz",
                    "demo/new.txt": b"hello",
                }
            )
            with open_archive(data) as archive:
                quick = compare_trees(skill, archive)
                thorough = compare_trees(skill, archive, thorough=True)

        self.assertEqual([c.path for c in quick.added], ["new.txt"])
        self.assertEqual([c.path for c in quick.removed], ["old.txt"])
        self.assertEqual([c.path for c in quick.modified], ["SKILL.md"])
        self.assertEqual(sorted(c.path for c in thorough.modified), ["SKILL.md", "same.txt"])
        self.assertTrue(quick.has_changes)

    def test_format_diff_line(self) -> None:
        self.assertEqual(format_diff_line(FileChange("a.txt", "added", 0, 10)), "+ a.txt (10 B)")
        self.assertEqual(format_diff_line(FileChange("b.txt", "removed", 2048, 0)), "- b.txt (2.0 KB)")
        self.assertEqual(format_diff_line(FileChange("c.txt", "modified", 10, 4)), "~ c.txt (-6 B)")


if __name__ == "__main__":
    unittest.main()
