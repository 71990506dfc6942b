from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Literal

from .archive import SkillArchive
from .descriptor import DESCRIPTOR_FILENAME, descriptor_from_text, descriptor_mtime, read_descriptor
from .errors import DescriptorError
from .files import enumerate_skill_files, format_bytes

MTIME_TOLERANCE = timedelta(seconds=2)


def _split_version(version: str) -> tuple[tuple[int, ...], tuple[str, ...] | None]:
    raw = version.strip().lstrip("vV")
    if not raw:
        raise ValueError("empty version")
    raw = raw.split("+", 1)[0]
    if "-" in raw:
        core, pre = raw.split("-", 1)
        pre_parts: tuple[str, ...] | None = tuple(p for p in pre.split(".") if p)
    else:
        core, pre_parts = raw, None
    parts = core.split(".")
    if any(not p.isdigit() for p in parts):
        raise ValueError(f"Unsupported version format: {version!r}")
    nums = [int(p) for p in parts]
    while len(nums) < 3:
        nums.append(0)
    return tuple(nums), pre_parts


def _cmp(a: object, b: object) -> int:
    return (a > b) - (a < b)  # type: ignore[operator]


def _compare_prerelease(pa: tuple[str, ...], pb: tuple[str, ...]) -> int:
    for x, y in zip(pa, pb):
        if x.isdigit() and y.isdigit():
            c = _cmp(int(x), int(y))
        elif x.isdigit() != y.isdigit():
            # Numeric identifiers sort before alphanumeric ones.
            c = -1 if x.isdigit() else 1
        else:
            c = _cmp(x, y)
        if c:
            return c
    return _cmp(len(pa), len(pb))


def compare_versions(a: str, b: str) -> int:
    """Semver-style comparison returning -1, 0 or 1; falls back to string order."""
    try:
        ma, pa = _split_version(a)
        mb, pb = _split_version(b)
    except ValueError:
        return _cmp(a, b)
    if ma != mb:
        return _cmp(ma, mb)
    if pa is None or pb is None:
        # A release outranks its pre-releases.
        return _cmp(pa is None, pb is None)
    return _compare_prerelease(pa, pb)


@dataclass(frozen=True)
class SkillMetadata:
    name: str
    description: str | None = None
    version: str | None = None
    last_modified: datetime | None = None


def installed_metadata(skill_dir: Path) -> SkillMetadata:
    try:
        d = read_descriptor(skill_dir)
    except DescriptorError:
        return SkillMetadata(name=skill_dir.name, last_modified=descriptor_mtime(skill_dir))
    return SkillMetadata(
        name=d.name or skill_dir.name,
        description=d.description,
        version=d.version,
        last_modified=descriptor_mtime(skill_dir),
    )


def package_metadata(archive: SkillArchive) -> SkillMetadata:
    root = archive.root_directory() or ""
    path = f"{root}/{DESCRIPTOR_FILENAME}"
    entry = archive.get(path)
    last_modified = None
    if entry is not None:
        try:
            last_modified = datetime(*entry.date_time).astimezone(timezone.utc)
        except ValueError:
            last_modified = None
    text = archive.read_text(path)
    if text is None:
        return SkillMetadata(name=root, last_modified=last_modified)
    try:
        d = descriptor_from_text(text)
    except DescriptorError:
        return SkillMetadata(name=root, last_modified=last_modified)
    return SkillMetadata(name=d.name or root, description=d.description, version=d.version, last_modified=last_modified)


@dataclass(frozen=True)
class DowngradeInfo:
    message: str
    installed_version: str | None = None
    package_version: str | None = None
    installed_date: datetime | None = None
    package_date: datetime | None = None
    is_downgrade: bool = True


def detect_downgrade(installed: SkillMetadata, package: SkillMetadata) -> DowngradeInfo | None:
    """Report when the package looks older than what is installed. Never blocks."""
    if installed.version and package.version:
        if compare_versions(installed.version, package.version) > 0:
            return DowngradeInfo(
                message=(
                    f"Installed version ({installed.version}) is newer than "
                    f"package version ({package.version})"
                ),
                installed_version=installed.version,
                package_version=package.version,
            )
        return None

    if installed.last_modified and package.last_modified:
        if installed.last_modified - package.last_modified > MTIME_TOLERANCE:
            return DowngradeInfo(
                message=(
                    "Installed skill is newer than package "
                    f"(installed: {installed.last_modified:%Y-%m-%d %H:%M}, "
                    f"package: {package.last_modified:%Y-%m-%d %H:%M})"
                ),
                installed_date=installed.last_modified,
                package_date=package.last_modified,
            )
    return None


ChangeType = Literal["added", "removed", "modified"]


@dataclass(frozen=True)
class FileChange:
    path: str
    change_type: ChangeType
    size_before: int
    size_after: int

    @property
    def size_delta(self) -> int:
        return self.size_after - self.size_before


@dataclass(frozen=True)
class VersionComparison:
    added: list[FileChange] = field(default_factory=list)
    removed: list[FileChange] = field(default_factory=list)
    modified: list[FileChange] = field(default_factory=list)

    @property
    def size_change(self) -> int:
        return sum(c.size_delta for c in self.added + self.removed + self.modified)

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed or self.modified)


def _file_sha256(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as fp:
        for chunk in iter(lambda: fp.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def compare_trees(skill_dir: Path, archive: SkillArchive, *, thorough: bool = False) -> VersionComparison:
    installed: dict[str, tuple[int, Path]] = {}
    for info in enumerate_skill_files(skill_dir):
        if not info.is_dir and not info.is_symlink:
            installed[info.relative_path] = (info.size, info.absolute_path)

    root = archive.root_directory() or ""
    prefix = root + "/"
    packaged: dict[str, tuple[int, str]] = {}
    for e in archive.files():
        if e.path.startswith(prefix):
            packaged[e.path[len(prefix):]] = (e.size, e.path)

    comparison = VersionComparison()
    for rel in sorted(packaged):
        size_after, arcname = packaged[rel]
        if rel not in installed:
            comparison.added.append(FileChange(rel, "added", 0, size_after))
            continue
        size_before, abs_path = installed[rel]
        changed = size_before != size_after
        if not changed and thorough:
            changed = _file_sha256(abs_path) != hashlib.sha256(archive.read(arcname)).hexdigest()
        if changed:
            comparison.modified.append(FileChange(rel, "modified", size_before, size_after))
    for rel in sorted(set(installed) - set(packaged)):
        comparison.removed.append(FileChange(rel, "removed", installed[rel][0], 0))
    return comparison


@dataclass(frozen=True)
class VersionInfo:
    path: str
    file_count: int
    size: int
    last_modified: datetime | None = None
    description: str | None = None
    version: str | None = None


def installed_version_info(skill_dir: Path) -> VersionInfo:
    meta = installed_metadata(skill_dir)
    count = size = 0
    for info in enumerate_skill_files(skill_dir):
        if not info.is_dir and not info.is_symlink:
            count += 1
            size += info.size
    return VersionInfo(
        path=str(skill_dir),
        file_count=count,
        size=size,
        last_modified=meta.last_modified,
        description=meta.description,
        version=meta.version,
    )


def package_version_info(archive: SkillArchive) -> VersionInfo:
    meta = package_metadata(archive)
    prefix = (archive.root_directory() or "") + "/"
    files = [e for e in archive.files() if e.path.startswith(prefix)]
    return VersionInfo(
        path=archive.source,
        file_count=len(files),
        size=sum(e.size for e in files),
        last_modified=meta.last_modified,
        description=meta.description,
        version=meta.version,
    )


def format_diff_line(change: FileChange) -> str:
    prefix = {"added": "+", "removed": "-", "modified": "~"}[change.change_type]
    if change.change_type == "added":
        size = f" ({format_bytes(change.size_after)})"
    elif change.change_type == "removed":
        size = f" ({format_bytes(change.size_before)})"
    else:
        sign = "+" if change.size_delta >= 0 else "-"
        size = f" ({sign}{format_bytes(abs(change.size_delta))})"
    return f"{prefix} {change.path}{size}"
