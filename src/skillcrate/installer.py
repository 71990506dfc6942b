from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Literal, Union

from .archive import ArchiveSource, SkillArchive, open_archive
from .backup import BackupManager
from .config import Config
from .errors import FileSystemError, InvalidPackageError, SecurityError, SecurityFinding
from .files import enforce_resource_limits
from .interrupts import cleanup_on_signal
from .paths import is_protected_location, trusted_roots, verify_case_sensitivity
from .scopes import ensure_directory_exists, resolve_scope
from .security import SymlinkEscape, check_symlink_safety
from .structure import inspect_package
from .timeouts import PhaseTimer
from .transaction import replace_skill_contents
from .validation import ContentValidator, skill_name_problem, validate_skill_directory

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreviewFile:
    path: str
    size: int
    is_dir: bool


@dataclass(frozen=True)
class FileComparison:
    path: str
    exists_in_target: bool
    package_size: int
    target_size: int | None
    would_modify: bool
    package_hash: str | None = None
    target_hash: str | None = None


@dataclass(frozen=True)
class InstallResult:
    skill_name: str
    skill_path: Path
    file_count: int
    size: int
    was_overwritten: bool
    backup_path: Path | None = None
    warnings: list[str] = field(default_factory=list)
    success: bool = True
    type: Literal["install-result"] = "install-result"


@dataclass(frozen=True)
class DryRunPreview:
    skill_name: str
    target_path: Path
    files: list[PreviewFile]
    total_size: int
    would_overwrite: bool
    conflicts: list[str]
    warnings: list[str] = field(default_factory=list)
    type: Literal["dry-run-preview"] = "dry-run-preview"


@dataclass(frozen=True)
class OverwriteRequired:
    skill_name: str
    existing_path: Path
    files: list[FileComparison]
    type: Literal["overwrite-required"] = "overwrite-required"


InstallOutcome = Union[InstallResult, DryRunPreview, OverwriteRequired]


def _hash_stream(fp: IO[bytes]) -> str:
    h = hashlib.sha256()
    for chunk in iter(lambda: fp.read(1024 * 1024), b""):
        h.update(chunk)
    return h.hexdigest()


def _relative_entries(archive: SkillArchive, root: str) -> list[tuple[str, str, int, bool]]:
    prefix = root + "/"
    out = []
    for e in archive.entries:
        rel = e.path[len(prefix):].rstrip("/")
        if rel:
            out.append((e.path, rel, e.size, e.is_dir))
    return out


def compare_with_target(archive: SkillArchive, root: str, target: Path, *, thorough: bool = False) -> list[FileComparison]:
    comparisons: list[FileComparison] = []
    for arcname, rel, size, is_dir in _relative_entries(archive, root):
        if is_dir:
            continue
        existing = target / rel
        if existing.is_file() and not existing.is_symlink():
            target_size = existing.stat().st_size
            would_modify = target_size != size
            package_hash = target_hash = None
            if thorough and not would_modify:
                with archive.open(arcname) as src:
                    package_hash = _hash_stream(src)
                with existing.open("rb") as fp:
                    target_hash = _hash_stream(fp)
                would_modify = package_hash != target_hash
            comparisons.append(
                FileComparison(
                    path=rel,
                    exists_in_target=True,
                    package_size=size,
                    target_size=target_size,
                    would_modify=would_modify,
                    package_hash=package_hash,
                    target_hash=target_hash,
                )
            )
        else:
            comparisons.append(
                FileComparison(path=rel, exists_in_target=False, package_size=size, target_size=None, would_modify=True)
            )
    return comparisons


def check_install_target(scope_root: Path, target: Path, skill_name: str, *, roots: tuple[Path, ...]) -> bool:
    """Raise for an unusable target; return whether a skill is already installed there."""
    if is_protected_location(target, trusted_roots=roots):
        raise SecurityError.from_finding(
            SecurityFinding("containment-violation", str(target), f"Refusing to write into system location {target}")
        )

    safety = check_symlink_safety(target, scope_root)
    if isinstance(safety, SymlinkEscape):
        raise SecurityError.from_finding(safety.finding())

    if not os.path.lexists(target):
        return False
    if not target.is_dir():
        raise FileSystemError(f"Target exists and is not a directory: {target}", path=target)

    mismatch = verify_case_sensitivity(target, skill_name)
    if mismatch is not None:
        raise SecurityError.from_finding(mismatch)
    return True


def install_skill(
    source: ArchiveSource,
    *,
    scope: str | os.PathLike[str] | None = None,
    force: bool = False,
    dry_run: bool = False,
    thorough: bool = False,
    keep_backup: bool = False,
    config: Config | None = None,
    validator: ContentValidator = validate_skill_directory,
    cwd: Path | None = None,
    home: Path | None = None,
) -> InstallOutcome:
    cfg = config if config is not None else Config()
    resolved = resolve_scope(scope if scope is not None else cfg.default_scope, cwd=cwd, home=home)
    scope_root = resolved.path

    with open_archive(source, verify=False) as archive:
        # Declared sizes are checked before anything is inflated.
        total_size = archive.total_uncompressed_size()
        warnings = enforce_resource_limits("Package", archive.file_count(), total_size, cfg, force=force)
        archive.verify_integrity()

        structure, _ = inspect_package(archive)
        skill_name = structure.root_directory
        problem = skill_name_problem(skill_name)
        if problem is not None:
            raise InvalidPackageError(problem)

        target = scope_root / skill_name
        exists = check_install_target(scope_root, target, skill_name, roots=trusted_roots(cwd=cwd, home=home))

        if dry_run:
            files = [PreviewFile(path=rel, size=size, is_dir=is_dir) for _, rel, size, is_dir in _relative_entries(archive, skill_name)]
            conflicts = [f.path for f in files if not f.is_dir and exists and (target / f.path).exists()]
            return DryRunPreview(
                skill_name=skill_name,
                target_path=target,
                files=files,
                total_size=total_size,
                would_overwrite=exists,
                conflicts=conflicts,
                warnings=warnings,
            )

        if exists and not force:
            return OverwriteRequired(
                skill_name=skill_name,
                existing_path=target,
                files=compare_with_target(archive, skill_name, target, thorough=thorough),
            )

        ensure_directory_exists(scope_root)
        timer = PhaseTimer("install", cfg.update_timeout_s)
        with cleanup_on_signal():
            outcome = replace_skill_contents(
                archive,
                skill_name=skill_name,
                scope_root=scope_root,
                target=target,
                config=cfg,
                backups=BackupManager(cfg),
                validator=validator,
                timer=timer,
                keep_backup=keep_backup,
            )

    logger.info("Installed %s to %s (%d files)", skill_name, target, outcome.stats.file_count)
    return InstallResult(
        skill_name=skill_name,
        skill_path=target,
        file_count=outcome.stats.file_count,
        size=outcome.stats.total_size,
        was_overwritten=exists,
        backup_path=outcome.backup.path if outcome.backup_retained and outcome.backup is not None else None,
        warnings=warnings,
    )
