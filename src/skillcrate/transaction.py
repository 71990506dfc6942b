from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .archive import SkillArchive
from .backup import BackupManager, BackupSnapshot
from .config import Config
from .errors import (
    CriticalRollbackError,
    FileSystemError,
    PackageValidationError,
    SecurityError,
    SecurityFinding,
    SkillcrateError,
)
from .extract import ExtractStats, extract_archive, remove_tree
from .paths import is_contained, normalize
from .timeouts import PhaseTimer
from .validation import ContentValidator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReplaceOutcome:
    stats: ExtractStats
    backup: BackupSnapshot | None
    backup_retained: bool


def verify_target(scope_root: Path, target: Path) -> None:
    """Re-check, right before mutating, that ``target`` is a plain child of the scope."""
    if not is_contained(scope_root, target) or normalize(target.parent) != normalize(scope_root):
        raise SecurityError.from_finding(
            SecurityFinding("containment-violation", str(target), f"{target} is not inside {scope_root}")
        )
    try:
        st = os.lstat(target)
    except FileNotFoundError:
        return
    if stat.S_ISLNK(st.st_mode):
        raise SecurityError.from_finding(
            SecurityFinding("symlink-escape", str(target), f"{target} was replaced by a symlink")
        )
    if not stat.S_ISDIR(st.st_mode):
        raise FileSystemError(f"Target exists and is not a directory: {target}", path=target)


def _rollback(
    target: Path,
    backup: BackupSnapshot | None,
    backups: BackupManager,
    error: BaseException,
) -> None:
    logger.warning("Rolling back %s after error: %s", target, error)
    try:
        remove_tree(target)
        if backup is not None:
            backups.restore_backup(backup.path, target, skill_name=backup.skill_name)
    except (OSError, SkillcrateError) as rollback_error:
        raise CriticalRollbackError(
            str(error) or type(error).__name__,
            str(rollback_error),
            backup_path=backup.path if backup is not None else None,
        ) from error


def replace_skill_contents(
    archive: SkillArchive,
    *,
    skill_name: str,
    scope_root: Path,
    target: Path,
    config: Config,
    backups: BackupManager,
    validator: ContentValidator,
    timer: PhaseTimer,
    take_backup: bool = True,
    keep_backup: bool = False,
    on_rollback: Callable[[], None] | None = None,
) -> ReplaceOutcome:
    """Swap ``target``'s contents for the archive's, restoring the old tree on any failure."""
    verify_target(scope_root, target)
    existed = target.is_dir()

    backup: BackupSnapshot | None = None
    if existed and take_backup:
        backup_timer = timer.child("backup", config.backup_timeout_s)
        backup = backups.create_backup(target, skill_name, check=backup_timer.check)

    try:
        verify_target(scope_root, target)
        if existed:
            remove_tree(target)
        target.mkdir(mode=0o755)

        extraction_timer = timer.child("extraction", config.extraction_timeout_s)
        stats = extract_archive(archive, skill_name, target, check=extraction_timer.check)

        validation_timer = timer.child("validation", config.validation_timeout_s)
        report = validator(target)
        validation_timer.check()
        if not report.valid:
            raise PackageValidationError(report.errors)
    except BaseException as e:
        _rollback(target, backup, backups, e)
        if on_rollback is not None:
            on_rollback()
        if backup is not None and not keep_backup:
            _discard_backup(backups, backup)
        raise

    retained = False
    if backup is not None:
        if keep_backup:
            retained = True
        else:
            _discard_backup(backups, backup)
    return ReplaceOutcome(stats=stats, backup=backup, backup_retained=retained)


def _discard_backup(backups: BackupManager, backup: BackupSnapshot) -> None:
    try:
        backups.cleanup_backup(backup.path)
    except (OSError, SkillcrateError) as e:
        logger.warning("Could not remove backup %s: %s", backup.path, e)
