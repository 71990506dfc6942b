from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Literal, Union

from .archive import ArchiveSource, open_archive
from .audit import record_update, scope_label
from .backup import BackupManager, generate_backup_filename
from .config import Config
from .errors import CriticalRollbackError, PackageMismatchError, SecurityError, SkillNotFoundError
from .files import enforce_resource_limits, skill_summary
from .installer import check_install_target
from .paths import trusted_roots
from .interrupts import cleanup_on_signal
from .locking import update_lock
from .scopes import resolve_scope
from .security import detect_hard_links, symlink_summary
from .structure import inspect_package
from .timeouts import PhaseTimer
from .transaction import replace_skill_contents
from .validation import ContentValidator, validate_package_path, validate_skill_directory, validate_skill_name
from .versions import (
    DowngradeInfo,
    VersionComparison,
    VersionInfo,
    compare_trees,
    detect_downgrade,
    installed_metadata,
    installed_version_info,
    package_metadata,
    package_version_info,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UpdateSuccess:
    skill_name: str
    path: Path
    previous_file_count: int
    current_file_count: int
    previous_size: int
    current_size: int
    backup_path: Path | None
    backup_will_be_removed: bool
    downgrade: DowngradeInfo | None = None
    warnings: list[str] = field(default_factory=list)
    type: Literal["update-success"] = "update-success"


@dataclass(frozen=True)
class UpdateDryRunPreview:
    skill_name: str
    path: Path
    current_version: VersionInfo
    new_version: VersionInfo
    comparison: VersionComparison
    backup_path: Path | None
    downgrade: DowngradeInfo | None = None
    warnings: list[str] = field(default_factory=list)
    type: Literal["update-dry-run-preview"] = "update-dry-run-preview"


UpdateOutcome = Union[UpdateSuccess, UpdateDryRunPreview]


def _security_checks(target: Path, *, force: bool) -> list[str]:
    warnings: list[str] = []
    links = symlink_summary(target)
    if links.warning:
        warnings.append(links.warning)

    hard_links = detect_hard_links(target)
    if hard_links is not None:
        if not force:
            raise SecurityError(
                f"{hard_links.message} Use --force to proceed.", findings=[hard_links.finding()], advisory=True
            )
        warnings.append(hard_links.message)
    return warnings


def _run_update(
    skill_name: str,
    source: ArchiveSource,
    *,
    scope: str | os.PathLike[str] | None = None,
    force: bool = False,
    dry_run: bool = False,
    no_backup: bool = False,
    keep_backup: bool = False,
    thorough: bool = False,
    config: Config | None = None,
    validator: ContentValidator = validate_skill_directory,
    cwd: Path | None = None,
    home: Path | None = None,
    on_rollback: Callable[[], None] | None = None,
) -> UpdateOutcome:
    cfg = config if config is not None else Config()
    validate_skill_name(skill_name)
    package_label: str
    if isinstance(source, (str, os.PathLike)):
        source = validate_package_path(source)
        package_label = str(source)
    else:
        package_label = "<stream>"

    resolved = resolve_scope(scope if scope is not None else cfg.default_scope, cwd=cwd, home=home)
    scope_root = resolved.path
    target = scope_root / skill_name
    if not os.path.lexists(target):
        raise SkillNotFoundError(skill_name, target)
    # Raises for symlink escape, case mismatch and system locations.
    check_install_target(scope_root, target, skill_name, roots=trusted_roots(cwd=cwd, home=home))

    timer = PhaseTimer("update", cfg.update_timeout_s)
    with open_archive(source, verify=False) as archive:
        package_warnings = enforce_resource_limits(
            "Package", archive.file_count(), archive.total_uncompressed_size(), cfg, force=force
        )
        archive.verify_integrity()
        structure, _ = inspect_package(archive)
        if structure.root_directory != skill_name:
            raise PackageMismatchError(skill_name, structure.root_directory)

        if dry_run:
            current = installed_version_info(target)
            new = package_version_info(archive)
            return UpdateDryRunPreview(
                skill_name=skill_name,
                path=target,
                current_version=current,
                new_version=new,
                comparison=compare_trees(target, archive, thorough=thorough),
                backup_path=None if no_backup else cfg.backup_path / generate_backup_filename(skill_name),
                downgrade=detect_downgrade(installed_metadata(target), package_metadata(archive)),
            )

        with cleanup_on_signal(), update_lock(target, package_label, cfg):
            logger.info("Updating %s from %s", skill_name, package_label)
            before = skill_summary(target)
            warnings = enforce_resource_limits("Installed skill", before.file_count, before.total_size, cfg, force=force)
            warnings += package_warnings
            warnings += _security_checks(target, force=force)

            downgrade = detect_downgrade(installed_metadata(target), package_metadata(archive))
            if downgrade is not None:
                logger.warning("%s", downgrade.message)
                warnings.append(downgrade.message)

            outcome = replace_skill_contents(
                archive,
                skill_name=skill_name,
                scope_root=scope_root,
                target=target,
                config=cfg,
                backups=BackupManager(cfg),
                validator=validator,
                timer=timer,
                take_backup=not no_backup,
                keep_backup=keep_backup,
                on_rollback=on_rollback,
            )

    logger.info("Updated %s (%d -> %d files)", skill_name, before.file_count, outcome.stats.file_count)
    return UpdateSuccess(
        skill_name=skill_name,
        path=target,
        previous_file_count=before.file_count,
        current_file_count=outcome.stats.file_count,
        previous_size=before.total_size,
        current_size=outcome.stats.total_size,
        backup_path=outcome.backup.path if outcome.backup is not None else None,
        backup_will_be_removed=outcome.backup is not None and not outcome.backup_retained,
        downgrade=downgrade,
        warnings=warnings,
    )


def update_skill(
    skill_name: str,
    source: ArchiveSource,
    *,
    scope: str | os.PathLike[str] | None = None,
    force: bool = False,
    dry_run: bool = False,
    no_backup: bool = False,
    keep_backup: bool = False,
    thorough: bool = False,
    config: Config | None = None,
    validator: ContentValidator = validate_skill_directory,
    cwd: Path | None = None,
    home: Path | None = None,
) -> UpdateOutcome:
    """Replace an installed skill with a package's contents, atomically.

    Every outcome except a dry run is appended to the audit log.
    """
    cfg = config if config is not None else Config()
    label = scope_label(scope, cfg)
    package_label = str(source) if isinstance(source, (str, os.PathLike)) else "<stream>"
    rolled_back: list[bool] = []

    try:
        outcome = _run_update(
            skill_name,
            source,
            scope=scope,
            force=force,
            dry_run=dry_run,
            no_backup=no_backup,
            keep_backup=keep_backup,
            thorough=thorough,
            config=cfg,
            validator=validator,
            cwd=cwd,
            home=home,
            on_rollback=lambda: rolled_back.append(True),
        )
    except CriticalRollbackError as e:
        record_update(
            cfg,
            skill_name,
            label,
            "ROLLBACK_FAILED",
            package_path=package_label,
            backup_path=e.backup_path,
            error=str(e),
            no_backup=no_backup,
        )
        raise
    except BaseException as e:
        if not dry_run:
            record_update(
                cfg,
                skill_name,
                label,
                "ROLLED_BACK" if rolled_back else "FAILED",
                package_path=package_label,
                error=str(e) or type(e).__name__,
                no_backup=no_backup,
            )
        raise

    if isinstance(outcome, UpdateSuccess):
        record_update(
            cfg,
            skill_name,
            label,
            "SUCCESS",
            package_path=package_label,
            backup_path=outcome.backup_path,
            previous_files=outcome.previous_file_count,
            current_files=outcome.current_file_count,
            no_backup=no_backup,
        )
    return outcome
