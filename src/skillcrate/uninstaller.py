from __future__ import annotations

import errno
import fnmatch
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Literal, Union

from .audit import UninstallStatus, record_uninstall, scope_label
from .config import Config
from .descriptor import DESCRIPTOR_FILENAME
from .errors import LockHeldError, OperationTimeoutError, SecurityError, SecurityFinding, SkillNotFoundError
from .files import FileInfo, check_resource_limits, enumerate_skill_files
from .locking import has_active_update_lock, lock_path_for
from .paths import is_protected_location, trusted_roots, verify_before_deletion, verify_case_sensitivity
from .scopes import resolve_scope
from .security import SymlinkEscape, check_symlink_safety, detect_hard_links, symlink_summary
from .timeouts import PhaseTimer
from .validation import validate_skill_name

logger = logging.getLogger(__name__)

LARGE_FILE_BYTES = 10 * 1024 * 1024
UNEXPECTED_DISPLAY_LIMIT = 5
RETRY_DELAY_S = 0.1
DEPENDENCY_DIRS = {"node_modules", ".venv", "venv", "__pycache__", "bower_components", "vendor"}
TEMP_FILE_PATTERNS = ("*.swp", "*.swo", "*~", ".DS_Store", "Thumbs.db", "*.tmp", "*.temp")
_LOCKED_ERRNOS = {errno.EBUSY, getattr(errno, "ETXTBSY", errno.EBUSY)}


@dataclass(frozen=True)
class SkillInfo:
    name: str
    path: Path
    files: list[FileInfo]
    total_size: int
    has_skill_md: bool
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class UnexpectedFile:
    kind: Literal["git-directory", "dependency-directory", "large-file", "temp-file"]
    path: str
    size: int | None = None


@dataclass(frozen=True)
class UnexpectedFiles:
    detected: list[UnexpectedFile]
    warnings: list[str]

    @property
    def found(self) -> bool:
        return bool(self.detected)


def detect_unexpected_files(skill_path: Path) -> UnexpectedFiles:
    detected: list[UnexpectedFile] = []
    git_dir: str | None = None
    dep_dirs: list[str] = []
    large: list[FileInfo] = []
    temp: list[FileInfo] = []

    for info in enumerate_skill_files(skill_path):
        name = info.absolute_path.name
        if info.is_dir and not info.is_symlink:
            if name == ".git" and git_dir is None:
                git_dir = info.relative_path
            elif name in DEPENDENCY_DIRS:
                dep_dirs.append(info.relative_path)
            continue
        if not info.is_symlink and info.size > LARGE_FILE_BYTES:
            large.append(info)
        if any(fnmatch.fnmatchcase(name, p) for p in TEMP_FILE_PATTERNS):
            temp.append(info)

    warnings: list[str] = []
    if git_dir is not None:
        detected.append(UnexpectedFile("git-directory", git_dir))
        warnings.append("Skill contains a .git directory. This may be a development repository rather than an installed skill.")
    if dep_dirs:
        detected.extend(UnexpectedFile("dependency-directory", p) for p in dep_dirs[:UNEXPECTED_DISPLAY_LIMIT])
        warnings.append(
            f"Skill contains {len(dep_dirs)} dependency director{'y' if len(dep_dirs) == 1 else 'ies'} "
            f"({', '.join(dep_dirs[:UNEXPECTED_DISPLAY_LIMIT])})."
        )
    if large:
        detected.extend(UnexpectedFile("large-file", f.relative_path, f.size) for f in large[:UNEXPECTED_DISPLAY_LIMIT])
        warnings.append(f"Skill contains {len(large)} file(s) larger than 10 MB.")
    if temp:
        detected.extend(UnexpectedFile("temp-file", f.relative_path) for f in temp[:UNEXPECTED_DISPLAY_LIMIT])
        warnings.append(f"Skill contains {len(temp)} temporary file(s).")
    return UnexpectedFiles(detected=detected, warnings=warnings)


@dataclass(frozen=True)
class DeleteResult:
    status: Literal["success", "skipped", "error"]
    path: Path
    path_type: str | None = None
    size: int = 0
    message: str | None = None


def _is_locked(e: OSError) -> bool:
    return e.errno in _LOCKED_ERRNOS


def safe_unlink(base: Path, path: Path) -> DeleteResult:
    """Delete one path after re-verifying it, as close to the syscall as possible."""
    for attempt in range(2):
        check = verify_before_deletion(base, path)
        if not check.ok:
            status = "error" if check.reason == "error" else "skipped"
            return DeleteResult(status=status, path=path, message=check.message)
        try:
            if check.path_type == "directory":
                os.rmdir(path)
            else:
                os.unlink(path)
        except OSError as e:
            if attempt == 0 and _is_locked(e):
                time.sleep(RETRY_DELAY_S)
                continue
            return DeleteResult(status="error", path=path, path_type=check.path_type, message=f"Failed to delete: {e}")
        return DeleteResult(status="success", path=path, path_type=check.path_type, size=check.size)
    return DeleteResult(status="error", path=path, message="File is locked by another process")  # pragma: no cover


@dataclass(frozen=True)
class DeleteProgress:
    path: Path
    relative_path: str
    result: DeleteResult


def safe_recursive_delete(skill_path: Path) -> Iterator[DeleteProgress]:
    """Files first, then directories deepest first, then the skill directory."""
    entries = list(enumerate_skill_files(skill_path))
    files = [e for e in entries if not e.is_dir or e.is_symlink]
    dirs = sorted(
        (e for e in entries if e.is_dir and not e.is_symlink),
        key=lambda e: e.relative_path.count("/"),
        reverse=True,
    )
    for info in files + dirs:
        yield DeleteProgress(info.absolute_path, info.relative_path, safe_unlink(skill_path, info.absolute_path))
    # The skill directory is checked against its parent scope.
    yield DeleteProgress(skill_path, ".", safe_unlink(skill_path.parent, skill_path))


@dataclass(frozen=True)
class RemovalProgress:
    current_path: Path
    relative_path: str
    success: bool
    error_message: str | None
    processed_count: int
    total_count: int


def stream_removal_progress(info: SkillInfo) -> Iterator[RemovalProgress]:
    total = len(info.files) + 1
    for n, progress in enumerate(safe_recursive_delete(info.path), start=1):
        yield RemovalProgress(
            current_path=progress.path,
            relative_path=progress.relative_path,
            success=progress.result.status == "success",
            error_message=progress.result.message if progress.result.status == "error" else None,
            processed_count=n,
            total_count=total,
        )


@dataclass(frozen=True)
class RemovalSuccess:
    files_removed: int
    bytes_freed: int
    type: Literal["success"] = "success"


@dataclass(frozen=True)
class RemovalPartialFailure:
    files_removed: int
    files_remaining: int
    last_error: str
    timed_out: bool = False
    type: Literal["partial-failure"] = "partial-failure"


RemovalOutcome = Union[RemovalSuccess, RemovalPartialFailure]


def execute_removal(info: SkillInfo, config: Config) -> RemovalOutcome:
    timer = PhaseTimer("uninstall", config.uninstall_timeout_s)
    total_files = sum(1 for f in info.files if not f.is_dir or f.is_symlink)
    files_removed = 0
    bytes_freed = 0
    errors = 0
    last_error = ""

    for progress in safe_recursive_delete(info.path):
        result = progress.result
        if result.status == "error":
            errors += 1
            last_error = result.message or "unknown error"
            logger.warning("Could not remove %s: %s", progress.path, last_error)
        elif result.status == "success" and result.path_type != "directory":
            files_removed += 1
            if result.path_type == "file":
                bytes_freed += result.size
        if timer.expired() and os.path.lexists(info.path):
            return RemovalPartialFailure(
                files_removed=files_removed,
                files_remaining=total_files - files_removed,
                last_error=f"Uninstall timed out after {config.uninstall_timeout_s:g}s",
                timed_out=True,
            )

    if errors or os.path.lexists(info.path):
        return RemovalPartialFailure(
            files_removed=files_removed,
            files_remaining=max(total_files - files_removed, 0),
            last_error=last_error or f"{info.path} still exists",
        )
    return RemovalSuccess(files_removed=files_removed, bytes_freed=bytes_freed)


def discover_skill(skill_name: str, scope_root: Path) -> SkillInfo:
    target = scope_root / skill_name
    if not os.path.lexists(target):
        raise SkillNotFoundError(skill_name, target)
    mismatch = verify_case_sensitivity(target, skill_name)
    if mismatch is not None:
        raise SecurityError.from_finding(mismatch)

    safety = check_symlink_safety(target, scope_root)
    if isinstance(safety, SymlinkEscape):
        raise SecurityError.from_finding(safety.finding())
    if target.is_symlink() or not target.is_dir():
        raise SecurityError.from_finding(
            SecurityFinding("containment-violation", str(target), f"{target} is not a skill directory")
        )

    files = list(enumerate_skill_files(target))
    total = sum(f.size for f in files if not f.is_dir and not f.is_symlink)
    warnings: list[str] = []
    links = symlink_summary(target)
    if links.warning:
        warnings.append(links.warning)
    return SkillInfo(
        name=skill_name,
        path=target,
        files=files,
        total_size=total,
        has_skill_md=(target / DESCRIPTOR_FILENAME).is_file(),
        warnings=warnings,
    )


def advisory_findings(info: SkillInfo, config: Config) -> list[SecurityFinding]:
    findings: list[SecurityFinding] = []
    path = str(info.path)
    unexpected = detect_unexpected_files(info.path)
    for w in unexpected.warnings:
        findings.append(SecurityFinding("unexpected-content", path, w, fatal=False))
    if not info.has_skill_md:
        findings.append(
            SecurityFinding("unexpected-content", path, f"{info.path} has no {DESCRIPTOR_FILENAME}; it may not be a skill", fatal=False)
        )
    file_count = sum(1 for f in info.files if not f.is_dir)
    for problem in check_resource_limits(file_count, info.total_size, config):
        findings.append(SecurityFinding("unexpected-content", path, f"Skill {problem}", fatal=False))
    hard_links = detect_hard_links(info.path)
    if hard_links is not None:
        findings.append(hard_links.finding())
    return findings


@dataclass(frozen=True)
class UninstallSuccess:
    skill_name: str
    path: Path
    files_removed: int
    bytes_freed: int
    warnings: list[str] = field(default_factory=list)
    success: bool = True
    type: Literal["success"] = "success"


@dataclass(frozen=True)
class UninstallDryRunPreview:
    skill_name: str
    path: Path
    files: list[FileInfo]
    total_size: int
    findings: list[SecurityFinding] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    type: Literal["dry-run-preview"] = "dry-run-preview"


@dataclass(frozen=True)
class UninstallPartialFailure:
    skill_name: str
    path: Path
    files_removed: int
    files_remaining: int
    last_error: str
    timed_out: bool = False
    success: bool = False
    type: Literal["partial-failure"] = "partial-failure"


UninstallOutcome = Union[UninstallSuccess, UninstallDryRunPreview, UninstallPartialFailure]


def _run_uninstall(
    skill_name: str,
    *,
    scope: str | os.PathLike[str] | None = None,
    force: bool = False,
    dry_run: bool = False,
    config: Config | None = None,
    cwd: Path | None = None,
    home: Path | None = None,
) -> UninstallOutcome:
    cfg = config if config is not None else Config()
    validate_skill_name(skill_name)
    scope_root = resolve_scope(scope if scope is not None else cfg.default_scope, cwd=cwd, home=home).path
    target = scope_root / skill_name
    if is_protected_location(target, trusted_roots=trusted_roots(cwd=cwd, home=home)):
        raise SecurityError.from_finding(
            SecurityFinding("containment-violation", str(target), f"Refusing to remove system location {target}")
        )

    info = discover_skill(skill_name, scope_root)
    findings = advisory_findings(info, cfg)

    if dry_run:
        return UninstallDryRunPreview(
            skill_name=skill_name,
            path=info.path,
            files=info.files,
            total_size=info.total_size,
            findings=findings,
            warnings=info.warnings,
        )

    if has_active_update_lock(info.path, cfg):
        raise LockHeldError(
            f'Skill "{skill_name}" is currently being updated', lock_path=lock_path_for(info.path)
        )
    if findings and not force:
        details = "; ".join(f.detail for f in findings)
        raise SecurityError(f"{details} Use --force to proceed.", findings=findings, advisory=True)

    outcome = execute_removal(info, cfg)
    if isinstance(outcome, RemovalPartialFailure):
        return UninstallPartialFailure(
            skill_name=skill_name,
            path=info.path,
            files_removed=outcome.files_removed,
            files_remaining=outcome.files_remaining,
            last_error=outcome.last_error,
            timed_out=outcome.timed_out,
        )
    logger.info("Removed %s (%d files, %d bytes)", info.path, outcome.files_removed, outcome.bytes_freed)
    return UninstallSuccess(
        skill_name=skill_name,
        path=info.path,
        files_removed=outcome.files_removed,
        bytes_freed=outcome.bytes_freed,
        warnings=info.warnings + [f.detail for f in findings],
    )


def _failure_status(error: BaseException) -> UninstallStatus:
    if isinstance(error, SkillNotFoundError):
        return "NOT_FOUND"
    if isinstance(error, SecurityError):
        return "SECURITY_BLOCKED"
    if isinstance(error, OperationTimeoutError):
        return "TIMEOUT"
    if isinstance(error, KeyboardInterrupt):
        return "CANCELLED"
    return "FAILED"


def uninstall_skill(
    skill_name: str,
    *,
    scope: str | os.PathLike[str] | None = None,
    force: bool = False,
    dry_run: bool = False,
    config: Config | None = None,
    cwd: Path | None = None,
    home: Path | None = None,
) -> UninstallOutcome:
    cfg = config if config is not None else Config()
    label = scope_label(scope, cfg)
    try:
        outcome = _run_uninstall(
            skill_name, scope=scope, force=force, dry_run=dry_run, config=cfg, cwd=cwd, home=home
        )
    except BaseException as e:
        if not dry_run:
            record_uninstall(cfg, skill_name, label, _failure_status(e), error=str(e) or type(e).__name__)
        raise

    if isinstance(outcome, UninstallSuccess):
        record_uninstall(
            cfg,
            skill_name,
            label,
            "SUCCESS",
            files_removed=outcome.files_removed,
            bytes_freed=outcome.bytes_freed,
            path=outcome.path,
        )
    elif isinstance(outcome, UninstallPartialFailure):
        record_uninstall(
            cfg,
            skill_name,
            label,
            "TIMEOUT" if outcome.timed_out else "PARTIAL",
            files_removed=outcome.files_removed,
            path=outcome.path,
            error=f"{outcome.files_remaining} files remaining: {outcome.last_error}",
        )
    return outcome
