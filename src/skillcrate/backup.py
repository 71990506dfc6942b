from __future__ import annotations

import logging
import os
import re
import secrets
import stat
import zipfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable

from .archive import open_archive
from .config import Config
from .errors import FileSystemError, InvalidPackageError, SecurityError, SecurityFinding
from .extract import extract_archive, remove_tree
from .files import enumerate_skill_files
from .paths import is_contained

logger = logging.getLogger(__name__)

BACKUP_EXT = ".skill"
DIR_MODE = 0o700
FILE_MODE = 0o600
RANDOM_RETRIES = 3
MAX_SUFFIX = 100


@dataclass(frozen=True)
class BackupDirValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class BackupSnapshot:
    path: Path
    skill_name: str
    file_count: int
    size: int


def generate_backup_filename(skill_name: str, *, now: datetime | None = None) -> str:
    ts = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
    return f"{skill_name}-{ts}-{secrets.token_hex(4)}{BACKUP_EXT}"


def _backup_name_re(skill_name: str) -> re.Pattern[str]:
    return re.compile(rf"^{re.escape(skill_name)}-\d{{8}}-\d{{6}}-[a-f0-9]+(?:-\d+)?{re.escape(BACKUP_EXT)}$")


class BackupManager:
    """Private, per-user store of pre-update snapshots."""

    def __init__(self, config: Config) -> None:
        self.config = config
        self.root = config.backup_path

    def _refuse_symlink(self, path: Path) -> None:
        if path.is_symlink():
            raise SecurityError.from_finding(
                SecurityFinding("symlink-escape", str(path), f"Security error: {path} is a symlink")
            )

    def backup_root(self) -> Path:
        self._refuse_symlink(self.root.parent)
        self._refuse_symlink(self.root)
        try:
            self.root.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
        except OSError as e:
            raise FileSystemError(f"Cannot create backup directory {self.root}: {e}", path=self.root) from e
        self._refuse_symlink(self.root)
        return self.root

    def validate_backup_directory(self) -> BackupDirValidation:
        errors: list[str] = []
        warnings: list[str] = []
        for path in (self.root.parent, self.root):
            try:
                st = os.lstat(path)
            except FileNotFoundError:
                continue
            except OSError as e:
                errors.append(f"Cannot access {path}: {e}")
                continue
            if stat.S_ISLNK(st.st_mode):
                errors.append(f"{path} is a symlink")
                continue
            if not stat.S_ISDIR(st.st_mode):
                errors.append(f"{path} is not a directory")
                continue
            if st.st_mode & stat.S_IROTH:
                warnings.append(f"{path} is world-readable (mode: {stat.S_IMODE(st.st_mode):o})")
        for w in warnings:
            logger.warning("Backup directory check: %s", w)
        return BackupDirValidation(valid=not errors, errors=errors, warnings=warnings)

    def check_writable(self) -> None:
        root = self.backup_root()
        write_test = root / f".write-test-{secrets.token_hex(4)}"
        try:
            fd = os.open(write_test, os.O_WRONLY | os.O_CREAT | os.O_EXCL, FILE_MODE)
            os.close(fd)
            write_test.unlink()
        except OSError as e:
            raise FileSystemError(f"Cannot write to backup directory {root}: {e}", path=root) from e

    def verify_backup_containment(self, path: Path) -> bool:
        root = os.path.realpath(self.root)
        candidate = os.path.join(os.path.realpath(Path(path).parent), Path(path).name)
        return candidate != root and is_contained(root, candidate)

    def generate_unique_backup_path(self, skill_name: str) -> Path:
        root = self.backup_root()
        filename = generate_backup_filename(skill_name)
        for _ in range(RANDOM_RETRIES):
            candidate = root / filename
            if not os.path.lexists(candidate):
                return candidate
            logger.warning("Backup filename collision: %s, retrying", filename)
            filename = generate_backup_filename(skill_name)

        stem = filename[: -len(BACKUP_EXT)]
        for i in range(1, MAX_SUFFIX + 1):
            candidate = root / f"{stem}-{i}{BACKUP_EXT}"
            if not os.path.lexists(candidate):
                logger.warning("Using suffixed backup path: %s", candidate.name)
                return candidate
        raise FileSystemError("Unable to generate a unique backup filename after 100+ attempts", path=root)

    def create_backup(
        self,
        skill_path: Path,
        skill_name: str,
        *,
        check: Callable[[], None] | None = None,
    ) -> BackupSnapshot:
        if not skill_path.is_dir() or skill_path.is_symlink():
            raise FileSystemError(f"Skill path is not a directory: {skill_path}", path=skill_path)

        self.backup_root()
        validation = self.validate_backup_directory()
        if not validation.valid:
            raise FileSystemError("; ".join(validation.errors), path=self.root)
        self.check_writable()

        backup_path = self.generate_unique_backup_path(skill_name)
        if not self.verify_backup_containment(backup_path):
            raise SecurityError.from_finding(
                SecurityFinding(
                    "containment-violation",
                    str(backup_path),
                    f"Security error: Backup path escapes backup directory: {backup_path}",
                )
            )

        file_count = 0
        try:
            fd = os.open(backup_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, FILE_MODE)
            with os.fdopen(fd, "wb") as fp, zipfile.ZipFile(fp, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                # Root entry first: an empty skill still restores, with its own mode.
                zf.write(skill_path, arcname=f"{skill_name}/")
                for info in sorted(enumerate_skill_files(skill_path), key=lambda i: i.relative_path):
                    if check is not None:
                        check()
                    if info.is_symlink:
                        continue
                    arcname = f"{skill_name}/{info.relative_path}"
                    if info.is_dir:
                        zf.write(info.absolute_path, arcname=arcname + "/")
                        continue
                    zf.write(info.absolute_path, arcname=arcname)
                    file_count += 1
        except BaseException:
            try:
                backup_path.unlink()
            except FileNotFoundError:
                pass
            raise

        size = backup_path.stat().st_size
        logger.info("Created backup of %s at %s (%d files)", skill_name, backup_path, file_count)
        return BackupSnapshot(path=backup_path, skill_name=skill_name, file_count=file_count, size=size)

    def restore_backup(self, backup_path: Path, target: Path, *, skill_name: str | None = None) -> int:
        """Replace ``target`` with the snapshot's contents; returns the file count.

        ``skill_name`` names the archive root when the zip itself cannot, as
        with a snapshot of an empty skill taken without a root entry.
        """
        if not self.verify_backup_containment(backup_path):
            raise SecurityError(f"Security error: Backup path escapes backup directory: {backup_path}")
        try:
            st = os.lstat(backup_path)
        except FileNotFoundError as e:
            raise FileSystemError(f"Backup file not found: {backup_path}", path=backup_path) from e
        if not stat.S_ISREG(st.st_mode):
            raise FileSystemError(f"Backup is not a regular file: {backup_path}", path=backup_path)

        with open_archive(backup_path) as archive:
            root = archive.root_directory()
            if root is None and archive.entries:
                raise InvalidPackageError(f"Backup archive has no single root directory: {backup_path}")
            root = root or skill_name
            if root is None:
                raise InvalidPackageError(f"Backup archive is empty and names no skill: {backup_path}")
            remove_tree(target)
            target.mkdir(parents=True)
            stats = extract_archive(archive, root, target)
            root_entry = archive.get(f"{root}/")
            if root_entry is not None:
                os.chmod(target, root_entry.mode)
        logger.info("Restored %s from backup %s", target, backup_path)
        return stats.file_count

    def cleanup_backup(self, backup_path: Path) -> None:
        if not self.verify_backup_containment(backup_path):
            raise SecurityError(f"Security error: Cannot delete file outside backup directory: {backup_path}")
        try:
            st = os.lstat(backup_path)
        except FileNotFoundError:
            return
        if stat.S_ISLNK(st.st_mode):
            raise SecurityError(f"Security error: Cannot delete symlink: {backup_path}")
        if not stat.S_ISREG(st.st_mode):
            raise FileSystemError(f"Cannot delete: {backup_path} is not a regular file", path=backup_path)
        os.unlink(backup_path)
        logger.debug("Removed backup %s", backup_path)

    def list_backups(self, skill_name: str) -> list[Path]:
        if not self.root.is_dir():
            return []
        pattern = _backup_name_re(skill_name)
        found: list[tuple[float, Path]] = []
        with os.scandir(self.root) as it:
            for entry in it:
                if not pattern.match(entry.name) or not entry.is_file(follow_symlinks=False):
                    continue
                found.append((entry.stat(follow_symlinks=False).st_mtime, Path(entry.path)))
        found.sort(key=lambda t: (t[0], t[1].name), reverse=True)
        return [p for _, p in found]
