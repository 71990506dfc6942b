from __future__ import annotations

import logging
import os
import shutil
import stat
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .archive import SkillArchive
from .errors import FileSystemError, InvalidPackageError
from .paths import is_contained

logger = logging.getLogger(__name__)

_O_NOFOLLOW = getattr(os, "O_NOFOLLOW", 0)
_O_BINARY = getattr(os, "O_BINARY", 0)
_CHUNK = 1024 * 1024


@dataclass(frozen=True)
class ExtractStats:
    file_count: int
    total_size: int


def _zip_time(date_time: tuple[int, int, int, int, int, int]) -> float | None:
    try:
        return time.mktime(date_time + (0, 0, -1))
    except (OverflowError, ValueError):
        return None


def _checked_target(dest: Path, real_dest: str, rel: str) -> Path:
    target = dest / rel
    if not is_contained(dest, target):
        raise InvalidPackageError(f"Path traversal detected: {rel!r}")
    # Parent directories created earlier must not have been swapped for links.
    parent = target.parent
    if parent.exists() and not is_contained(real_dest, os.path.realpath(parent)):
        raise InvalidPackageError(f"Path traversal detected: {rel!r} resolves outside the target")
    return target


def extract_archive(
    archive: SkillArchive,
    root_name: str,
    dest: Path,
    *,
    check: Callable[[], None] | None = None,
) -> ExtractStats:
    """Extract every entry under ``{root_name}/`` into ``dest``.

    ``dest`` must already exist. Containment is re-checked for each entry
    right before it is written. Directory modes are applied last, deepest
    first, so restrictive archive modes cannot block the extraction itself.
    """
    prefix = root_name + "/"
    real_dest = os.path.realpath(dest)
    dir_modes: list[tuple[Path, int, float | None]] = []
    file_count = 0
    total_size = 0

    for entry in archive.entries:
        if check is not None:
            check()
        if not entry.path.startswith(prefix):
            raise InvalidPackageError(f"Entry is outside the {root_name!r} directory: {entry.path!r}")
        rel = entry.path[len(prefix):].rstrip("/")
        if not rel:
            continue
        if ".." in rel.split("/") or "\x00" in rel or "\\" in rel:
            raise InvalidPackageError(f"Path traversal detected: {entry.path!r}")

        target = _checked_target(dest, real_dest, rel)
        mtime = _zip_time(entry.date_time)

        if entry.is_dir:
            target.mkdir(parents=True, exist_ok=True)
            dir_modes.append((target, entry.mode, mtime))
            continue

        target.parent.mkdir(parents=True, exist_ok=True)
        _checked_target(dest, real_dest, rel)
        try:
            fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_TRUNC | _O_NOFOLLOW | _O_BINARY, 0o600)
        except OSError as e:
            raise FileSystemError(f"Failed to create {target}: {e}", path=target) from e
        with os.fdopen(fd, "wb") as out, archive.open(entry.path) as src:
            shutil.copyfileobj(src, out, _CHUNK)
        os.chmod(target, entry.mode)
        if mtime is not None:
            os.utime(target, (mtime, mtime))
        file_count += 1
        total_size += entry.size
        logger.debug("Extracted %s (%d bytes)", rel, entry.size)

    for path, mode, mtime in sorted(dir_modes, key=lambda t: len(t[0].parts), reverse=True):
        os.chmod(path, mode)
        if mtime is not None:
            os.utime(path, (mtime, mtime))

    return ExtractStats(file_count=file_count, total_size=total_size)


def _make_tree_writable(path: Path) -> None:
    try:
        os.chmod(path, stat.S_IMODE(os.lstat(path).st_mode) | stat.S_IRWXU)
    except OSError:
        return
    for dirpath, dirnames, _ in os.walk(path):
        for name in dirnames:
            child = os.path.join(dirpath, name)
            try:
                st = os.lstat(child)
                if stat.S_ISDIR(st.st_mode):
                    os.chmod(child, stat.S_IMODE(st.st_mode) | stat.S_IRWXU)
            except OSError:
                continue


def remove_tree(path: Path) -> None:
    """Remove ``path`` without following symlinks; a missing path is fine."""
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        return
    if not stat.S_ISDIR(st.st_mode):
        os.unlink(path)
        return
    try:
        shutil.rmtree(path)
    except OSError:
        _make_tree_writable(path)
        shutil.rmtree(path)
