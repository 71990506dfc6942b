from __future__ import annotations

import os
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from .config import Config
from .errors import ResourceLimitError


@dataclass(frozen=True)
class FileInfo:
    relative_path: str
    absolute_path: Path
    size: int
    is_dir: bool
    is_symlink: bool
    link_count: int


def enumerate_skill_files(directory: Path) -> Iterator[FileInfo]:
    """Walk ``directory`` depth-first without following symlinks.

    Each call starts a fresh walk. Directory handles are released when the
    generator is closed, so breaking out early does not leak them.
    """
    base = Path(directory)
    stack = [base]
    while stack:
        current = stack.pop()
        with os.scandir(current) as it:
            for entry in it:
                abs_path = Path(entry.path)
                try:
                    st = entry.stat(follow_symlinks=False)
                except FileNotFoundError:
                    continue
                is_link = stat.S_ISLNK(st.st_mode)
                is_dir = stat.S_ISDIR(st.st_mode)
                yield FileInfo(
                    relative_path=abs_path.relative_to(base).as_posix(),
                    absolute_path=abs_path,
                    size=0 if is_dir else st.st_size,
                    is_dir=is_dir,
                    is_symlink=is_link,
                    link_count=st.st_nlink,
                )
                if is_dir and not is_link:
                    stack.append(abs_path)


@dataclass(frozen=True)
class SkillSummary:
    file_count: int
    directory_count: int
    symlink_count: int
    total_size: int


def skill_summary(directory: Path) -> SkillSummary:
    files = dirs = links = size = 0
    for info in enumerate_skill_files(directory):
        if info.is_symlink:
            links += 1
        elif info.is_dir:
            dirs += 1
        else:
            files += 1
            size += info.size
    return SkillSummary(file_count=files, directory_count=dirs, symlink_count=links, total_size=size)


def check_resource_limits(file_count: int, total_size: int, config: Config) -> list[str]:
    problems: list[str] = []
    if file_count > config.max_file_count:
        problems.append(f"file count {file_count} exceeds the limit of {config.max_file_count}")
    if total_size > config.max_skill_bytes:
        problems.append(f"total size {format_bytes(total_size)} exceeds the limit of {format_bytes(config.max_skill_bytes)}")
    return problems


def enforce_resource_limits(label: str, file_count: int, total_size: int, config: Config, *, force: bool) -> list[str]:
    """Raise ``ResourceLimitError`` unless ``force``; returns warnings otherwise."""
    problems = check_resource_limits(file_count, total_size, config)
    if problems and not force:
        raise ResourceLimitError(f"{label}: {'; '.join(problems)}. Use --force to proceed.")
    return [f"{label}: {p}" for p in problems]


def format_bytes(n: int) -> str:
    size = float(n)
    for unit in ("B", "KB", "MB", "GB"):
        if abs(size) < 1024 or unit == "GB":
            return f"{int(size)} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{n} B"  # pragma: no cover
