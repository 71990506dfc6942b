from __future__ import annotations

import os
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Union

from .errors import SecurityFinding
from .files import enumerate_skill_files
from .paths import is_contained

HARD_LINK_DISPLAY_LIMIT = 10


@dataclass(frozen=True)
class SymlinkSafe:
    path: Path
    is_symlink: bool
    type: str = "safe"


@dataclass(frozen=True)
class SymlinkEscape:
    path: Path
    target: str
    scope_root: Path
    type: str = "escape"

    def finding(self) -> SecurityFinding:
        return SecurityFinding(
            kind="symlink-escape",
            path=str(self.path),
            detail=f"{self.path} is a symlink resolving to {self.target}, outside {self.scope_root}",
        )


@dataclass(frozen=True)
class SymlinkCheckError:
    path: Path
    message: str
    type: str = "error"


SymlinkSafety = Union[SymlinkSafe, SymlinkEscape, SymlinkCheckError]


def check_symlink_safety(path: Path, scope_root: Path) -> SymlinkSafety:
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        return SymlinkSafe(path=path, is_symlink=False)
    except OSError as e:
        return SymlinkCheckError(path=path, message=str(e))

    if not stat.S_ISLNK(st.st_mode):
        return SymlinkSafe(path=path, is_symlink=False)

    try:
        real = os.path.realpath(path, strict=True)
    except OSError as e:
        return SymlinkCheckError(path=path, message=f"Cannot resolve symlink {path}: {e}")
    if not is_contained(os.path.realpath(scope_root), real):
        return SymlinkEscape(path=path, target=real, scope_root=scope_root)
    return SymlinkSafe(path=path, is_symlink=True)


@dataclass(frozen=True)
class SymlinkInfo:
    relative_path: str
    absolute_path: Path
    target: str | None
    is_directory_symlink: bool
    escapes_scope: bool
    warning: str | None = None


def enumerate_symlinks(directory: Path) -> Iterator[SymlinkInfo]:
    real_base = os.path.realpath(directory)
    for info in enumerate_skill_files(directory):
        if not info.is_symlink:
            continue
        try:
            link_text = os.readlink(info.absolute_path)
        except OSError:
            link_text = None
        real = os.path.realpath(info.absolute_path)
        # Directory symlinks get unlinked, never descended into.
        is_dir_link = os.path.isdir(info.absolute_path)
        escapes = not is_contained(real_base, real)
        warning = None
        if escapes:
            warning = f"Symlink {info.relative_path} points outside the skill directory ({real})"
        elif link_text is not None and not os.path.exists(info.absolute_path):
            warning = f"Symlink {info.relative_path} is broken ({link_text})"
        yield SymlinkInfo(
            relative_path=info.relative_path,
            absolute_path=info.absolute_path,
            target=link_text,
            is_directory_symlink=is_dir_link,
            escapes_scope=escapes,
            warning=warning,
        )


@dataclass(frozen=True)
class SymlinkSummary:
    total: int
    directory_links: int
    escaping: int
    warning: str | None


def symlink_summary(directory: Path) -> SymlinkSummary:
    total = dirs = escaping = 0
    for link in enumerate_symlinks(directory):
        total += 1
        if link.is_directory_symlink:
            dirs += 1
        if link.escapes_scope:
            escaping += 1
    warning = None
    if escaping:
        warning = (
            f"{escaping} of {total} symlink(s) point outside the skill directory; "
            "only the links will be removed, not their targets"
        )
    return SymlinkSummary(total=total, directory_links=dirs, escaping=escaping, warning=warning)


@dataclass(frozen=True)
class HardLinkInfo:
    relative_path: str
    absolute_path: Path
    link_count: int


@dataclass(frozen=True)
class HardLinkWarning:
    count: int
    files: tuple[HardLinkInfo, ...]

    @property
    def message(self) -> str:
        shown = ", ".join(f.relative_path for f in self.files)
        more = f" (and {self.count - len(self.files)} more)" if self.count > len(self.files) else ""
        return (
            f"{self.count} file(s) have multiple hard links; removing them will not free "
            f"the shared data: {shown}{more}."
        )

    def finding(self) -> SecurityFinding:
        return SecurityFinding(kind="hard-link-detected", path=self.files[0].relative_path, detail=self.message, fatal=False)


def iter_hard_links(directory: Path) -> Iterator[HardLinkInfo]:
    for info in enumerate_skill_files(directory):
        if info.is_dir or info.is_symlink:
            continue
        if info.link_count > 1:
            yield HardLinkInfo(
                relative_path=info.relative_path,
                absolute_path=info.absolute_path,
                link_count=info.link_count,
            )


def detect_hard_links(directory: Path) -> HardLinkWarning | None:
    shown: list[HardLinkInfo] = []
    count = 0
    for link in iter_hard_links(directory):
        count += 1
        if len(shown) < HARD_LINK_DISPLAY_LIMIT:
            shown.append(link)
    if not count:
        return None
    return HardLinkWarning(count=count, files=tuple(shown))
