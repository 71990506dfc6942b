from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from .errors import FileSystemError
from .paths import is_contained

ScopeKind = Literal["project", "personal", "custom"]

SKILLS_SUBDIR = Path(".claude") / "skills"


@dataclass(frozen=True)
class Scope:
    kind: ScopeKind
    path: Path


def resolve_scope(token: str | os.PathLike[str] | None, *, cwd: Path | None = None, home: Path | None = None) -> Scope:
    cwd = Path(cwd) if cwd is not None else Path.cwd()
    home = Path(home) if home is not None else Path.home()

    value = "project" if token is None else os.fspath(token)
    if value == "project":
        return Scope(kind="project", path=Path(os.path.abspath(cwd / SKILLS_SUBDIR)))
    if value == "personal":
        return Scope(kind="personal", path=Path(os.path.abspath(home / SKILLS_SUBDIR)))

    if not value.strip():
        raise FileSystemError("Scope path cannot be empty")
    if value == "~":
        p = home
    elif value.startswith("~/") or value.startswith("~" + os.sep):
        p = home / value[2:]
    else:
        p = Path(value)
    if not p.is_absolute():
        p = cwd / p
    return Scope(kind="custom", path=Path(os.path.abspath(p)))


def ensure_directory_exists(path: Path) -> Path:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except FileExistsError as e:
        raise FileSystemError(f"Scope path exists but is not a directory: {path}", path=path) from e
    except OSError as e:
        raise FileSystemError(f"Cannot create scope directory {path}: {e}", path=path) from e
    if not path.is_dir():
        raise FileSystemError(f"Scope path exists but is not a directory: {path}", path=path)
    if not os.access(path, os.W_OK | os.X_OK):
        raise FileSystemError(f"Scope directory is not writable: {path}", path=path)
    return path


def is_path_within(candidate: str | os.PathLike[str], base: str | os.PathLike[str]) -> bool:
    """True when ``candidate`` is ``base`` or below it, compared lexically."""
    return is_contained(base, candidate)
