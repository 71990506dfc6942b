from __future__ import annotations

import ntpath
import os
import posixpath
import re
import stat
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from .errors import SecurityFinding

# Compared after case folding with forward slashes.
DANGEROUS_PREFIXES = (
    "/etc",
    "/usr",
    "/bin",
    "/sbin",
    "/var",
    "/boot",
    "/root",
    "/lib",
    "/opt",
    "/sys",
    "/proc",
    "/dev",
    "c:/windows",
    "c:/program files",
    "c:/program files (x86)",
    "c:/programdata",
    "c:/users/public",
)

_DRIVE_RE = re.compile(r"^[A-Za-z]:[\\/]")


def normalize(path: str | os.PathLike[str]) -> str:
    return os.path.normcase(os.path.abspath(os.fspath(path)))


def is_contained(root: str | os.PathLike[str], candidate: str | os.PathLike[str]) -> bool:
    """Return True if ``candidate`` is ``root`` itself or lies below it.

    Both paths are made absolute and normalized (``..`` collapsed) but symlinks
    are not resolved, so callers that care about link targets must resolve
    first.
    """
    r = normalize(root)
    c = normalize(candidate)
    if c == r:
        return True
    prefix = r if r.endswith(os.sep) else r + os.sep
    return c.startswith(prefix)


@dataclass(frozen=True)
class Containment:
    valid: bool
    reason: str | None = None


def verify_containment(base: str | os.PathLike[str], target: str | os.PathLike[str]) -> Containment:
    if is_contained(base, target):
        return Containment(valid=True)
    return Containment(valid=False, reason=f"{target} is outside {base}")


def _fold(path: str | os.PathLike[str]) -> str:
    raw = os.fspath(path)
    if _DRIVE_RE.match(raw):
        s = ntpath.normpath(raw).replace("\\", "/")
    else:
        s = os.path.abspath(raw).replace("\\", "/")
        s = posixpath.normpath(s)
    return s.casefold()


def is_dangerous_path(path: str | os.PathLike[str]) -> bool:
    folded = _fold(path)
    for prefix in DANGEROUS_PREFIXES:
        if folded == prefix or folded.startswith(prefix + "/"):
            return True
    return False


def trusted_roots(*, cwd: Path | None = None, home: Path | None = None) -> tuple[Path, ...]:
    """Directories the user owns even when they sit under a deny-listed prefix."""
    return (
        Path(home) if home is not None else Path.home(),
        Path(tempfile.gettempdir()),
        Path(os.path.realpath(tempfile.gettempdir())),
        Path(cwd) if cwd is not None else Path.cwd(),
    )


def is_protected_location(path: str | os.PathLike[str], *, trusted_roots: tuple[Path, ...] = ()) -> bool:
    """Dangerous-path check that lets the user's own directories through.

    Home directories and the temp directory may live under a deny-listed
    prefix (``/root``, ``/var/folders``); anything below one of
    ``trusted_roots`` is allowed.
    """
    if not is_dangerous_path(path):
        return False
    return not any(is_contained(root, path) for root in trusted_roots)


def verify_case_sensitivity(actual_path: str | os.PathLike[str], expected_name: str) -> SecurityFinding | None:
    p = Path(actual_path)
    try:
        entries = os.listdir(p.parent)
    except OSError:
        return None
    if expected_name in entries:
        return None
    folded = expected_name.casefold()
    for entry in entries:
        if entry.casefold() == folded:
            return SecurityFinding(
                kind="case-mismatch",
                path=str(p.parent / entry),
                detail=(
                    f'Skill name case mismatch: requested "{expected_name}" '
                    f'but found "{entry}" on disk'
                ),
            )
    return None


PathType = Literal["file", "directory", "symlink", "other"]


@dataclass(frozen=True)
class VerifyResult:
    ok: bool
    path_type: PathType | None = None
    size: int = 0
    reason: Literal["not-exists", "containment-violation", "error"] | None = None
    message: str | None = None


def _path_type(mode: int) -> PathType:
    if stat.S_ISLNK(mode):
        return "symlink"
    if stat.S_ISDIR(mode):
        return "directory"
    if stat.S_ISREG(mode):
        return "file"
    return "other"


def verify_before_deletion(base: str | os.PathLike[str], path: str | os.PathLike[str]) -> VerifyResult:
    if not is_contained(base, path):
        return VerifyResult(ok=False, reason="containment-violation", message=f"{path} is outside {base}")
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        return VerifyResult(ok=False, reason="not-exists", message=f"{path} no longer exists")
    except OSError as e:
        return VerifyResult(ok=False, reason="error", message=str(e))
    return VerifyResult(ok=True, path_type=_path_type(st.st_mode), size=st.st_size)
