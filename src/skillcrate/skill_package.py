from __future__ import annotations

import fnmatch
import hashlib
import io
import logging
from dataclasses import dataclass
from pathlib import Path

from .archive import write_archive
from .descriptor import DESCRIPTOR_FILENAME
from .errors import SkillcrateError
from .validation import PACKAGE_EXTENSION, ContentValidator, validate_skill_directory

logger = logging.getLogger(__name__)

LARGE_PACKAGE_BYTES = 5 * 1024 * 1024
VERY_LARGE_PACKAGE_BYTES = 50 * 1024 * 1024

# Directory/file names to skip anywhere in the tree.
DEFAULT_EXCLUDE_NAMES = {
    ".git",
    ".hg",
    ".svn",
    ".DS_Store",
    "__pycache__",
    ".pytest_cache",
    ".mypy_cache",
    ".ruff_cache",
    ".venv",
    "venv",
    "node_modules",
    "dist",
    "build",
    ".idea",
    ".vscode",
}
DEFAULT_EXCLUDE_PATTERNS = ("*.log", "*.pyc")


@dataclass(frozen=True)
class SkillPackage:
    root: Path
    zip_bytes: bytes
    sha256: str
    size_bytes: int
    file_count: int
    warnings: list[str]
    package_path: Path | None = None
    requires_overwrite: bool = False


class SkillPackageError(SkillcrateError):
    pass


def _should_exclude(path: Path, root: Path) -> bool:
    try:
        rel = path.relative_to(root)
    except ValueError:
        return True

    if any(p in DEFAULT_EXCLUDE_NAMES for p in rel.parts):
        return True
    return any(fnmatch.fnmatchcase(path.name, pat) for pat in DEFAULT_EXCLUDE_PATTERNS)


def _archive_root_name(root: Path, top_level_dir: str | None) -> str:
    archive_root = (top_level_dir if top_level_dir is not None else root.name).strip()
    if not archive_root:
        raise SkillPackageError("Top-level archive folder name must not be empty.")
    if archive_root in {".", ".."} or "/" in archive_root or "\\" in archive_root:
        raise SkillPackageError(
            "Top-level archive folder name must be a single folder name (no path separators)."
        )
    return archive_root


def collect_files(root: Path) -> tuple[list[Path], int]:
    """Return the packable paths under ``root`` (sorted) and how many symlinks were skipped."""
    paths: list[Path] = []
    skipped_links = 0
    for p in root.rglob("*"):
        if _should_exclude(p, root):
            continue
        if p.is_symlink():
            skipped_links += 1
            continue
        if p.is_file() or p.is_dir():
            paths.append(p)
    paths.sort(key=lambda p: p.relative_to(root).as_posix().lower())
    return paths, skipped_links


def package_output_path(output_dir: Path, archive_root: str) -> Path:
    return output_dir.expanduser().resolve() / f"{archive_root}{PACKAGE_EXTENSION}"


def package_skill(
    root: Path,
    *,
    output_dir: Path | None = None,
    top_level_dir: str | None = None,
    force: bool = False,
    skip_validation: bool = False,
    validator: ContentValidator = validate_skill_directory,
) -> SkillPackage:
    """Zip ``root`` under a single top-level folder.

    With ``output_dir`` the archive is also written to ``{name}.skill``
    there. An existing file is left alone unless ``force`` is set; the result
    then has ``requires_overwrite`` and nothing is written.
    """
    root = root.expanduser().resolve()
    if not root.exists():
        raise SkillPackageError(f"Path does not exist: {root}")
    if not root.is_dir():
        raise SkillPackageError(f"Not a directory: {root}")

    descriptor = root / DESCRIPTOR_FILENAME
    if not descriptor.is_file() or descriptor.is_symlink():
        raise SkillPackageError(f"{root} has no {DESCRIPTOR_FILENAME}; not a skill directory")

    archive_root = _archive_root_name(root, top_level_dir)

    if not skip_validation:
        report = validator(root)
        if not report.valid:
            raise SkillPackageError("Skill validation failed: " + "; ".join(report.errors))

    out_path = package_output_path(output_dir, archive_root) if output_dir is not None else None
    if out_path is not None and out_path.exists() and not force:
        return SkillPackage(
            root=root,
            zip_bytes=b"",
            sha256="",
            size_bytes=0,
            file_count=0,
            warnings=[f"{out_path} already exists"],
            package_path=out_path,
            requires_overwrite=True,
        )

    paths, skipped_links = collect_files(root)
    if out_path is not None:
        paths = [p for p in paths if p != out_path]
    members = [(p, f"{archive_root}/{p.relative_to(root).as_posix()}") for p in paths]

    buf = io.BytesIO()
    file_count = write_archive(buf, members)

    zip_bytes = buf.getvalue()
    size_bytes = len(zip_bytes)
    sha256 = hashlib.sha256(zip_bytes).hexdigest()

    warnings: list[str] = []
    if skipped_links:
        warnings.append(f"Skipped {skipped_links} symlink(s); packages never contain links.")
    nested = [p.relative_to(root).as_posix() for p in paths if p.suffix == PACKAGE_EXTENSION and p.is_file()]
    if nested:
        warnings.append(f"Package contains other {PACKAGE_EXTENSION} files: {', '.join(nested[:5])}")
    if size_bytes > VERY_LARGE_PACKAGE_BYTES:
        warnings.append(f"Packaged zip is {size_bytes} bytes; packages over 50 MiB are slow to install.")
    elif size_bytes > LARGE_PACKAGE_BYTES:
        warnings.append(f"Packaged zip is {size_bytes} bytes; consider trimming large assets.")

    if out_path is not None:
        out_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = out_path.with_suffix(out_path.suffix + ".tmp")
        tmp.write_bytes(zip_bytes)
        tmp.replace(out_path)
        logger.info("Wrote %s (%d files, %d bytes)", out_path, file_count, size_bytes)

    return SkillPackage(
        root=root,
        zip_bytes=zip_bytes,
        sha256=sha256,
        size_bytes=size_bytes,
        file_count=file_count,
        warnings=warnings,
        package_path=out_path,
    )
