from __future__ import annotations

import re
from dataclasses import dataclass

from .archive import SkillArchive
from .descriptor import DESCRIPTOR_FILENAME, SkillDescriptor, descriptor_from_text
from .errors import DescriptorError, InvalidPackageError, SecurityFinding

_DRIVE_RE = re.compile(r"^[A-Za-z]:")


@dataclass(frozen=True)
class PackageStructure:
    root_directory: str
    descriptor_path: str
    file_count: int


def validate_structure(archive: SkillArchive) -> PackageStructure:
    if not archive.entries:
        raise InvalidPackageError("Package is empty")

    root = archive.root_directory()
    if root is None:
        raise InvalidPackageError(
            "Package must contain exactly one root directory holding every entry"
        )

    descriptor_path = f"{root}/{DESCRIPTOR_FILENAME}"
    entry = archive.get(descriptor_path)
    if entry is None or entry.is_dir:
        raise InvalidPackageError(f"Package is missing required file {descriptor_path}")

    return PackageStructure(
        root_directory=root,
        descriptor_path=descriptor_path,
        file_count=archive.file_count(),
    )


def validate_name_match(archive: SkillArchive) -> SkillDescriptor:
    structure = validate_structure(archive)
    root = structure.root_directory
    content = archive.read_text(structure.descriptor_path) or ""
    try:
        descriptor = descriptor_from_text(content)
    except DescriptorError as e:
        raise InvalidPackageError(f"Invalid SKILL.md in package: {e}") from e

    if not descriptor.name:
        raise InvalidPackageError('SKILL.md frontmatter is missing the "name" field')
    if descriptor.name != root:
        raise InvalidPackageError(
            f'Skill name mismatch: directory is "{root}" but SKILL.md declares name as "{descriptor.name}"'
        )
    return descriptor


def scan_entry_security(archive: SkillArchive, root: str) -> list[SecurityFinding]:
    findings: list[SecurityFinding] = []
    prefix = root + "/"
    for e in archive.entries:
        name = e.path
        if not name:
            continue
        if "\x00" in name:
            findings.append(SecurityFinding("path-traversal", name, f"Entry name contains a null byte: {name!r}"))
            continue
        if name.startswith("/") or _DRIVE_RE.match(name):
            findings.append(SecurityFinding("path-traversal", name, f"Entry has an absolute path: {name!r}"))
            continue
        if "\\" in name:
            findings.append(SecurityFinding("path-traversal", name, f"Entry uses backslash separators: {name!r}"))
            continue
        if ".." in name.split("/"):
            findings.append(SecurityFinding("path-traversal", name, f"Entry contains '..': {name!r}"))
            continue
        if name != prefix and not name.startswith(prefix):
            findings.append(
                SecurityFinding("containment-violation", name, f"Entry is outside the {root!r} directory: {name!r}")
            )
    return findings


def inspect_package(archive: SkillArchive) -> tuple[PackageStructure, SkillDescriptor]:
    """Structure, identity and entry checks shared by install and update."""
    structure = validate_structure(archive)
    descriptor = validate_name_match(archive)
    findings = scan_entry_security(archive, structure.root_directory)
    if findings:
        details = "; ".join(f.detail for f in findings[:5])
        more = f" (and {len(findings) - 5} more)" if len(findings) > 5 else ""
        raise InvalidPackageError(f"Path traversal detected: {details}{more}")
    return structure, descriptor
