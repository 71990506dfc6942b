from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from .descriptor import DESCRIPTOR_FILENAME, read_descriptor
from .errors import DescriptorError, ValidationError

NAME_PATTERN = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")
MAX_NAME_LENGTH = 64
MAX_DESCRIPTION_LENGTH = 1024
PACKAGE_EXTENSION = ".skill"


@dataclass(frozen=True)
class ValidationReport:
    valid: bool
    errors: list[str] = field(default_factory=list)


ContentValidator = Callable[[Path], ValidationReport]


def skill_name_problem(name: str) -> str | None:
    if not name or not name.strip():
        return "Skill name cannot be empty"
    if any(ord(c) < 0x20 or ord(c) == 0x7F for c in name):
        return f"Invalid skill name {name!r}: contains control characters"
    if not name.isascii():
        return f"Invalid skill name {name!r}: must be ASCII"
    if "/" in name or "\\" in name or name in {".", ".."} or ".." in name:
        return f'Invalid skill name "{name}": contains path traversal characters'
    if os.path.isabs(name):
        return f'Invalid skill name "{name}": appears to be an absolute path'
    if len(name) > MAX_NAME_LENGTH:
        return f"Skill name must be {MAX_NAME_LENGTH} characters or less (got {len(name)})"
    if not NAME_PATTERN.match(name):
        return (
            "Skill name must contain only lowercase letters, numbers, and hyphens, "
            f'without leading, trailing or doubled hyphens (got "{name}")'
        )
    return None


def validate_skill_name(name: str) -> str:
    problem = skill_name_problem(name)
    if problem is not None:
        raise ValidationError(problem)
    return name


def validate_package_path(path: str | os.PathLike[str]) -> Path:
    raw = os.fspath(path)
    if not raw.strip():
        raise ValidationError("Package path cannot be empty")
    p = Path(raw).expanduser()
    if p.suffix.lower() != PACKAGE_EXTENSION:
        raise ValidationError(f'Invalid package extension "{p.suffix}". Expected "{PACKAGE_EXTENSION}"')
    if not p.exists():
        raise ValidationError(f"Package file not found: {p}")
    if not p.is_file():
        raise ValidationError(f"Path is not a file: {p}")
    return p.resolve()


def validate_skill_directory(skill_dir: Path) -> ValidationReport:
    """Default content check for an extracted or installed skill."""
    errors: list[str] = []
    if not (skill_dir / DESCRIPTOR_FILENAME).is_file():
        return ValidationReport(valid=False, errors=[f"{DESCRIPTOR_FILENAME} not found in {skill_dir}"])

    try:
        descriptor = read_descriptor(skill_dir)
    except DescriptorError as e:
        return ValidationReport(valid=False, errors=[str(e)])

    if not descriptor.name:
        errors.append('SKILL.md frontmatter is missing the "name" field')
    else:
        problem = skill_name_problem(descriptor.name)
        if problem is not None:
            errors.append(problem)
        if descriptor.name != skill_dir.name:
            errors.append(
                f'Skill name mismatch: directory is "{skill_dir.name}" '
                f'but SKILL.md declares name as "{descriptor.name}"'
            )

    description = descriptor.description
    if not description:
        errors.append('SKILL.md frontmatter is missing the "description" field')
    elif len(description) > MAX_DESCRIPTION_LENGTH:
        errors.append(f"Description must be {MAX_DESCRIPTION_LENGTH} characters or less (got {len(description)})")
    elif "<" in description or ">" in description:
        errors.append("Description cannot contain angle brackets (< or >)")

    return ValidationReport(valid=not errors, errors=errors)
