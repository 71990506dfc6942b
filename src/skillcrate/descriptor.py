from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml

from .errors import DescriptorError

DESCRIPTOR_FILENAME = "SKILL.md"


@dataclass(frozen=True)
class SkillDescriptor:
    name: str | None
    description: str | None = None
    version: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


def parse_frontmatter(content: str) -> dict[str, Any]:
    """Parse the YAML block delimited by ``---`` lines at the top of SKILL.md."""
    text = content.lstrip("\ufeff").lstrip()
    if not text.startswith("---"):
        raise DescriptorError("SKILL.md must start with YAML frontmatter (---)")

    end_pos = text.find("\n---", 3)
    if end_pos == -1:
        raise DescriptorError("SKILL.md frontmatter must end with ---")

    yaml_content = text[3:end_pos].strip()
    if not yaml_content:
        raise DescriptorError("SKILL.md frontmatter is empty")

    try:
        parsed = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        raise DescriptorError(f"Invalid YAML in SKILL.md frontmatter: {e}") from e

    if not isinstance(parsed, dict):
        raise DescriptorError("SKILL.md frontmatter must be a mapping")
    return parsed


def _as_text(v: Any) -> str | None:
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def descriptor_from_text(content: str) -> SkillDescriptor:
    fm = parse_frontmatter(content)
    version = fm.get("version")
    metadata = fm.get("metadata")
    if version is None and isinstance(metadata, dict):
        version = metadata.get("version")
    return SkillDescriptor(
        name=_as_text(fm.get("name")),
        description=_as_text(fm.get("description")),
        version=_as_text(version),
        raw=fm,
    )


def read_descriptor(skill_dir: Path) -> SkillDescriptor:
    path = skill_dir / DESCRIPTOR_FILENAME
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise DescriptorError(f"SKILL.md not found in {skill_dir}") from e
    except (OSError, UnicodeDecodeError) as e:
        raise DescriptorError(f"Failed to read {path}: {e}") from e
    return descriptor_from_text(content)


def descriptor_mtime(skill_dir: Path) -> datetime | None:
    try:
        st = os.stat(skill_dir / DESCRIPTOR_FILENAME)
    except OSError:
        return None
    return datetime.fromtimestamp(st.st_mtime, tz=timezone.utc)
