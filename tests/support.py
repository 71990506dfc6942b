from __future__ import annotations

import io
import zipfile
from pathlib import Path

from skillcrate.config import Config
from skillcrate.skill_package import package_skill


def skill_md(name: str, *, description: str = "Demo skill for tests", version: str | None = None) -> str:
    lines = ["---", f"name: {name}", f"description: {description}"]
    if version is not None:
        lines.append(f'version: "{version}"')
    lines += ["---", "", f"# {name}", ""]
    return "\n".join(lines)


def write_skill(parent: Path, name: str, *, files: dict[str, str] | None = None, **frontmatter: str) -> Path:
    root = parent / name
    root.mkdir(parents=True, exist_ok=True)
    (root / "SKILL.md").write_text(skill_md(name, **frontmatter), encoding="utf-8")
    for rel, content in (files or {}).items():
        p = root / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(content, encoding="utf-8")
    return root


def build_package(skill_dir: Path, out_dir: Path) -> Path:
    pkg = package_skill(skill_dir, output_dir=out_dir, force=True)
    assert pkg.package_path is not None
    return pkg.package_path


def zip_bytes(entries: dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
    return buf.getvalue()


def make_config(base: Path, **overrides) -> Config:
    settings = {"backup_dir": str(base / "backups"), "audit_log": str(base / "audit.log")}
    settings.update(overrides)
    return Config(**settings)
