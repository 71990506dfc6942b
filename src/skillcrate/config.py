from __future__ import annotations

import json
import os
import stat
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from platformdirs import user_config_path, user_data_path

DEFAULT_LOCK_STALE_AFTER_S = 5 * 60.0
DEFAULT_MAX_SKILL_BYTES = 1024 * 1024 * 1024  # 1 GiB
DEFAULT_MAX_FILE_COUNT = 10_000


def default_backup_dir() -> str:
    return str(user_data_path("skillcrate") / "backups")


def default_audit_log() -> str:
    return str(user_data_path("skillcrate") / "audit.log")


@dataclass(frozen=True)
class Config:
    backup_dir: str = field(default_factory=default_backup_dir)
    audit_log: str = field(default_factory=default_audit_log)
    default_scope: str = "project"
    lock_stale_after_s: float = DEFAULT_LOCK_STALE_AFTER_S
    max_skill_bytes: int = DEFAULT_MAX_SKILL_BYTES
    max_file_count: int = DEFAULT_MAX_FILE_COUNT
    update_timeout_s: float = 300.0
    backup_timeout_s: float = 120.0
    extraction_timeout_s: float = 120.0
    validation_timeout_s: float = 5.0
    uninstall_timeout_s: float = 300.0

    @property
    def backup_path(self) -> Path:
        return Path(self.backup_dir).expanduser()

    @property
    def audit_log_path(self) -> Path:
        return Path(self.audit_log).expanduser()


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("SKILLCRATE_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path("skillcrate") / "config.json"


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return Config()

    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    return Config(**filtered)  # type: ignore[arg-type]


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)

    # The file names the private backup location.
    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass

    return path
