from __future__ import annotations

import json
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

from .config import Config

logger = logging.getLogger(__name__)

AUDIT_LOGGER_NAME = "skillcrate.audit.trail"
DIR_MODE = 0o700
FILE_MODE = 0o600
MAX_ERROR_CHARS = 200

UninstallStatus = Literal["SUCCESS", "FAILED", "PARTIAL", "CANCELLED", "SECURITY_BLOCKED", "NOT_FOUND", "TIMEOUT"]
UpdateStatus = Literal["SUCCESS", "FAILED", "ROLLED_BACK", "ROLLBACK_FAILED"]

_WHITESPACE = re.compile(r"\s")


class _AuditFormatter(logging.Formatter):
    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        dt = datetime.fromtimestamp(record.created, timezone.utc)
        return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _token(value: str) -> str:
    return _WHITESPACE.sub("_", value) or "-"


def _open_private(path: Path) -> None:
    path.parent.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, FILE_MODE)
    os.close(fd)


def write_audit_line(path: Path, line: str) -> bool:
    """Append one timestamped line to the audit log.

    Failures are logged and reported through the return value; they never
    interrupt the operation being audited.
    """
    try:
        _open_private(path)
        handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    except OSError as e:
        logger.warning("Failed to write audit log %s: %s", path, e)
        return False

    handler.setFormatter(_AuditFormatter("[%(asctime)s] %(message)s"))
    trail = logging.getLogger(AUDIT_LOGGER_NAME)
    trail.setLevel(logging.INFO)
    trail.propagate = False
    trail.addHandler(handler)
    try:
        trail.info("%s", line)
    finally:
        trail.removeHandler(handler)
        handler.close()
    return True


def format_uninstall_entry(
    skill_name: str,
    scope: str,
    status: UninstallStatus,
    *,
    files_removed: int | None = None,
    bytes_freed: int | None = None,
    path: str | os.PathLike[str] | None = None,
    error: str | None = None,
) -> str:
    parts = ["UNINSTALL", _token(skill_name), _token(scope), status]
    if files_removed is not None:
        parts.append(f"removed={files_removed}")
    if bytes_freed is not None:
        parts.append(f"size={bytes_freed}")
    if path is not None:
        parts.append("path=" + os.fspath(path).replace(" ", "\\ "))
    if error:
        parts.append("error=" + _token(error)[:MAX_ERROR_CHARS])
    return " ".join(parts)


def format_update_entry(
    skill_name: str,
    scope: str,
    status: UpdateStatus,
    *,
    package_path: str,
    backup_path: str | os.PathLike[str] | None = None,
    previous_files: int | None = None,
    current_files: int | None = None,
    error: str | None = None,
    no_backup: bool = False,
) -> str:
    details: dict[str, Any] = {"packagePath": package_path}
    if backup_path is not None:
        details["backupPath"] = os.fspath(backup_path)
    if previous_files is not None:
        details["previousFiles"] = previous_files
    if current_files is not None:
        details["currentFiles"] = current_files
    if error:
        details["error"] = error
    if no_backup:
        details["noBackup"] = True
    return " ".join(["UPDATE", _token(skill_name), _token(scope), status, json.dumps(details)])


def record_uninstall(config: Config, skill_name: str, scope: str, status: UninstallStatus, **details: Any) -> bool:
    return write_audit_line(config.audit_log_path, format_uninstall_entry(skill_name, scope, status, **details))


def record_update(config: Config, skill_name: str, scope: str, status: UpdateStatus, **details: Any) -> bool:
    return write_audit_line(config.audit_log_path, format_update_entry(skill_name, scope, status, **details))


def read_audit_log(config: Config, limit: int | None = None) -> list[str]:
    try:
        lines = [ln for ln in config.audit_log_path.read_text(encoding="utf-8").splitlines() if ln]
    except (FileNotFoundError, NotADirectoryError):
        return []
    if limit is not None and len(lines) > limit:
        return lines[-limit:]
    return lines


def scope_label(token: str | os.PathLike[str] | None, config: Config) -> str:
    value = os.fspath(token) if token is not None else config.default_scope
    return value if value in ("project", "personal") else "custom"
