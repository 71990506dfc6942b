from __future__ import annotations

import json
import logging
import os
import secrets
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Union

import psutil

from .config import Config
from .errors import LockHeldError

logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".update.lock"


@dataclass(frozen=True)
class LockRecord:
    pid: int
    timestamp: str
    operation_type: str
    package_path: str

    def to_json(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "timestamp": self.timestamp,
            "operationType": self.operation_type,
            "packagePath": self.package_path,
        }

    @classmethod
    def from_json(cls, raw: Any) -> "LockRecord | None":
        if not isinstance(raw, dict):
            return None
        pid = raw.get("pid")
        ts = raw.get("timestamp")
        if not isinstance(pid, int) or isinstance(pid, bool) or not isinstance(ts, str):
            return None
        return cls(
            pid=pid,
            timestamp=ts,
            operation_type=str(raw.get("operationType", "update")),
            package_path=str(raw.get("packagePath", "")),
        )

    def started_at(self) -> datetime | None:
        try:
            dt = datetime.fromisoformat(self.timestamp.replace("Z", "+00:00"))
        except ValueError:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt


@dataclass(frozen=True)
class LockAcquired:
    lock_path: Path
    record: LockRecord
    type: str = "acquired"


@dataclass(frozen=True)
class LockDenied:
    lock_path: Path
    record: LockRecord | None
    message: str
    type: str = "denied"


LockResult = Union[LockAcquired, LockDenied]


def lock_path_for(target: Path) -> Path:
    return target.parent / f"{target.name}{LOCK_SUFFIX}"


def read_lock(lock_path: Path) -> LockRecord | None:
    try:
        raw = json.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    return LockRecord.from_json(raw)


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        return psutil.pid_exists(pid)
    except (psutil.Error, OSError):
        return True


def _is_active(lock_path: Path, record: LockRecord | None, config: Config) -> bool:
    now = time.time()
    if record is None:
        # Half-written or corrupt record: fall back to the file's age.
        try:
            age = now - lock_path.stat().st_mtime
        except FileNotFoundError:
            return False
        return age < config.lock_stale_after_s

    if not _pid_alive(record.pid):
        return False
    started = record.started_at()
    if started is None:
        return False
    return now - started.timestamp() < config.lock_stale_after_s


def _describe(record: LockRecord | None) -> str:
    if record is None:
        return "Skill is currently being updated by another process"
    return (
        f"Skill is currently being updated by another process "
        f"(pid {record.pid}, started {record.timestamp})"
    )


def _reclaim_stale(lock_path: Path, seen: LockRecord | None, config: Config) -> bool:
    """Move a stale lock out of the way; False if another process now owns it.

    The file is renamed aside before anything is deleted, so a lock written
    by a competing reclaimer after ``seen`` was read is put back, not removed.
    """
    aside = lock_path.with_name(f"{lock_path.name}.stale-{os.getpid()}-{secrets.token_hex(4)}")
    try:
        os.rename(lock_path, aside)
    except FileNotFoundError:
        return True
    except OSError as e:
        logger.warning("Cannot move stale lock %s aside: %s", lock_path, e)
        return False

    moved = read_lock(aside)
    if moved == seen and not _is_active(aside, moved, config):
        release_lock(aside)
        return True

    logger.debug("Lock %s changed hands while reclaiming; restoring it", lock_path)
    try:
        os.link(aside, lock_path)
    except FileExistsError:
        pass
    except OSError:
        if not os.path.lexists(lock_path):
            os.rename(aside, lock_path)
    release_lock(aside)
    return False


def acquire_update_lock(target: Path, package_path: str | Path, config: Config) -> LockResult:
    lock_path = lock_path_for(target)
    record = LockRecord(
        pid=os.getpid(),
        timestamp=datetime.now(timezone.utc).isoformat(),
        operation_type="update",
        package_path=str(package_path),
    )
    payload = (json.dumps(record.to_json(), indent=2) + "\n").encode("utf-8")

    for _ in range(2):
        try:
            fd = os.open(lock_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            existing = read_lock(lock_path)
            if _is_active(lock_path, existing, config):
                return LockDenied(lock_path=lock_path, record=existing, message=_describe(existing))
            logger.warning("Removing stale update lock %s", lock_path)
            if not _reclaim_stale(lock_path, existing, config):
                current = read_lock(lock_path)
                return LockDenied(lock_path=lock_path, record=current, message=_describe(current))
            continue
        except OSError as e:
            return LockDenied(lock_path=lock_path, record=None, message=f"Cannot create lock file {lock_path}: {e}")

        try:
            os.write(fd, payload)
        finally:
            os.close(fd)
        logger.debug("Acquired update lock %s", lock_path)
        return LockAcquired(lock_path=lock_path, record=record)

    return LockDenied(lock_path=lock_path, record=read_lock(lock_path), message=_describe(read_lock(lock_path)))


def release_lock(lock_path: Path) -> None:
    try:
        lock_path.unlink()
    except FileNotFoundError:
        pass


def has_active_update_lock(target: Path, config: Config) -> bool:
    lock_path = lock_path_for(target)
    if not lock_path.exists():
        return False
    return _is_active(lock_path, read_lock(lock_path), config)


@contextmanager
def update_lock(target: Path, package_path: str | Path, config: Config) -> Iterator[LockAcquired]:
    result = acquire_update_lock(target, package_path, config)
    if isinstance(result, LockDenied):
        pid = result.record.pid if result.record is not None else None
        raise LockHeldError(result.message, lock_path=result.lock_path, pid=pid)
    try:
        yield result
    finally:
        release_lock(result.lock_path)
