from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Sequence

FindingKind = Literal[
    "path-traversal",
    "symlink-escape",
    "hard-link-detected",
    "containment-violation",
    "case-mismatch",
    "unexpected-content",
]


@dataclass(frozen=True)
class SecurityFinding:
    kind: FindingKind
    path: str
    detail: str
    fatal: bool = True

    def __str__(self) -> str:
        return f"{self.kind}: {self.detail}"


class SkillcrateError(RuntimeError):
    pass


class InvalidPackageError(SkillcrateError):
    pass


class DescriptorError(SkillcrateError):
    pass


class FileSystemError(SkillcrateError):
    def __init__(self, message: str, *, path: str | Path | None = None) -> None:
        super().__init__(message)
        self.path = str(path) if path is not None else None


class ValidationError(SkillcrateError):
    pass


class ResourceLimitError(ValidationError):
    pass


class PackageValidationError(ValidationError):
    """The content validator rejected an extracted skill."""

    def __init__(self, errors: Sequence[str]) -> None:
        self.errors = tuple(errors)
        joined = "; ".join(self.errors) if self.errors else "unknown validation failure"
        super().__init__(f"Package validation failed: {joined}")


class SkillNotFoundError(SkillcrateError):
    def __init__(self, skill_name: str, path: str | Path) -> None:
        super().__init__(f'Skill "{skill_name}" not found at {path}')
        self.skill_name = skill_name
        self.path = str(path)


class SecurityError(SkillcrateError):
    def __init__(
        self,
        message: str,
        *,
        findings: Sequence[SecurityFinding] = (),
        advisory: bool = False,
    ) -> None:
        super().__init__(message)
        self.findings = tuple(findings)
        self.advisory = advisory

    @classmethod
    def from_finding(cls, finding: SecurityFinding) -> "SecurityError":
        return cls(finding.detail, findings=[finding], advisory=not finding.fatal)

    @property
    def reason(self) -> str | None:
        return self.findings[0].kind if self.findings else None


class PackageMismatchError(SkillcrateError):
    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(
            f'Package skill name "{actual}" does not match installed skill "{expected}"'
        )
        self.expected = expected
        self.actual = actual


class LockHeldError(SkillcrateError):
    def __init__(self, message: str, *, lock_path: str | Path, pid: int | None = None) -> None:
        super().__init__(message)
        self.lock_path = str(lock_path)
        self.pid = pid


class PartialRemovalError(SkillcrateError):
    def __init__(self, skill_name: str, *, files_removed: int, files_remaining: int, last_error: str) -> None:
        super().__init__(
            f'Partial removal of "{skill_name}": {files_removed} removed, '
            f"{files_remaining} remaining ({last_error})"
        )
        self.skill_name = skill_name
        self.files_removed = files_removed
        self.files_remaining = files_remaining
        self.last_error = last_error


class OperationTimeoutError(SkillcrateError, TimeoutError):
    def __init__(self, phase: str, timeout_s: float) -> None:
        super().__init__(f"{phase} phase exceeded its {timeout_s:g}s limit")
        self.phase = phase
        self.timeout_s = timeout_s


class CriticalRollbackError(SkillcrateError):
    def __init__(self, error: str, rollback_error: str, *, backup_path: str | Path | None) -> None:
        msg = f"Critical error: {error}. Rollback also failed: {rollback_error}."
        if backup_path is not None:
            msg += f" Backup may still exist at {backup_path}"
        super().__init__(msg)
        self.backup_path = str(backup_path) if backup_path is not None else None
