from ._version import __version__
from .config import Config, load_config
from .errors import (
    CriticalRollbackError,
    FileSystemError,
    InvalidPackageError,
    LockHeldError,
    OperationTimeoutError,
    PackageMismatchError,
    PackageValidationError,
    PartialRemovalError,
    ResourceLimitError,
    SecurityError,
    SkillcrateError,
    SkillNotFoundError,
    ValidationError,
)
from .installer import install_skill
from .skill_package import package_skill
from .uninstaller import uninstall_skill
from .updater import update_skill

__all__ = [
    "Config",
    "CriticalRollbackError",
    "FileSystemError",
    "InvalidPackageError",
    "LockHeldError",
    "OperationTimeoutError",
    "PackageMismatchError",
    "PackageValidationError",
    "PartialRemovalError",
    "ResourceLimitError",
    "SecurityError",
    "SkillNotFoundError",
    "SkillcrateError",
    "ValidationError",
    "__version__",
    "install_skill",
    "load_config",
    "package_skill",
    "uninstall_skill",
    "update_skill",
]
