"""EnvGuard — Local secrets manager.

Per-environment configuration with secret values encrypted at rest,
scheduled credential rotation and a tamper-evident audit trail.
"""

from .version import __version__
from .auth import Actor, Role, SYSTEM
from .config import EnvGuardConfig, initialize, load_config
from .manager import EnvGuard
from .exceptions import (
    EnvGuardError,
    NotFoundError,
    AuthenticationError,
    DecryptionError,
    UniquenessViolation,
    ValidationError,
    PermissionDenied,
)

__all__ = [
    "__version__",
    "EnvGuard",
    "EnvGuardConfig",
    "initialize",
    "load_config",
    "Actor",
    "Role",
    "SYSTEM",
    "EnvGuardError",
    "NotFoundError",
    "AuthenticationError",
    "DecryptionError",
    "UniquenessViolation",
    "ValidationError",
    "PermissionDenied",
]
