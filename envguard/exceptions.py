"""EnvGuard exceptions.

Every error raised by the core carries the entity id and the action that
was attempted (when known), so callers can decide whether to retry
(e.g. re-prompt for the master password) or abort.
"""
from typing import Optional


class EnvGuardError(Exception):
    """Base class for all EnvGuard errors."""

    def __init__(
        self,
        message: str,
        *,
        entity_id: Optional[str] = None,
        action: Optional[str] = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.entity_id = entity_id
        self.action = action

    def __str__(self) -> str:
        context = []
        if self.action:
            context.append(f"action={self.action}")
        if self.entity_id:
            context.append(f"entity={self.entity_id}")
        if context:
            return f"{self.message} ({', '.join(context)})"
        return self.message


class NotFoundError(EnvGuardError):
    """Environment, variable or audit entry does not exist."""


class AuthenticationError(EnvGuardError):
    """Wrong master password, or no key established when one is required."""


class DecryptionError(EnvGuardError):
    """Malformed or corrupted ciphertext, or a mismatched key."""


class UniquenessViolation(EnvGuardError):
    """Duplicate environment name or duplicate key within an environment."""


class ValidationError(EnvGuardError):
    """Missing required fields or out-of-range values."""


class PermissionDenied(EnvGuardError):
    """The acting user's role does not allow the requested mutation."""
