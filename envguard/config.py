"""
EnvGuard Configuration — Installation settings and first-time setup.

Settings live in ``config.json`` under the EnvGuard home directory:
    ENVGUARD_HOME = <directory>   (default: ~/.envguard)

The file carries the per-installation salt and the one-way digest of the
master password, never the password or the derived key.

Security Note:
    Never log passwords, digests or key material. Only log paths and
    project names.
"""
import os
import logging
from pathlib import Path
from typing import Any, Optional
from datetime import datetime

import orjson
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .exceptions import NotFoundError, UniquenessViolation, ValidationError
from .models import utcnow
from .vault.crypto import DEFAULT_KDF_ITERATIONS, generate_salt, hash_password
from .version import __version__

logger = logging.getLogger("envguard.config")

CONFIG_FILE = "config.json"
DATABASE_FILE = "envguard.db"
MIN_PASSWORD_LENGTH = 8
DEFAULT_ENVIRONMENT = "development"


def get_home(home: Optional[Path | str] = None) -> Path:
    """Resolve the EnvGuard home directory.

    Precedence: explicit argument, then ``ENVGUARD_HOME``, then ``~/.envguard``.
    """
    if home is not None:
        return Path(home).expanduser()
    raw = os.environ.get("ENVGUARD_HOME")
    if raw:
        return Path(raw).expanduser()
    return Path.home() / ".envguard"


def config_path(home: Optional[Path | str] = None) -> Path:
    return get_home(home) / CONFIG_FILE


def is_initialized(home: Optional[Path | str] = None) -> bool:
    return config_path(home).is_file()


class RotationDefaults(BaseModel):
    enabled: bool = False
    period_days: int = Field(default=90, ge=1)


class EnvGuardConfig(BaseModel):
    """Validated installation settings."""

    version: str = Field(default=__version__)
    project_name: str = Field(default="envguard")
    salt: str
    password_digest: str
    kdf_iterations: int = Field(default=DEFAULT_KDF_ITERATIONS, ge=1000)
    data_dir: Path
    default_env: str = Field(default=DEFAULT_ENVIRONMENT)
    rotation_defaults: RotationDefaults = Field(default_factory=RotationDefaults)
    audit_retention_days: int = Field(default=365, ge=1)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("salt", "password_digest")
    @classmethod
    def validate_hex(cls, v: str) -> str:
        """Salt and digest are stored hex encoded."""
        try:
            bytes.fromhex(v)
        except ValueError as exc:
            raise ValueError("must be a hex encoded string") from exc
        if not v:
            raise ValueError("must not be empty")
        return v

    @field_validator("project_name", "default_env")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    @property
    def database_path(self) -> Path:
        return self.data_dir / DATABASE_FILE

    @classmethod
    def from_env(cls) -> "EnvGuardConfig":
        """Load the configuration of the installation ``ENVGUARD_HOME`` points at."""
        return load_config()


def load_config(home: Optional[Path | str] = None) -> EnvGuardConfig:
    """Read and validate ``config.json``.

    Raises:
        NotFoundError: EnvGuard has not been initialized in ``home``.
        ValidationError: The file is not valid JSON or fails validation.
    """
    path = config_path(home)
    if not path.is_file():
        raise NotFoundError(
            f"EnvGuard is not initialized at {path.parent}", action="load_config",
        )
    try:
        data = orjson.loads(path.read_bytes())
        return EnvGuardConfig.model_validate(data)
    except (orjson.JSONDecodeError, PydanticValidationError) as exc:
        raise ValidationError(
            f"Invalid configuration file {path}: {exc}", action="load_config",
        ) from exc


def save_config(config: EnvGuardConfig, home: Optional[Path | str] = None) -> Path:
    """Write ``config.json`` (indented) and return its path."""
    path = config_path(home)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(
        orjson.dumps(config.model_dump(mode="json"), option=orjson.OPT_INDENT_2)
    )
    logger.debug("Configuration saved to %s", path)
    return path


def update_config(
    config: EnvGuardConfig,
    home: Optional[Path | str] = None,
    **changes: Any,
) -> EnvGuardConfig:
    """Apply changes, re-validate, bump ``updated_at`` and persist.

    Raises:
        ValidationError: A change is rejected by validation.
    """
    data = config.model_dump()
    data.update(changes)
    data["updated_at"] = utcnow()
    try:
        updated = EnvGuardConfig.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(
            f"Invalid configuration change: {exc}", action="update_config",
        ) from exc
    save_config(updated, home)
    return updated


def initialize(
    password: str,
    *,
    project_name: str = "envguard",
    home: Optional[Path | str] = None,
    iterations: int = DEFAULT_KDF_ITERATIONS,
    overwrite: bool = False,
) -> EnvGuardConfig:
    """Set up a new installation protected by ``password``.

    Generates the salt, stores the password digest and creates the data
    directory. The database itself is created on first open.

    Raises:
        ValidationError: Password shorter than 8 characters or bad settings.
        UniquenessViolation: Already initialized and ``overwrite`` is False.
    """
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Master password must be at least {MIN_PASSWORD_LENGTH} characters",
            action="init",
        )
    if iterations < 1000:
        raise ValidationError(
            "kdf_iterations must be at least 1000", action="init",
        )
    root = get_home(home)
    if is_initialized(root) and not overwrite:
        raise UniquenessViolation(
            f"EnvGuard is already initialized at {root}", action="init",
        )
    salt = generate_salt()
    try:
        config = EnvGuardConfig(
            project_name=project_name,
            salt=salt,
            password_digest=hash_password(password, salt, iterations),
            kdf_iterations=iterations,
            data_dir=root / "data",
        )
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid settings: {exc}", action="init") from exc
    config.data_dir.mkdir(parents=True, exist_ok=True)
    save_config(config, root)
    logger.info("Initialized EnvGuard project %s at %s", config.project_name, root)
    return config
