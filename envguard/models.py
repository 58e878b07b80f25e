"""EnvGuard data models.

Records mirror the persisted tables; audit details are a tagged union of
structured payloads that is serialized only at the storage boundary.
"""
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from datetime import datetime, timezone

from pydantic import BaseModel, Field

# Fixed-width UTC text, so lexical order equals chronological order.
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_timestamp(value: datetime) -> str:
    """Render a datetime as stored timestamp text (naive values are UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def split_tags(value: Optional[str]) -> list[str]:
    if not value:
        return []
    return [t.strip() for t in value.split(",") if t.strip()]


def join_tags(tags: Optional[list[str]]) -> str:
    return ",".join(t.strip() for t in tags or [] if t.strip())


# ---------------------------------------------------------------------------
# Environments and variables
# ---------------------------------------------------------------------------

class Environment(BaseModel):
    id: str
    name: str
    description: str = ""
    created_at: datetime
    updated_at: datetime


class Variable(BaseModel):
    """A stored variable; ``value`` is ciphertext when ``encrypted``."""

    id: str
    environment_id: str
    key: str
    value: str = ""
    is_secret: bool = False
    encrypted: bool = False
    tags: list[str] = Field(default_factory=list)
    description: str = ""
    rotation_enabled: bool = False
    rotation_period_days: Optional[int] = None
    last_rotated: Optional[datetime] = None
    next_rotation: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class VariableView(BaseModel):
    """Display projection of a variable (secrets masked unless revealed)."""

    key: str
    value: str
    is_secret: bool
    revealed: bool = False
    tags: list[str] = Field(default_factory=list)
    description: str = ""
    updated_at: datetime


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------

class AuditAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    ROTATE = "rotate"
    EXPORT = "export"
    IMPORT = "import"
    CLONE = "clone"


class VariableChange(BaseModel):
    kind: Literal["variable"] = "variable"
    key: str
    environment: str
    is_secret: bool = False


class RotationDetails(BaseModel):
    kind: Literal["rotation"] = "rotation"
    key: str
    environment: str
    reason: str


class EnvironmentDetails(BaseModel):
    kind: Literal["environment"] = "environment"
    name: str
    description: str = ""
    variables: int = 0


class CloneDetails(BaseModel):
    kind: Literal["clone"] = "clone"
    source: str
    target: str
    cloned_variables: int = 0


class TransferDetails(BaseModel):
    kind: Literal["transfer"] = "transfer"
    name: str
    variables: int = 0
    skipped: int = 0


AuditDetails = Annotated[
    Union[
        VariableChange,
        RotationDetails,
        EnvironmentDetails,
        CloneDetails,
        TransferDetails,
    ],
    Field(discriminator="kind"),
]


class AuditEntry(BaseModel):
    """A mutation to be appended to the audit trail."""

    action: AuditAction
    entity_type: str
    entity_id: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    details: Optional[AuditDetails] = None
    extra: dict[str, str] = Field(default_factory=dict)


class AuditLogEntry(BaseModel):
    """A persisted audit row.

    ``action`` keeps the stored text so that a tampered row can still be
    loaded and verified; ``malformed`` flags rows whose action or details
    could not have been written by this package.
    """

    id: str
    seq: int
    timestamp: str
    action: str
    entity_type: str
    entity_id: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    ip_address: Optional[str] = None
    details: Optional[AuditDetails] = None
    extra: dict[str, str] = Field(default_factory=dict)
    fingerprint: str
    chain_fingerprint: Optional[str] = None
    malformed: bool = False


class AuditReceipt(BaseModel):
    id: str
    timestamp: str
    fingerprint: str


class AuditVerification(BaseModel):
    valid: bool
    recomputed_fingerprint: str
    stored_fingerprint: str
    entry: AuditLogEntry


class ChainVerification(BaseModel):
    valid: bool
    checked: int
    broken_at: Optional[str] = None


class AuditFilter(BaseModel):
    action: Optional[AuditAction] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    limit: int = Field(default=100, ge=1)
    offset: int = Field(default=0, ge=0)


class AuditStats(BaseModel):
    total: int
    by_action: dict[str, int]
    recent_activity: dict[str, int]


# ---------------------------------------------------------------------------
# Rotation
# ---------------------------------------------------------------------------

class RotationHistoryEntry(BaseModel):
    id: str
    variable_id: str
    rotated_at: datetime
    old_value_fingerprint: str
    new_value_fingerprint: str
    rotated_by: str
    reason: str = ""
    variable_key: Optional[str] = None
    environment_name: Optional[str] = None


class RotationFailure(BaseModel):
    key: str
    variable_id: str
    error: str


class RotationReport(BaseModel):
    rotated: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    failed: list[RotationFailure] = Field(default_factory=list)
    cancelled: bool = False

    @property
    def succeeded(self) -> int:
        return len(self.rotated)

    @property
    def failures(self) -> int:
        return len(self.failed)


class RotationStatus(BaseModel):
    key: str
    last_rotated: Optional[datetime] = None
    next_rotation: Optional[datetime] = None
    state: Literal["due", "ok", "pending"]


# ---------------------------------------------------------------------------
# Export / import
# ---------------------------------------------------------------------------

REDACTED = "[SECRET]"


class SnapshotVariable(BaseModel):
    key: str
    value: str
    is_secret: bool = False
    tags: list[str] = Field(default_factory=list)
    description: str = ""


class SnapshotEnvironment(BaseModel):
    name: str
    description: str = ""


class EnvironmentSnapshot(BaseModel):
    exported_at: datetime
    environment: SnapshotEnvironment
    variables: list[SnapshotVariable] = Field(default_factory=list)
