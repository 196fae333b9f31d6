"""
Schema definitions for ciphergate.

This module defines the Pydantic models used throughout ciphergate:
- CipherType / Handle: how opaque ciphertext references are described
- InputBundle: ciphertext references plus the single proof covering them
- BonusPolicy / EligibilityPolicy: confidential decision policies
- Registration / Content: per-principal results and author-owned masks
- Event: notifications consumed by off-chain observers
- EngineConfig: runtime configuration loaded from YAML

Design Decisions:
    - Models are immutable where possible (frozen=True)
    - Handles are 32-byte hex strings, never raw values
    - Plaintext policy parameters are only the structural ones (ages,
      country codes, flags); thresholds and amounts are always handles
"""

import re
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Annotated, Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# 32-byte handle rendered as 0x-prefixed lowercase hex
HANDLE_PATTERN = r"^0x[0-9a-f]{64}$"

Handle = Annotated[str, Field(pattern=HANDLE_PATTERN)]

_ZERO_KEY_RE = re.compile(r"^(0x)?0*$", re.IGNORECASE)


def is_zero_key(value: str | None) -> bool:
    """Whether a context key or principal is empty or all zeros."""
    if value is None:
        return True
    return bool(_ZERO_KEY_RE.match(value.strip()))


def is_handle(value: Any) -> bool:
    """Whether a value looks like a materialized ciphertext handle."""
    return isinstance(value, str) and re.match(HANDLE_PATTERN, value) is not None


# =============================================================================
# Enums
# =============================================================================


class CipherType(str, Enum):
    """Encrypted value types understood by the algebra."""

    EBOOL = "ebool"
    EUINT8 = "euint8"
    EUINT16 = "euint16"
    EUINT32 = "euint32"
    EUINT64 = "euint64"

    @property
    def bits(self) -> int:
        """Bit width of the plaintext domain."""
        if self is CipherType.EBOOL:
            return 1
        return int(self.value.removeprefix("euint"))

    @property
    def is_integer(self) -> bool:
        return self is not CipherType.EBOOL

    @property
    def max_value(self) -> int:
        return (1 << self.bits) - 1

    @classmethod
    def for_bits(cls, bits: int) -> "CipherType":
        """Integer type of exactly the given width."""
        return cls(f"euint{bits}")


class PolicyKind(str, Enum):
    """Which predicate a policy or registration belongs to."""

    BONUS = "bonus"
    ELIGIBILITY = "eligibility"
    MATCH = "match"


class ContentState(str, Enum):
    """Lifecycle of a content record. CLEARED is terminal."""

    ACTIVE = "active"
    CLEARED = "cleared"


class EventType(str, Enum):
    """Notification types emitted by the boundary layer."""

    POLICY_UPDATED = "policy_updated"
    RESULT_COMPUTED = "result_computed"
    CONTENT_CREATED = "content_created"
    CONTENT_UPDATED = "content_updated"
    CONTENT_CLEARED = "content_cleared"
    ADMIN_TRANSFERRED = "admin_transferred"
    ACCESS_GRANTED = "access_granted"
    PUBLICLY_DISCLOSED = "publicly_disclosed"


# =============================================================================
# Input Models
# =============================================================================


class InputBundle(BaseModel):
    """
    One or more external ciphertext references plus one proof token.

    The proof validates every handle jointly. Emptiness is checked by the
    boundary layer so callers get InvalidProofError, not a validation error.

    Attributes:
        handles: Ciphertext handles produced by the client
        proof: Opaque proof token (hex) covering all handles
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    handles: list[str] = Field(
        default_factory=list,
        description="Client-encrypted ciphertext handles",
    )
    proof: str = Field(
        default="",
        description="Opaque proof covering all handles",
    )


# =============================================================================
# Policy Models
# =============================================================================


class BonusPolicy(BaseModel):
    """
    Threshold-gated bonus selection.

    A submitter receives bonus_if_met when every attribute is at least its
    threshold, otherwise bonus_otherwise. Every parameter is a handle.

    Attributes:
        context_key: Policy identifier
        thresholds: Encrypted minimums, one per submitted attribute
        bonus_if_met: Encrypted payout when all thresholds pass
        bonus_otherwise: Encrypted payout otherwise
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    context_key: str = Field(..., min_length=1)
    thresholds: list[Handle] = Field(..., min_length=1)
    bonus_if_met: Handle
    bonus_otherwise: Handle
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def handles(self) -> list[str]:
        """Every ciphertext this policy references."""
        return [*self.thresholds, self.bonus_if_met, self.bonus_otherwise]


class EligibilityPolicy(BaseModel):
    """
    Multi-factor eligibility with plaintext structural parameters.

    The allow-list cap is configurable, so its length is checked by the
    engine rather than here.

    Attributes:
        context_key: Policy identifier
        min_age: Minimum age (inclusive)
        require_invite: Whether invite == 1 is required
        allowed_countries: Numeric country codes accepted
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    context_key: str = Field(..., min_length=1)
    min_age: int = Field(default=0, ge=0, le=255)
    require_invite: bool = False
    allowed_countries: list[int] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("allowed_countries")
    @classmethod
    def validate_country_codes(cls, v: list[int]) -> list[int]:
        """Country codes must fit in 16 bits."""
        for code in v:
            if not 0 <= code <= CipherType.EUINT16.max_value:
                msg = f"Country code out of range: {code}"
                raise ValueError(msg)
        return v

    @property
    def handles(self) -> list[str]:
        return []


# =============================================================================
# Record Models
# =============================================================================


class Registration(BaseModel):
    """
    A principal's latest result for one policy context.

    Attributes:
        kind: Which predicate produced the result
        context_key: Policy context (content id for matches)
        principal: The submitting principal
        result_handle: Encrypted verdict or derived value
        exists: Existence flag
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: PolicyKind
    context_key: str
    principal: str
    result_handle: Handle
    exists: bool = True
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class Content(BaseModel):
    """
    Author-owned content carrying a 32-bit tag mask.

    Exactly one of plain_mask (developer mode, is_plain=True) and enc_mask
    is authoritative.

    Attributes:
        content_id: Sequential identifier
        author: Principal that created the content
        is_plain: Whether plain_mask is the authoritative representation
        plain_mask: Plaintext mask (developer mode only)
        enc_mask: Encrypted mask handle
        state: active or cleared (terminal)
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    content_id: int = Field(..., ge=1)
    author: str
    is_plain: bool = False
    plain_mask: int | None = Field(default=None, ge=0)
    enc_mask: Handle | None = None
    state: ContentState = ContentState.ACTIVE
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @model_validator(mode="after")
    def check_single_representation(self) -> "Content":
        """is_plain selects exactly one mask representation."""
        if self.is_plain and (self.plain_mask is None or self.enc_mask is not None):
            raise ValueError("Plain content must carry plain_mask and no enc_mask")
        if not self.is_plain and (self.enc_mask is None or self.plain_mask is not None):
            raise ValueError("Encrypted content must carry enc_mask and no plain_mask")
        return self

    @property
    def active(self) -> bool:
        return self.state is ContentState.ACTIVE


class Event(BaseModel):
    """A notification persisted alongside the state change that caused it."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    event_id: int | None = None
    event_type: EventType
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


# =============================================================================
# Configuration
# =============================================================================


class EngineConfig(BaseModel):
    """
    Engine configuration.

    Attributes:
        db_path: SQLite file holding engine state (":memory:" for tests)
        developer_mode: Enables plaintext-parameter entry points
        allow_list_cap: Maximum eligibility allow-list length
        mask_bits: Width of content/interest masks
        engine_identity: Principal the engine grants itself for reuse
        native_bool_literals: Use the runtime's boolean injection if offered
        log_level: Logging level name
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    db_path: str = Field(default="ciphergate.db")
    developer_mode: bool = False
    allow_list_cap: int = Field(default=16, ge=1, le=256)
    mask_bits: int = 32
    engine_identity: str = Field(default="ciphergate.engine", min_length=1)
    native_bool_literals: bool = True
    log_level: str = "WARNING"

    @field_validator("mask_bits")
    @classmethod
    def validate_mask_bits(cls, v: int) -> int:
        """Masks use one of the integer cipher widths."""
        if v not in (8, 16, 32, 64):
            msg = f"mask_bits must be 8, 16, 32 or 64, got {v}"
            raise ValueError(msg)
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            msg = f"Unknown log level: {v}"
            raise ValueError(msg)
        return level

    @property
    def mask_type(self) -> CipherType:
        return CipherType.for_bits(self.mask_bits)


# =============================================================================
# YAML Loading Helpers
# =============================================================================


def load_config(path: Path | str) -> EngineConfig:
    """
    Load engine configuration from a YAML file.

    Args:
        path: Path to the YAML file

    Returns:
        Validated EngineConfig object

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValidationError: If the YAML doesn't match the schema
    """
    path = Path(path)
    with path.open() as f:
        data = yaml.safe_load(f)

    return EngineConfig.model_validate(data or {})


def load_config_from_string(content: str) -> EngineConfig:
    """Load engine configuration from a YAML string."""
    data = yaml.safe_load(content)
    return EngineConfig.model_validate(data or {})


def load_eligibility_policy(path: Path | str) -> EligibilityPolicy:
    """Load an eligibility policy from a YAML file."""
    path = Path(path)
    with path.open() as f:
        data = yaml.safe_load(f)

    return EligibilityPolicy.model_validate(data)
