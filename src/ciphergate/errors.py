"""
Exception hierarchy for ciphergate.

All ciphergate exceptions inherit from CipherGateError, allowing callers to
catch every engine failure with a single except clause while still being
able to tell "policy missing" apart from "not authorized" apart from
"malformed input".

Exception Categories:
    - Policy errors (1xxx): missing policy, oversized allow-list, bad context key
    - Authorization errors (2xxx): caller is not admin/author, bad principal
    - Input errors (3xxx): invalid proof bundle, incompatible ciphertext
    - Record errors (4xxx): registration or content does not exist
    - Storage errors (5xxx): SQLite failures

Every error aborts the whole invocation; nothing is retried inside the engine.
"""

from dataclasses import dataclass, field
from typing import Any


# =============================================================================
# Error Codes
# =============================================================================

# Policy errors: 1xxx
ERROR_POLICY_NOT_FOUND = 1001
ERROR_ALLOW_LIST_TOO_LARGE = 1002
ERROR_INVALID_CONTEXT_KEY = 1003
ERROR_DEVELOPER_MODE_DISABLED = 1004
ERROR_INVALID_POLICY = 1005

# Authorization errors: 2xxx
ERROR_NOT_AUTHORIZED = 2001
ERROR_INVALID_PRINCIPAL = 2002

# Input errors: 3xxx
ERROR_INVALID_PROOF = 3001
ERROR_CIPHERTEXT = 3002

# Record errors: 4xxx
ERROR_REGISTRATION_NOT_FOUND = 4001
ERROR_CONTENT_NOT_FOUND = 4002

# Storage errors: 5xxx
ERROR_STORAGE_CONNECTION = 5001
ERROR_STORAGE_WRITE = 5002
ERROR_STORAGE_READ = 5003


# =============================================================================
# Base Exception
# =============================================================================


@dataclass
class CipherGateError(Exception):
    """
    Base exception for all ciphergate errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code for programmatic handling
        suggestion: Optional hint for how to resolve the error
        context: Optional dict with additional debugging info
    """

    message: str = ""
    code: int = 0
    suggestion: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        """Format error for display."""
        parts = [f"[E{self.code}] {self.message}"]
        if self.suggestion:
            parts.append(f"\nSuggestion: {self.suggestion}")
        return "".join(parts)

    def __repr__(self) -> str:
        """Format error for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code}, "
            f"context={self.context!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "suggestion": self.suggestion,
            "context": self.context,
        }


# =============================================================================
# Policy Errors
# =============================================================================


@dataclass
class PolicyError(CipherGateError):
    """
    Base class for policy configuration errors.

    Attributes:
        context_key: The policy context the error refers to
    """

    context_key: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.context["context_key"] = self.context_key


@dataclass
class PolicyNotFoundError(PolicyError):
    """Raised when evaluation is attempted against a context with no policy."""

    kind: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"No {self.kind or 'policy'} published for context {self.context_key!r}"
        if self.code == 0:
            self.code = ERROR_POLICY_NOT_FOUND
        if not self.suggestion:
            self.suggestion = "Ask the admin to publish a policy for this context first"
        super().__post_init__()
        self.context["kind"] = self.kind


@dataclass
class AllowListTooLargeError(PolicyError):
    """Raised when a policy update exceeds the configured allow-list cap."""

    actual_size: int = 0
    max_size: int = 0

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Allow-list too large: {self.actual_size} > {self.max_size} entries"
        if self.code == 0:
            self.code = ERROR_ALLOW_LIST_TOO_LARGE
        if not self.suggestion:
            self.suggestion = "Trim the allow-list or raise allow_list_cap in the config"
        super().__post_init__()
        self.context.update({
            "actual_size": self.actual_size,
            "max_size": self.max_size,
        })


@dataclass
class InvalidContextKeyError(PolicyError):
    """Raised when a zero or empty context key is supplied."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid context key: {self.context_key!r}"
        if self.code == 0:
            self.code = ERROR_INVALID_CONTEXT_KEY
        if not self.suggestion:
            self.suggestion = "Use a non-empty key that is not all zeros"
        super().__post_init__()


@dataclass
class InvalidPolicyError(PolicyError):
    """Raised when policy parameters fall outside their encrypted types."""

    reason: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid policy for context {self.context_key!r}: {self.reason}"
        if self.code == 0:
            self.code = ERROR_INVALID_POLICY
        if not self.suggestion:
            self.suggestion = "Keep min_age within 0..255 and country codes within 0..65535"
        super().__post_init__()
        self.context["reason"] = self.reason


@dataclass
class DeveloperModeDisabledError(PolicyError):
    """Raised when a plaintext-parameter operation is used outside developer mode."""

    operation: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"{self.operation} requires developer mode"
        if self.code == 0:
            self.code = ERROR_DEVELOPER_MODE_DISABLED
        if not self.suggestion:
            self.suggestion = "Set developer_mode: true in the config, or submit encrypted values"
        super().__post_init__()
        self.context["operation"] = self.operation


# =============================================================================
# Authorization Errors
# =============================================================================


@dataclass
class NotAuthorizedError(CipherGateError):
    """
    Raised when an admin-only or author-only operation is invoked by an
    ineligible principal, or when a decrypt request lacks a grant.

    Attributes:
        principal: The caller that was rejected
        operation: The operation that was attempted
        required: Which role would have been accepted
    """

    principal: str = ""
    operation: str = ""
    required: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"{self.principal or '<anonymous>'} may not {self.operation}"
            if self.required:
                self.message += f" (requires {self.required})"
        if self.code == 0:
            self.code = ERROR_NOT_AUTHORIZED
        self.context.update({
            "principal": self.principal,
            "operation": self.operation,
            "required": self.required,
        })


@dataclass
class InvalidPrincipalError(CipherGateError):
    """Raised when a zero or empty principal is supplied."""

    principal: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid principal: {self.principal!r}"
        if self.code == 0:
            self.code = ERROR_INVALID_PRINCIPAL
        self.context["principal"] = self.principal


# =============================================================================
# Input Errors
# =============================================================================


@dataclass
class InvalidProofError(CipherGateError):
    """
    Raised when a proof bundle is empty or structurally invalid.

    The proof covers every handle in the bundle jointly, so any failure
    rejects the whole bundle.
    """

    reason: str = ""
    handle_count: int = 0

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid proof bundle: {self.reason}"
        if self.code == 0:
            self.code = ERROR_INVALID_PROOF
        if not self.suggestion:
            self.suggestion = "Re-encrypt all inputs together and resubmit with the new proof"
        self.context.update({
            "reason": self.reason,
            "handle_count": self.handle_count,
        })


@dataclass
class CiphertextError(CipherGateError):
    """
    Raised by the algebra adapter for malformed or incompatible ciphertext
    references. Never raised because of the (opaque) value itself.
    """

    handle: str = ""
    operation: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Ciphertext error in {self.operation}: {self.handle}"
        if self.code == 0:
            self.code = ERROR_CIPHERTEXT
        self.context.update({
            "handle": self.handle,
            "operation": self.operation,
        })


# =============================================================================
# Record Errors
# =============================================================================


@dataclass
class RegistrationNotFoundError(CipherGateError):
    """Raised when no registration exists for (kind, context, principal)."""

    kind: str = ""
    context_key: str = ""
    principal: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = (
                f"No {self.kind} result for {self.principal} in context {self.context_key!r}"
            )
        if self.code == 0:
            self.code = ERROR_REGISTRATION_NOT_FOUND
        self.context.update({
            "kind": self.kind,
            "context_key": self.context_key,
            "principal": self.principal,
        })


@dataclass
class ContentNotFoundError(CipherGateError):
    """Raised when content does not exist or has been cleared."""

    content_id: int = 0
    cleared: bool = False

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            state = "was cleared" if self.cleared else "does not exist"
            self.message = f"Content {self.content_id} {state}"
        if self.code == 0:
            self.code = ERROR_CONTENT_NOT_FOUND
        self.context.update({
            "content_id": self.content_id,
            "cleared": self.cleared,
        })


# =============================================================================
# Storage Errors
# =============================================================================


@dataclass
class StorageError(CipherGateError):
    """
    Base class for storage/database errors.

    Attributes:
        operation: The operation that failed (e.g., "insert", "query")
    """

    operation: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.context["operation"] = self.operation


@dataclass
class StorageConnectionError(StorageError):
    """Raised when database connection fails."""

    db_path: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Failed to connect to database: {self.db_path}"
        if self.code == 0:
            self.code = ERROR_STORAGE_CONNECTION
        if not self.suggestion:
            self.suggestion = "Check that the database path is valid and writable"
        super().__post_init__()
        self.context["db_path"] = self.db_path


@dataclass
class StorageWriteError(StorageError):
    """Raised when a write operation fails."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Database write failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_WRITE
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class StorageReadError(StorageError):
    """Raised when a read operation fails."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Database read failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_READ
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error
