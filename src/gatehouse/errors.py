"""
Exception hierarchy for Gatehouse.

All Gatehouse exceptions inherit from GatehouseError, allowing callers to catch
all Gatehouse-specific exceptions with a single except clause.

Exception Categories:
    - AuthenticationFailure: Bad, expired or revoked identity (never retried)
    - PolicyLoadError: Malformed policy source (reload rejected)
    - RuleEvaluationSkip: A condition errored (rule treated as non-match)
    - RateLimitExceeded: Usage ceiling reached in fail-closed mode
    - DelegationDepthExceeded / DelegationCeilingViolation: Bad delegation hop
    - StorageError / AuditRecordError: Audit persistence failures
    - ForwardError: Upstream relay failures

Every error carries a numeric code, a human-readable message and a context
dict so the pipeline can turn it into a structured denial.
"""

from dataclasses import dataclass, field
from typing import Any


# =============================================================================
# Error Codes
# =============================================================================

# Authentication errors: 1xxx
ERROR_AUTH_FAILED = 1001
ERROR_AUTH_TOKEN_EXPIRED = 1002
ERROR_AUTH_IDENTITY_REVOKED = 1003
ERROR_AUTH_PROVIDER_UNAVAILABLE = 1004

# Policy load errors: 2xxx
ERROR_POLICY_LOAD = 2001
ERROR_POLICY_INVALID_PATTERN = 2002
ERROR_POLICY_DUPLICATE_NAME = 2003

# Evaluation errors: 3xxx
ERROR_RULE_SKIPPED = 3001
ERROR_CONDITION_FAILED = 3002

# Usage errors: 4xxx
ERROR_RATE_LIMIT_EXCEEDED = 4001
ERROR_RATE_STORE_UNAVAILABLE = 4002

# Delegation errors: 5xxx
ERROR_DELEGATION_DEPTH = 5001
ERROR_DELEGATION_CEILING = 5002

# Storage errors: 6xxx
ERROR_STORAGE_CONNECTION = 6001
ERROR_STORAGE_WRITE = 6002
ERROR_STORAGE_READ = 6003
ERROR_AUDIT_RECORD = 6004

# Collaborator / configuration errors: 7xxx
ERROR_FORWARD_FAILED = 7001
ERROR_CONFIG_INVALID = 7002


# =============================================================================
# Base Exception
# =============================================================================


@dataclass
class GatehouseError(Exception):
    """
    Base exception for all Gatehouse errors.

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
# Authentication Errors
# =============================================================================


@dataclass
class AuthenticationFailure(GatehouseError):
    """
    Raised when the caller's identity cannot be established.

    Always terminal: the pipeline rejects the request and never retries.

    Attributes:
        reason: Why authentication failed
        identity_id: Subject of the token, when it could be read
    """

    reason: str = ""
    identity_id: str | None = None

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Authentication failed: {self.reason}"
        if self.code == 0:
            self.code = ERROR_AUTH_FAILED
        self.context.update({
            "reason": self.reason,
            "identity_id": self.identity_id,
        })


@dataclass
class TokenExpiredError(AuthenticationFailure):
    """Raised when a bearer token is past its expiry."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.reason:
            self.reason = "token expired"
        if self.code == 0:
            self.code = ERROR_AUTH_TOKEN_EXPIRED
        if not self.suggestion:
            self.suggestion = "Request a fresh token from the identity provider"
        super().__post_init__()


@dataclass
class IdentityRevokedError(AuthenticationFailure):
    """Raised when the identity behind a valid token has been revoked."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.reason:
            self.reason = "identity revoked"
        if self.code == 0:
            self.code = ERROR_AUTH_IDENTITY_REVOKED
        super().__post_init__()


@dataclass
class IdentityProviderUnavailable(GatehouseError):
    """Raised when the identity provider cannot be reached in time."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Identity provider unavailable: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_AUTH_PROVIDER_UNAVAILABLE
        self.context["underlying_error"] = self.underlying_error


# =============================================================================
# Policy Load Errors
# =============================================================================


@dataclass
class PolicyLoadError(GatehouseError):
    """
    Raised when a policy source cannot be loaded.

    A reload that raises this keeps the previously loaded policy set in
    service.

    Attributes:
        source: File or identifier the policy came from
        errors: Individual validation problems
    """

    source: str = ""
    errors: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            detail = "; ".join(self.errors) if self.errors else "invalid policy"
            where = f" ({self.source})" if self.source else ""
            self.message = f"Failed to load policy{where}: {detail}"
        if self.code == 0:
            self.code = ERROR_POLICY_LOAD
        self.context.update({
            "source": self.source,
            "errors": self.errors,
        })


# =============================================================================
# Evaluation Errors
# =============================================================================


@dataclass
class RuleEvaluationSkip(GatehouseError):
    """
    Raised when a rule cannot be evaluated.

    The decision engine catches this, logs it, and treats the rule as a
    non-match. It never aborts evaluation of the remaining rules.
    """

    policy_name: str = ""
    rule_index: int = -1
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = (
                f"Skipped rule {self.rule_index} of policy {self.policy_name}: "
                f"{self.underlying_error}"
            )
        if self.code == 0:
            self.code = ERROR_RULE_SKIPPED
        self.context.update({
            "policy_name": self.policy_name,
            "rule_index": self.rule_index,
            "underlying_error": self.underlying_error,
        })


@dataclass
class ConditionError(RuleEvaluationSkip):
    """Raised by the condition interpreter when a predicate cannot be applied."""

    field_path: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Condition on {self.field_path!r} failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_CONDITION_FAILED
        super().__post_init__()
        self.context["field_path"] = self.field_path


# =============================================================================
# Usage Errors
# =============================================================================


@dataclass
class RateLimitExceeded(GatehouseError):
    """Raised when an identity exceeds its usage ceiling in fail-closed mode."""

    identity_id: str = ""
    count: int = 0
    limit: int = 0
    reset_at: str | None = None

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Rate limit exceeded: {self.count} > {self.limit} requests"
        if self.code == 0:
            self.code = ERROR_RATE_LIMIT_EXCEEDED
        if not self.suggestion and self.reset_at:
            self.suggestion = f"Retry after {self.reset_at}"
        self.context.update({
            "identity_id": self.identity_id,
            "count": self.count,
            "limit": self.limit,
            "reset_at": self.reset_at,
        })


@dataclass
class RateStoreUnavailable(GatehouseError):
    """Raised when the rate-limit store cannot be read or incremented."""

    identity_id: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Rate store unavailable: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_RATE_STORE_UNAVAILABLE
        self.context.update({
            "identity_id": self.identity_id,
            "underlying_error": self.underlying_error,
        })


# =============================================================================
# Delegation Errors
# =============================================================================


@dataclass
class DelegationError(GatehouseError):
    """
    Base class for delegation errors.

    Attributes:
        chain_id: The chain being extended or validated
    """

    chain_id: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.context["chain_id"] = self.chain_id


@dataclass
class DelegationDepthExceeded(DelegationError):
    """Raised when a delegation hop would exceed the governing max depth."""

    depth: int = 0
    max_depth: int = 0

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Delegation depth exceeded: {self.depth} > {self.max_depth}"
        if self.code == 0:
            self.code = ERROR_DELEGATION_DEPTH
        super().__post_init__()
        self.context.update({
            "depth": self.depth,
            "max_depth": self.max_depth,
        })


@dataclass
class DelegationCeilingViolation(DelegationError):
    """Raised when a delegation hop grants more than its parent link holds."""

    pattern: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Delegated permission widens parent grant: {self.pattern}"
        if self.code == 0:
            self.code = ERROR_DELEGATION_CEILING
        if not self.suggestion:
            self.suggestion = "Grant only patterns covered by the delegating agent's permissions"
        super().__post_init__()
        self.context["pattern"] = self.pattern


# =============================================================================
# Storage Errors
# =============================================================================


@dataclass
class StorageError(GatehouseError):
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


@dataclass
class AuditRecordError(GatehouseError):
    """Raised when a decision could not be durably queued for audit."""

    trace_id: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Audit record failed for {self.trace_id}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_AUDIT_RECORD
        self.context.update({
            "trace_id": self.trace_id,
            "underlying_error": self.underlying_error,
        })


# =============================================================================
# Collaborator / Configuration Errors
# =============================================================================


@dataclass
class ForwardError(GatehouseError):
    """Raised when an allowed request cannot be relayed upstream."""

    target: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Forwarding to {self.target} failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_FORWARD_FAILED
        self.context.update({
            "target": self.target,
            "underlying_error": self.underlying_error,
        })


@dataclass
class ConfigError(GatehouseError):
    """Raised when gateway configuration is invalid."""

    source: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid configuration: {self.source}"
        if self.code == 0:
            self.code = ERROR_CONFIG_INVALID
        self.context["source"] = self.source
