"""
Unit tests for error hierarchy.

Tests cover:
- Base GatehouseError behavior
- Authentication, policy load and evaluation errors
- Usage and delegation errors with context
- Storage and audit errors
- Error serialization
"""

import pytest

from gatehouse.errors import (
    ERROR_AUTH_FAILED,
    ERROR_AUTH_IDENTITY_REVOKED,
    ERROR_AUTH_TOKEN_EXPIRED,
    ERROR_CONDITION_FAILED,
    ERROR_DELEGATION_CEILING,
    ERROR_DELEGATION_DEPTH,
    ERROR_POLICY_LOAD,
    ERROR_RATE_LIMIT_EXCEEDED,
    ERROR_STORAGE_CONNECTION,
    AuditRecordError,
    AuthenticationFailure,
    ConditionError,
    ConfigError,
    DelegationCeilingViolation,
    DelegationDepthExceeded,
    DelegationError,
    ForwardError,
    GatehouseError,
    IdentityRevokedError,
    PolicyLoadError,
    RateLimitExceeded,
    RuleEvaluationSkip,
    StorageConnectionError,
    StorageError,
    StorageWriteError,
    TokenExpiredError,
)


class TestGatehouseError:
    """Tests for base GatehouseError."""

    def test_basic_error(self) -> None:
        """Create a basic error with message."""
        err = GatehouseError(message="Something went wrong", code=9999)
        assert err.message == "Something went wrong"
        assert err.code == 9999
        assert err.suggestion is None
        assert err.context == {}

    def test_str_format(self) -> None:
        """String form carries the code and the suggestion."""
        err = GatehouseError(message="Failed", code=42, suggestion="Try again")
        assert str(err) == "[E42] Failed\nSuggestion: Try again"

    def test_to_dict(self) -> None:
        """Errors serialize for JSON output."""
        err = GatehouseError(message="Failed", code=1, context={"k": "v"})
        assert err.to_dict() == {
            "error_type": "GatehouseError",
            "message": "Failed",
            "code": 1,
            "suggestion": None,
            "context": {"k": "v"},
        }

    def test_is_exception(self) -> None:
        """GatehouseError can be raised and caught."""
        with pytest.raises(GatehouseError):
            raise GatehouseError(message="boom")


class TestAuthenticationErrors:
    """Tests for authentication failures."""

    def test_basic_failure(self) -> None:
        err = AuthenticationFailure(reason="bad signature")
        assert err.code == ERROR_AUTH_FAILED
        assert "bad signature" in err.message
        assert err.context["reason"] == "bad signature"

    def test_token_expired_defaults(self) -> None:
        err = TokenExpiredError()
        assert err.code == ERROR_AUTH_TOKEN_EXPIRED
        assert err.reason == "token expired"
        assert err.suggestion is not None
        assert isinstance(err, AuthenticationFailure)

    def test_identity_revoked(self) -> None:
        err = IdentityRevokedError(identity_id="agent-7")
        assert err.code == ERROR_AUTH_IDENTITY_REVOKED
        assert err.reason == "identity revoked"
        assert err.context["identity_id"] == "agent-7"


class TestPolicyErrors:
    """Tests for policy load and evaluation errors."""

    def test_policy_load_error_lists_problems(self) -> None:
        err = PolicyLoadError(source="p.yaml", errors=["a", "b"])
        assert err.code == ERROR_POLICY_LOAD
        assert "p.yaml" in err.message
        assert "a; b" in err.message
        assert err.context["errors"] == ["a", "b"]

    def test_condition_error_is_rule_skip(self) -> None:
        err = ConditionError(field_path="context.amount", underlying_error="not set")
        assert isinstance(err, RuleEvaluationSkip)
        assert err.code == ERROR_CONDITION_FAILED
        assert err.context["field_path"] == "context.amount"


class TestUsageAndDelegationErrors:
    """Tests for rate limit and delegation errors."""

    def test_rate_limit_exceeded(self) -> None:
        err = RateLimitExceeded(identity_id="a", count=11, limit=10, reset_at="2025-01-01T00:01:00+00:00")
        assert err.code == ERROR_RATE_LIMIT_EXCEEDED
        assert "11 > 10" in err.message
        assert "2025-01-01" in err.suggestion

    def test_depth_exceeded(self) -> None:
        err = DelegationDepthExceeded(chain_id="c1", depth=3, max_depth=2)
        assert err.code == ERROR_DELEGATION_DEPTH
        assert err.context == {"chain_id": "c1", "depth": 3, "max_depth": 2}

    def test_ceiling_violation(self) -> None:
        err = DelegationCeilingViolation(chain_id="c1", pattern="delete:*")
        assert err.code == ERROR_DELEGATION_CEILING
        assert err.context["pattern"] == "delete:*"
        assert isinstance(err, DelegationError)


class TestStorageErrors:
    """Tests for storage and audit errors."""

    def test_connection_error(self) -> None:
        err = StorageConnectionError(db_path="/nope/x.db", operation="connect")
        assert err.code == ERROR_STORAGE_CONNECTION
        assert err.context["db_path"] == "/nope/x.db"
        assert err.context["operation"] == "connect"

    def test_storage_hierarchy(self) -> None:
        assert isinstance(StorageWriteError(underlying_error="x"), StorageError)

    def test_audit_record_error(self) -> None:
        err = AuditRecordError(trace_id="t1", underlying_error="disk full")
        assert "t1" in err.message
        assert "disk full" in err.message


class TestErrorHierarchy:
    """Every error is catchable as GatehouseError."""

    @pytest.mark.parametrize(
        "err",
        [
            AuthenticationFailure(reason="x"),
            PolicyLoadError(errors=["x"]),
            RuleEvaluationSkip(underlying_error="x"),
            RateLimitExceeded(),
            DelegationDepthExceeded(),
            StorageWriteError(),
            ForwardError(target="http://x"),
            ConfigError(source="c.yaml"),
        ],
    )
    def test_catch_all_gatehouse_errors(self, err: GatehouseError) -> None:
        with pytest.raises(GatehouseError):
            raise err
