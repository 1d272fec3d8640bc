"""
Deployment configuration for Gatehouse.

A gateway is configured with a single YAML file:

    default_effect: deny
    policy_paths: [./policies]
    audit_db: gatehouse.db
    log_level: INFO
    usage:
      limit: 600
      window: minute
      mode: fail_closed
      tier_limits:
        untrusted: 60
    timeouts:
      identity_seconds: 2
      audit_seconds: 2
      forward_seconds: 30
    identity:
      secret: change-me
      issuer: https://id.example.com
    upstream:
      base_url: https://tools.internal.example.com

Every section has defaults, so an empty file is a valid (deny-everything)
configuration.
"""

from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from gatehouse.errors import ConfigError
from gatehouse.schema import Effect, TrustTier

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class UsageWindow(str, Enum):
    """Calendar window a usage counter is aligned to (UTC)."""

    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"
    MONTH = "month"


class LimitMode(str, Enum):
    """
    What happens when an identity is over its limit or the rate store fails.

    FAIL_OPEN lets the request through with a logged warning.
    FAIL_CLOSED rejects it.
    """

    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"


class UsageConfig(BaseModel):
    """
    Usage-limiter settings.

    Attributes:
        limit: Requests per window for every identity
        window: Window the counter is aligned to
        mode: fail_open (default) or fail_closed
        tier_limits: Per-trust-tier overrides of ``limit``
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    limit: int = Field(default=1000, ge=0, description="Requests per window")
    window: UsageWindow = Field(default=UsageWindow.MINUTE)
    mode: LimitMode = Field(default=LimitMode.FAIL_OPEN)
    tier_limits: dict[TrustTier, int] = Field(default_factory=dict)

    def limit_for(self, tier: TrustTier | None) -> int:
        """Return the ceiling that applies to a trust tier."""
        if tier is not None and tier in self.tier_limits:
            return self.tier_limits[tier]
        return self.limit


class TimeoutConfig(BaseModel):
    """Upper bounds for each external collaborator call, in seconds."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    identity_seconds: float = Field(default=2.0, gt=0, le=60)
    audit_seconds: float = Field(default=2.0, gt=0, le=60)
    forward_seconds: float = Field(default=30.0, gt=0, le=300)


class IdentityConfig(BaseModel):
    """
    Bearer-token verification settings.

    Attributes:
        secret: Shared secret (HS*) or PEM public key (RS*/ES*)
        algorithms: Accepted signing algorithms
        issuer: Required ``iss`` claim, if set
        audience: Required ``aud`` claim, if set
        leeway_seconds: Clock skew tolerated on exp/nbf
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    secret: str = Field(default="", description="Shared secret or public key")
    algorithms: list[str] = Field(default_factory=lambda: ["HS256"])
    issuer: str | None = None
    audience: str | None = None
    leeway_seconds: int = Field(default=0, ge=0)


class UpstreamConfig(BaseModel):
    """Where allowed requests are relayed."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    base_url: str | None = None


class GatewayConfig(BaseModel):
    """
    Complete gateway configuration.

    Attributes:
        default_effect: Global outcome when no policy applies
        policy_paths: Files or directories holding policy YAML
        audit_db: SQLite file for the audit log
        log_level: Root logging level
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    default_effect: Effect = Field(default=Effect.DENY)
    policy_paths: list[Path] = Field(default_factory=list)
    audit_db: Path = Field(default=Path("gatehouse.db"))
    log_level: str = Field(default="INFO")
    usage: UsageConfig = Field(default_factory=UsageConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    identity: IdentityConfig = Field(default_factory=IdentityConfig)
    upstream: UpstreamConfig = Field(default_factory=UpstreamConfig)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Accept any standard logging level name, in any case."""
        level = v.upper()
        if level not in LOG_LEVELS:
            msg = f"log_level must be one of {LOG_LEVELS}, got {v!r}"
            raise ValueError(msg)
        return level


def _validate(data: Any, source: str) -> GatewayConfig:
    if data is None:
        data = {}
    try:
        return GatewayConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(source=source, message=f"Invalid configuration in {source}: {e}") from e


def load_config(path: Path | str) -> GatewayConfig:
    """
    Load gateway configuration from a YAML file.

    Relative policy and database paths are resolved against the file's
    directory.

    Raises:
        ConfigError: If the file cannot be read or is invalid
    """
    path = Path(path)
    try:
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
        raise ConfigError(source=str(path), message=f"Cannot read configuration: {e}") from e

    config = _validate(data, str(path))
    base = path.parent
    return config.model_copy(
        update={
            "policy_paths": [p if p.is_absolute() else base / p for p in config.policy_paths],
            "audit_db": config.audit_db if config.audit_db.is_absolute() else base / config.audit_db,
        }
    )


def load_config_from_string(content: str) -> GatewayConfig:
    """Load gateway configuration from a YAML string."""
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigError(source="<string>", message=f"Cannot parse configuration: {e}") from e
    return _validate(data, "<string>")
