"""
Identity verification for Gatehouse.

Turns a bearer token into an Identity. The gateway never trusts claims it
has not verified: signature, expiry, issuer and audience are all checked by
PyJWT before any claim is read.

Token claims map onto Identity as follows:

    sub         -> id
    name        -> name
    trust_tier  -> trust_tier (defaults to untrusted)
    tags        -> tags (a list, or a single string for one tag)
    org_id      -> org_id
    revoked     -> revoked

Revocation can also be enforced locally with a set of revoked ids, so a
compromised agent can be cut off before its token expires.
"""

import logging
from typing import Any, Protocol

import jwt
from pydantic import ValidationError

from gatehouse.config import IdentityConfig
from gatehouse.errors import (
    AuthenticationFailure,
    IdentityProviderUnavailable,
    IdentityRevokedError,
    TokenExpiredError,
)
from gatehouse.schema import Identity, TrustTier

logger = logging.getLogger(__name__)


class IdentityProvider(Protocol):
    """
    Anything that can verify a bearer token.

    Raises AuthenticationFailure for a token it rejects and
    IdentityProviderUnavailable when it cannot check the token at all.
    """

    async def verify(self, token: str) -> Identity: ...


def _tags_claim(value: Any) -> frozenset[str]:
    # A bare string is one tag, not a sequence of characters
    if value is None:
        return frozenset()
    if isinstance(value, str):
        return frozenset({value})
    if isinstance(value, (list, tuple)):
        return frozenset(value)
    raise TypeError(f"tags claim must be a string or a list, not {type(value).__name__}")


def identity_from_claims(claims: dict[str, Any]) -> Identity:
    """
    Build an Identity from verified token claims.

    Raises:
        AuthenticationFailure: If required claims are missing or malformed
    """
    subject = claims.get("sub")
    if not subject:
        raise AuthenticationFailure(reason="token has no subject")

    try:
        return Identity(
            id=str(subject),
            name=str(claims.get("name", "")),
            trust_tier=claims.get("trust_tier", TrustTier.UNTRUSTED),
            tags=_tags_claim(claims.get("tags")),
            org_id=claims.get("org_id"),
            revoked=bool(claims.get("revoked", False)),
        )
    except (ValidationError, TypeError) as e:
        raise AuthenticationFailure(
            reason=f"malformed identity claims: {e}",
            identity_id=str(subject),
        ) from e


class JwtIdentityProvider:
    """
    Verifies signed JWT bearer tokens.

    Usage:
        provider = JwtIdentityProvider(config.identity)
        identity = await provider.verify(token)

    Attributes:
        config: Secret, algorithms and claim requirements
    """

    def __init__(
        self,
        config: IdentityConfig,
        revoked_ids: set[str] | None = None,
    ) -> None:
        self.config = config
        self._revoked: set[str] = set(revoked_ids or ())

    def revoke(self, identity_id: str) -> None:
        """Reject every future token for an identity."""
        self._revoked.add(identity_id)

    def is_revoked(self, identity_id: str) -> bool:
        return identity_id in self._revoked

    def decode(self, token: str) -> dict[str, Any]:
        """
        Verify a token and return its claims.

        Raises:
            TokenExpiredError: If the token is past its expiry
            AuthenticationFailure: For any other verification failure
            IdentityProviderUnavailable: If the configured key cannot be used
        """
        if not token:
            raise AuthenticationFailure(reason="missing bearer token")

        options: dict[str, Any] = {"require": ["sub", "exp"]}
        try:
            return jwt.decode(
                token,
                self.config.secret,
                algorithms=self.config.algorithms,
                issuer=self.config.issuer,
                audience=self.config.audience,
                leeway=self.config.leeway_seconds,
                options=options,
            )
        except jwt.ExpiredSignatureError as e:
            raise TokenExpiredError() from e
        except jwt.InvalidTokenError as e:
            raise AuthenticationFailure(reason=f"invalid token: {e}") from e
        except jwt.PyJWTError as e:
            # Key or algorithm misconfiguration, not a bad token
            raise IdentityProviderUnavailable(underlying_error=str(e)) from e

    async def verify(self, token: str) -> Identity:
        """
        Verify a bearer token and return the identity it names.

        Raises:
            TokenExpiredError: If the token is past its expiry
            IdentityRevokedError: If the identity has been revoked
            AuthenticationFailure: If the token is invalid
            IdentityProviderUnavailable: If the configured key cannot be used
        """
        identity = identity_from_claims(self.decode(token))
        if identity.revoked or self.is_revoked(identity.id):
            logger.info("Rejected token for revoked identity %s", identity.id)
            raise IdentityRevokedError(identity_id=identity.id)
        return identity


class StaticIdentityProvider:
    """
    Maps opaque tokens to fixed identities.

    Used for local dry runs and tests where no identity provider is running.
    """

    def __init__(self, identities: dict[str, Identity]) -> None:
        self._identities = dict(identities)

    async def verify(self, token: str) -> Identity:
        identity = self._identities.get(token)
        if identity is None:
            raise AuthenticationFailure(reason="unknown token")
        if identity.revoked:
            raise IdentityRevokedError(identity_id=identity.id)
        return identity
