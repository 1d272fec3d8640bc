"""
Governance Pipeline for Gatehouse.

The pipeline is the orchestration layer every agent request passes through.
It coordinates between:
- Identity Provider: Turns the bearer token into an Identity
- Usage Limiter: Counts the request and applies the usage ceiling
- Decision Engine: Decides allow/deny (with delegation limits)
- Audit Sink: Records the decision before anything else happens
- Forwarder: Relays allowed requests upstream

State machine:

    received -> authenticated -> rate_checked -> decided -> [delegated]
             -> recorded -> forwarded | rejected

Any failing stage short-circuits to ``rejected`` with a reason and a
DenialKind. Every request that got past authentication is recorded exactly
once before it reaches a terminal state, including usage rejections.

Design Principles:
    - Bounded: every collaborator call runs under its own timeout
    - Audited: once a decision exists its audit write is shielded from
      cancellation, so a dropped client never loses a record
    - Explainable: every rejection carries a reason and a trace id
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from gatehouse.config import GatewayConfig, TimeoutConfig
from gatehouse.errors import (
    AuditRecordError,
    AuthenticationFailure,
    ForwardError,
    IdentityProviderUnavailable,
    RateLimitExceeded,
    RateStoreUnavailable,
)
from gatehouse.forward import Forwarder, ForwardResult, HttpForwarder
from gatehouse.identity import IdentityProvider, JwtIdentityProvider
from gatehouse.limiter import UsageLimiter
from gatehouse.policy import DecisionEngine, PolicyRegistry, YamlPolicyStore
from gatehouse.schema import Decision, DelegationChain, DenialKind, Identity
from gatehouse.store import AuditDB, AuditSink, SqliteAuditSink

logger = logging.getLogger(__name__)

REASON_PROVIDER_TIMEOUT = "identity provider timed out"
REASON_PROVIDER_UNAVAILABLE = "identity provider unavailable"
REASON_RATE_LIMITED = "rate limit exceeded"
REASON_RATE_STORE_UNAVAILABLE = "rate store unavailable"
REASON_AUDIT_FAILED = "audit record failed"
REASON_UPSTREAM_FAILED = "upstream request failed"

STATUS_BY_DENIAL = {
    DenialKind.AUTHENTICATION: 401,
    DenialKind.POLICY: 403,
    DenialKind.DELEGATION: 403,
    DenialKind.RATE_LIMIT: 429,
    DenialKind.UPSTREAM: 502,
    DenialKind.AUDIT: 503,
    DenialKind.UNAVAILABLE: 503,
}


class PipelineState(str, Enum):
    """Stages a governed request moves through."""

    RECEIVED = "received"
    AUTHENTICATED = "authenticated"
    RATE_CHECKED = "rate_checked"
    DECIDED = "decided"
    DELEGATED = "delegated"
    RECORDED = "recorded"
    FORWARDED = "forwarded"
    REJECTED = "rejected"

    @property
    def terminal(self) -> bool:
        return self in (PipelineState.FORWARDED, PipelineState.REJECTED)


@dataclass
class GovernedRequest:
    """
    One agent request as the pipeline sees it.

    Attributes:
        token: Bearer token presented by the agent
        action: Action being attempted (e.g. "read:contacts")
        resource: Resource acted on (string or mapping)
        context: Free-form request context for rule conditions
        delegation_chain: Present when the agent acts for another agent
        method: HTTP method to relay upstream
        path: Upstream path to relay to
        headers: Inbound headers to relay
        body: Request body to relay
    """

    token: str
    action: str
    resource: Any = None
    context: dict[str, Any] = field(default_factory=dict)
    delegation_chain: DelegationChain | None = None
    method: str = "POST"
    path: str = "/"
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes | None = None


@dataclass
class PipelineResult:
    """
    Outcome of one governed request.

    Attributes:
        state: Terminal state (forwarded or rejected)
        decision: The decision that determined the outcome
        states: Every state the request passed through, in order
        identity: Verified identity, if authentication succeeded
        forward_result: Upstream response, if the request was relayed
    """

    state: PipelineState
    decision: Decision
    states: list[PipelineState] = field(default_factory=list)
    identity: Identity | None = None
    forward_result: ForwardResult | None = None

    @property
    def forwarded(self) -> bool:
        return self.state == PipelineState.FORWARDED

    @property
    def status_code(self) -> int:
        return status_code_for(self)


def status_code_for(result: PipelineResult) -> int:
    """
    Map a pipeline result to the HTTP status an adapter should answer with.

    A relayed request answers with the upstream status; an allowed request
    with no forwarder configured answers 200.
    """
    if result.state == PipelineState.FORWARDED:
        if result.forward_result is not None:
            return result.forward_result.status_code
        return 200
    if result.decision.denial is None:
        return 403
    return STATUS_BY_DENIAL[result.decision.denial]


class GovernancePipeline:
    """
    Runs governed requests through authenticate, limit, decide, record
    and forward.

    Usage:
        pipeline = GovernancePipeline(provider, limiter, engine, sink, forwarder)
        result = await pipeline.handle(request)
        if result.forwarded:
            # relay result.forward_result to the agent
        else:
            # answer status_code_for(result) with result.decision.reason

    Attributes:
        identity_provider: Verifies bearer tokens
        limiter: Usage limiter consulted before the engine
        engine: Decision engine
        audit_sink: Receives exactly one record per authenticated request
        forwarder: Relays allowed requests (None for decision-only mode)
        timeouts: Per-collaborator time bounds
    """

    def __init__(
        self,
        identity_provider: IdentityProvider,
        limiter: UsageLimiter,
        engine: DecisionEngine,
        audit_sink: AuditSink,
        forwarder: Forwarder | None = None,
        timeouts: TimeoutConfig | None = None,
    ) -> None:
        self.identity_provider = identity_provider
        self.limiter = limiter
        self.engine = engine
        self.audit_sink = audit_sink
        self.forwarder = forwarder
        self.timeouts = timeouts or TimeoutConfig()
        # In-flight audit writes, kept alive past request cancellation
        self._audit_writes: set[asyncio.Future] = set()

    async def handle(self, request: GovernedRequest) -> PipelineResult:
        """
        Govern one request from receipt to a terminal state.

        Never raises for expected failures; every failure becomes a rejected
        result with a reason.
        """
        states = [PipelineState.RECEIVED]

        # Authenticate
        try:
            identity = await asyncio.wait_for(
                self.identity_provider.verify(request.token),
                timeout=self.timeouts.identity_seconds,
            )
        except AuthenticationFailure as e:
            decision = Decision.deny(
                request.action,
                e.reason or e.message,
                DenialKind.AUTHENTICATION,
            )
            logger.info(
                "Rejected %s: authentication failed (%s) trace=%s",
                request.action,
                decision.reason,
                decision.trace_id,
            )
            return self._reject(states, decision)
        except TimeoutError:
            decision = Decision.deny(request.action, REASON_PROVIDER_TIMEOUT, DenialKind.UNAVAILABLE)
            logger.warning("Identity provider timed out, trace=%s", decision.trace_id)
            return self._reject(states, decision)
        except IdentityProviderUnavailable as e:
            return self._provider_unavailable(states, request, e)
        except Exception as e:
            unavailable = IdentityProviderUnavailable(underlying_error=f"{type(e).__name__}: {e}")
            return self._provider_unavailable(states, request, unavailable)
        states.append(PipelineState.AUTHENTICATED)

        # Usage ceiling, before any rule evaluation
        try:
            await self.limiter.enforce(identity)
        except RateLimitExceeded as e:
            decision = Decision.deny(request.action, REASON_RATE_LIMITED, DenialKind.RATE_LIMIT)
            logger.info(
                "Rejected %s for %s: %s trace=%s",
                request.action,
                identity.id,
                e.message,
                decision.trace_id,
            )
            return await self._record_and_reject(states, decision, identity, request)
        except RateStoreUnavailable:
            decision = Decision.deny(
                request.action, REASON_RATE_STORE_UNAVAILABLE, DenialKind.UNAVAILABLE
            )
            return await self._record_and_reject(states, decision, identity, request)
        states.append(PipelineState.RATE_CHECKED)

        decision = self.engine.evaluate(
            identity,
            request.action,
            request.resource,
            request.context,
            request.delegation_chain,
        )
        states.append(PipelineState.DECIDED)
        if request.delegation_chain is not None and request.delegation_chain.links:
            states.append(PipelineState.DELEGATED)

        recorded = await self._record(decision, identity, request)
        if recorded is not None:
            return self._reject(states, recorded, identity)
        states.append(PipelineState.RECORDED)

        if not decision.allowed:
            logger.info(
                "Denied %s for %s: %s trace=%s",
                request.action,
                identity.id,
                decision.reason,
                decision.trace_id,
            )
            return self._reject(states, decision, identity)

        return await self._forward(states, decision, identity, request)

    async def _record(
        self,
        decision: Decision,
        identity: Identity,
        request: GovernedRequest,
    ) -> Decision | None:
        """
        Emit the audit record. Returns an audit denial on failure, else None.

        The write runs in its own task under shield, so cancelling the
        request does not cancel the record.
        """
        write = asyncio.ensure_future(
            asyncio.wait_for(
                self.audit_sink.record(decision, identity, request.resource, request.context),
                timeout=self.timeouts.audit_seconds,
            )
        )
        self._audit_writes.add(write)
        write.add_done_callback(self._audit_writes.discard)
        try:
            await asyncio.shield(write)
        except TimeoutError:
            logger.error("Audit record timed out, trace=%s", decision.trace_id)
            return decision.overridden(REASON_AUDIT_FAILED, DenialKind.AUDIT)
        except AuditRecordError as e:
            logger.error("Audit record failed, trace=%s: %s", decision.trace_id, e.underlying_error)
            return decision.overridden(REASON_AUDIT_FAILED, DenialKind.AUDIT)
        except Exception as e:
            logger.error(
                "Audit sink raised %s, trace=%s: %s",
                type(e).__name__,
                decision.trace_id,
                e,
            )
            return decision.overridden(REASON_AUDIT_FAILED, DenialKind.AUDIT)
        except asyncio.CancelledError:
            logger.info("Request cancelled, audit write for %s continues", decision.trace_id)
            raise
        return None

    async def _record_and_reject(
        self,
        states: list[PipelineState],
        decision: Decision,
        identity: Identity,
        request: GovernedRequest,
    ) -> PipelineResult:
        failed = await self._record(decision, identity, request)
        if failed is not None:
            return self._reject(states, failed, identity)
        states.append(PipelineState.RECORDED)
        return self._reject(states, decision, identity)

    async def _forward(
        self,
        states: list[PipelineState],
        decision: Decision,
        identity: Identity,
        request: GovernedRequest,
    ) -> PipelineResult:
        if self.forwarder is None:
            states.append(PipelineState.FORWARDED)
            return PipelineResult(PipelineState.FORWARDED, decision, states, identity)

        try:
            forwarded = await asyncio.wait_for(
                self.forwarder.forward(request, decision),
                timeout=self.timeouts.forward_seconds,
            )
        except (ForwardError, TimeoutError) as e:
            detail = e.underlying_error if isinstance(e, ForwardError) else "timed out"
            logger.warning(
                "Forwarding %s failed: %s trace=%s",
                request.action,
                detail,
                decision.trace_id,
            )
            return self._reject(
                states,
                decision.overridden(REASON_UPSTREAM_FAILED, DenialKind.UPSTREAM),
                identity,
            )

        states.append(PipelineState.FORWARDED)
        return PipelineResult(
            PipelineState.FORWARDED,
            decision,
            states,
            identity,
            forward_result=forwarded,
        )

    def _provider_unavailable(
        self,
        states: list[PipelineState],
        request: GovernedRequest,
        error: IdentityProviderUnavailable,
    ) -> PipelineResult:
        decision = Decision.deny(request.action, REASON_PROVIDER_UNAVAILABLE, DenialKind.UNAVAILABLE)
        logger.warning("%s (code %d), trace=%s", error.message, error.code, decision.trace_id)
        return self._reject(states, decision)

    def _reject(
        self,
        states: list[PipelineState],
        decision: Decision,
        identity: Identity | None = None,
    ) -> PipelineResult:
        states.append(PipelineState.REJECTED)
        return PipelineResult(PipelineState.REJECTED, decision, states, identity)


def build_pipeline(
    config: GatewayConfig,
    client: httpx.AsyncClient | None = None,
) -> tuple[GovernancePipeline, YamlPolicyStore]:
    """
    Assemble a pipeline from gateway configuration.

    Returns the pipeline and the policy store backing its registry, so the
    caller can start ``store.watch()`` for hot reload.
    """
    store = YamlPolicyStore(config.policy_paths)
    registry = PolicyRegistry(store.load_all())
    store.on_change(lambda: registry.reload_from(store))

    forwarder = None
    if config.upstream.base_url:
        forwarder = HttpForwarder(config.upstream.base_url, client)

    pipeline = GovernancePipeline(
        identity_provider=JwtIdentityProvider(config.identity),
        limiter=UsageLimiter(config.usage),
        engine=DecisionEngine(registry, default_effect=config.default_effect),
        audit_sink=SqliteAuditSink(AuditDB(config.audit_db)),
        forwarder=forwarder,
        timeouts=config.timeouts,
    )
    return pipeline, store
