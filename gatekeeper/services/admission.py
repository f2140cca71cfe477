"""Admission decision orchestrator.

Composes the access list evaluator, the abuse prevention service and the
sliding window limiter into a single admit/deny decision per request.

Order of evaluation:
    (a) blacklist            -> deny 403
    (b) whitelist/admin role -> admit, no further checks
    (c) IP and user blocks   -> deny 429 (checked concurrently)
    (d) IP window            -> on violation: record, escalate, deny 429
    (e) user window          -> same, for authenticated callers
    (f) admit with headers of the last evaluated scope

``admit_endpoint`` is an additional per-route gate that composes with the
above; it does not escalate violations. Every request gets one audit event:
admissions are recorded by ``admit`` only, so routes behind both gates are
not counted twice.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from gatekeeper.adapters.audit.base import AbstractAuditSink, AuditEvent
from gatekeeper.core.auth import Principal
from gatekeeper.core.errors import StoreUnavailableError
from gatekeeper.schemas.blocks import BlockInfo
from gatekeeper.services.abuse_prevention import AbusePreventionService
from gatekeeper.services.access_lists import AccessClass, AccessListEvaluator
from gatekeeper.services.sliding_window import RateLimitResult, RateScope, SlidingWindowLimiter

logger = logging.getLogger(__name__)


class DenyReason(str, Enum):
    IP_BLACKLISTED = "IP_BLACKLISTED"
    ENTITY_BLOCKED = "ENTITY_BLOCKED"
    IP_RATE_LIMIT_EXCEEDED = "IP_RATE_LIMIT_EXCEEDED"
    USER_RATE_LIMIT_EXCEEDED = "USER_RATE_LIMIT_EXCEEDED"
    ENDPOINT_RATE_LIMIT_EXCEEDED = "ENDPOINT_RATE_LIMIT_EXCEEDED"


@dataclass(frozen=True)
class RequestContext:
    """Identity of an inbound request as seen by the engine."""

    ip: str
    method: str
    path: str
    principal: Principal | None = None

    @property
    def endpoint(self) -> str:
        return f"{self.method.upper()} {self.path}"

    @property
    def user_id(self) -> str | None:
        return self.principal.user_id if self.principal else None

    @property
    def role(self) -> str | None:
        return self.principal.role if self.principal else None


@dataclass(frozen=True)
class RateLimitHeaders:
    limit: int
    remaining: int
    reset: int

    def as_dict(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset),
        }


@dataclass(frozen=True)
class AdmissionDecision:
    """Outcome of the admission pipeline for one request.

    Attributes:
        allowed: Whether the request may proceed.
        status_code: 200 when admitted, 403 or 429 when denied.
        access: How the evaluator classified the request.
        reason: Denial reason, None when admitted.
        headers: Rate limit headers; None for list-based decisions.
        retry_after: Seconds until retrying makes sense (denials only).
        scope: Scope whose limits the headers describe.
    """

    allowed: bool
    status_code: int
    access: AccessClass
    reason: DenyReason | None = None
    headers: RateLimitHeaders | None = None
    retry_after: int | None = None
    scope: RateScope | None = None


async def _not_blocked() -> bool:
    return False


class AdmissionController:
    """Runs the admission pipeline and reports every outcome to the audit sink."""

    def __init__(
        self,
        *,
        evaluator: AccessListEvaluator,
        limiter: SlidingWindowLimiter,
        abuse: AbusePreventionService,
        audit_sink: AbstractAuditSink,
        permanent_block_retry_after_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._evaluator = evaluator
        self._limiter = limiter
        self._abuse = abuse
        self._audit_sink = audit_sink
        self._default_retry_after = permanent_block_retry_after_seconds
        self._clock = clock
        self._pending_audit: set[asyncio.Task[None]] = set()

    @property
    def limiter(self) -> SlidingWindowLimiter:
        return self._limiter

    @property
    def abuse(self) -> AbusePreventionService:
        return self._abuse

    def _now_ms(self) -> int:
        return round(self._clock() * 1000)

    def _retry_after(self, reset_ms: int) -> int:
        return max(0, math.ceil((reset_ms - self._now_ms()) / 1000))

    async def _record_audit(self, event: AuditEvent) -> None:
        try:
            await self._audit_sink.record(event)
        except Exception:  # noqa: BLE001 - audit failures never affect decisions
            logger.exception(
                "audit.record_failed",
                extra={"reason": event.reason, "status_code": event.status_code},
            )

    def _audit(
        self,
        ctx: RequestContext,
        status_code: int,
        reason: DenyReason | None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        event = AuditEvent(
            identity=ctx.user_id,
            ip=ctx.ip,
            endpoint=ctx.endpoint,
            method=ctx.method.upper(),
            status_code=status_code,
            reason=reason.value if reason else None,
            metadata=metadata or {},
        )
        task = asyncio.create_task(self._record_audit(event))
        self._pending_audit.add(task)
        task.add_done_callback(self._pending_audit.discard)

    async def flush_audit(self) -> None:
        """Wait for audit records that are still in flight."""

        if self._pending_audit:
            await asyncio.gather(*list(self._pending_audit), return_exceptions=True)

    def _deny_listed(self, ctx: RequestContext) -> AdmissionDecision:
        logger.warning("admission.deny_listed", extra={"endpoint": ctx.endpoint})
        self._audit(ctx, 403, DenyReason.IP_BLACKLISTED)
        return AdmissionDecision(
            allowed=False,
            status_code=403,
            access=AccessClass.DENY_LISTED,
            reason=DenyReason.IP_BLACKLISTED,
        )

    async def _blocked(self, ctx: RequestContext, ip_blocked: bool) -> AdmissionDecision:
        entity_value, entity_type = (ctx.ip, "ip") if ip_blocked else (ctx.user_id or "", "user")
        try:
            info = await self._abuse.get_block_info(entity_value, entity_type)
        except StoreUnavailableError as exc:
            logger.warning(
                "admission.block_info_unavailable",
                extra={"entity_type": entity_type, "error_code": exc.code},
            )
            info = BlockInfo(is_blocked=True)

        if info.unblock_at is not None:
            reset_ms = int(info.unblock_at.timestamp() * 1000)
            retry_after = self._retry_after(reset_ms)
        else:
            retry_after = self._default_retry_after
            reset_ms = self._now_ms() + retry_after * 1000

        self._audit(
            ctx,
            429,
            DenyReason.ENTITY_BLOCKED,
            {"entity_type": entity_type, **info.model_dump(mode="json", exclude_none=True)},
        )
        return AdmissionDecision(
            allowed=False,
            status_code=429,
            access=AccessClass.UNLISTED,
            reason=DenyReason.ENTITY_BLOCKED,
            headers=RateLimitHeaders(limit=0, remaining=0, reset=reset_ms),
            retry_after=retry_after,
        )

    async def _rate_denied(
        self,
        ctx: RequestContext,
        result: RateLimitResult,
        scope: RateScope,
        identifier: str,
        reason: DenyReason,
    ) -> AdmissionDecision:
        violations = await self._limiter.record_violation(
            identifier, scope.value, f"{scope.value} rate limit exceeded"
        )
        outcome = await self._abuse.handle_violation(
            identifier, scope.value, "Rate limit violations", violations
        )
        self._audit(
            ctx,
            429,
            reason,
            {
                "violations": violations,
                "current": result.current,
                "blocked": outcome.blocked,
                "block_duration_minutes": outcome.duration_minutes,
            },
        )
        return self._throttled(result, scope, reason)

    def _throttled(
        self, result: RateLimitResult, scope: RateScope, reason: DenyReason
    ) -> AdmissionDecision:
        return AdmissionDecision(
            allowed=False,
            status_code=429,
            access=AccessClass.UNLISTED,
            reason=reason,
            headers=RateLimitHeaders(
                limit=result.limit, remaining=result.remaining, reset=result.reset_time
            ),
            retry_after=self._retry_after(result.reset_time),
            scope=scope,
        )

    def _admitted(
        self,
        ctx: RequestContext,
        access: AccessClass,
        result: RateLimitResult | None = None,
        scope: RateScope | None = None,
        *,
        audit: bool = True,
    ) -> AdmissionDecision:
        headers = None
        if result is not None:
            headers = RateLimitHeaders(
                limit=result.limit, remaining=result.remaining, reset=result.reset_time
            )
        if audit:
            self._audit(
                ctx,
                200,
                None,
                {"access": access.value, "scope": scope.value if scope else None},
            )
        return AdmissionDecision(
            allowed=True, status_code=200, access=access, headers=headers, scope=scope
        )

    async def admit(self, ctx: RequestContext) -> AdmissionDecision:
        """Decide whether a request is admitted."""

        access = self._evaluator.classify(ctx.ip, ctx.role)
        if access is AccessClass.DENY_LISTED:
            return self._deny_listed(ctx)
        if access is AccessClass.ALLOW_LISTED:
            return self._admitted(ctx, access)

        user_id = ctx.user_id
        ip_blocked, user_blocked = await asyncio.gather(
            self._abuse.is_blocked(ctx.ip, "ip"),
            self._abuse.is_blocked(user_id, "user") if user_id else _not_blocked(),
        )
        if ip_blocked or user_blocked:
            return await self._blocked(ctx, ip_blocked)

        result = await self._limiter.check_ip(ctx.ip)
        if not result.allowed:
            return await self._rate_denied(
                ctx, result, RateScope.IP, ctx.ip, DenyReason.IP_RATE_LIMIT_EXCEEDED
            )
        scope = RateScope.IP

        if user_id:
            result = await self._limiter.check_user(user_id)
            if not result.allowed:
                return await self._rate_denied(
                    ctx, result, RateScope.USER, user_id, DenyReason.USER_RATE_LIMIT_EXCEEDED
                )
            scope = RateScope.USER

        return self._admitted(ctx, access, result, scope)

    async def admit_endpoint(
        self, ctx: RequestContext, max_requests: int | None = None
    ) -> AdmissionDecision:
        """Apply the per-route limit for ``ctx.endpoint`` and the caller."""

        access = self._evaluator.classify(ctx.ip, ctx.role)
        if access is AccessClass.DENY_LISTED:
            return self._deny_listed(ctx)
        if access is AccessClass.ALLOW_LISTED:
            return self._admitted(ctx, access, audit=False)

        result = await self._limiter.check_endpoint(
            ctx.endpoint, ctx.user_id or ctx.ip, max_requests
        )
        if not result.allowed:
            self._audit(
                ctx,
                429,
                DenyReason.ENDPOINT_RATE_LIMIT_EXCEEDED,
                {"current": result.current},
            )
            return self._throttled(result, RateScope.ENDPOINT, DenyReason.ENDPOINT_RATE_LIMIT_EXCEEDED)

        return self._admitted(ctx, access, result, RateScope.ENDPOINT, audit=False)
