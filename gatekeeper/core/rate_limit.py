"""Admission dependencies for FastAPI routes.

This module wires the admission engine into the HTTP layer.

Design goals:
- Minimal coupling: routes depend on a dependency function only.
- Explicit wiring: the engine is built by the app factory and read from
  ``app.state``; nothing here holds a global client.
- Consistent responses: denials raise AdmissionDeniedError, rendered by the
  global exception handlers with rate headers and ``retryAfter``.

Usage:
    router = APIRouter(dependencies=[Depends(enforce_admission)])

    @router.post("/login", dependencies=[Depends(endpoint_rate_limit(10))])
    async def login(): ...
"""

from __future__ import annotations

import logging
from typing import Annotated, Awaitable, Callable

from fastapi import Header, Request, Response

from gatekeeper.core.auth import JWTTokenVerifier
from gatekeeper.core.client_ip import get_client_ip
from gatekeeper.core.config import Settings
from gatekeeper.core.errors import AdmissionDeniedError
from gatekeeper.core.logging import hash_identity
from gatekeeper.services.admission import (
    AdmissionController,
    AdmissionDecision,
    DenyReason,
    RequestContext,
)

logger = logging.getLogger(__name__)


def get_admission_controller(request: Request) -> AdmissionController:
    """Return the controller built by the app factory."""

    return request.app.state.admission


def build_request_context(request: Request, authorization: str | None) -> RequestContext:
    """Resolve client IP and (optional) principal for the current request."""

    settings: Settings = request.app.state.settings
    verifier: JWTTokenVerifier = request.app.state.token_verifier
    return RequestContext(
        ip=get_client_ip(request, trust_forwarded_for=settings.app.trust_forwarded_for),
        method=request.method,
        path=request.url.path,
        principal=verifier.resolve_principal(authorization),
    )


def _raise_denied(decision: AdmissionDecision, ctx: RequestContext) -> None:
    headers = decision.headers.as_dict() if decision.headers else {}
    if decision.retry_after is not None:
        headers["Retry-After"] = str(decision.retry_after)

    reason = decision.reason or DenyReason.IP_RATE_LIMIT_EXCEEDED
    logger.warning(
        "admission.denied",
        extra={
            "reason": reason.value,
            "status_code": decision.status_code,
            "ip_hash": hash_identity(ctx.ip),
            "user_hash": hash_identity(ctx.user_id),
            "endpoint": ctx.endpoint,
            "retry_after_s": decision.retry_after,
        },
    )

    message = (
        "Access denied"
        if decision.status_code == 403
        else "Rate limit exceeded. Try again later."
    )
    raise AdmissionDeniedError(
        code=reason.value.lower(),
        message=message,
        status_code=decision.status_code,
        retry_after=decision.retry_after,
        headers=headers,
    )


def _apply_headers(response: Response, decision: AdmissionDecision) -> None:
    if decision.headers is not None:
        for name, value in decision.headers.as_dict().items():
            response.headers[name] = value


async def enforce_admission(
    request: Request,
    response: Response,
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    """FastAPI dependency running the full admission pipeline.

    Admitted requests get ``X-RateLimit-*`` headers for the last evaluated
    scope. Denied requests raise AdmissionDeniedError (403 or 429).

    Raises:
        AdmissionDeniedError: When the engine denies the request.
    """

    settings: Settings = request.app.state.settings
    if not settings.app.admission_enabled:
        return

    ctx = build_request_context(request, authorization)
    decision = await get_admission_controller(request).admit(ctx)
    request.state.admission = decision
    request.state.request_context = ctx

    if not decision.allowed:
        _raise_denied(decision, ctx)

    _apply_headers(response, decision)


def endpoint_rate_limit(
    max_requests: int | None = None,
) -> Callable[..., Awaitable[None]]:
    """Build a dependency enforcing a per-route limit.

    Args:
        max_requests: Requests per window for this route; defaults to
            ``RATE_LIMIT_PER_ENDPOINT_MAX``.

    Returns:
        Dependency callable for ``Depends``.
    """

    async def _enforce_endpoint_limit(
        request: Request,
        response: Response,
        authorization: Annotated[str | None, Header()] = None,
    ) -> None:
        settings: Settings = request.app.state.settings
        if not settings.app.admission_enabled:
            return

        ctx = build_request_context(request, authorization)
        decision = await get_admission_controller(request).admit_endpoint(ctx, max_requests)

        if not decision.allowed:
            _raise_denied(decision, ctx)

        _apply_headers(response, decision)

    return _enforce_endpoint_limit
