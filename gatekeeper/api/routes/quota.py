from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from gatekeeper.core.logging import hash_identity
from gatekeeper.core.rate_limit import enforce_admission

router = APIRouter(tags=["Admission"], dependencies=[Depends(enforce_admission)])


class QuotaResponse(BaseModel):
    """Caller identity and rate state as evaluated for this request."""

    ip: str | None = None
    user_hash: str | None = None
    access: str | None = None
    scope: str | None = None
    limit: int | None = None
    remaining: int | None = None
    reset: int | None = None


@router.get("/quota", response_model=QuotaResponse)
async def get_quota(request: Request) -> QuotaResponse:
    """Return the admission result that let this request through.

    Allow-listed callers get no rate fields since no window was consumed.
    When admission is disabled every field is empty.
    """

    decision = getattr(request.state, "admission", None)
    ctx = getattr(request.state, "request_context", None)
    if decision is None or ctx is None:
        return QuotaResponse()

    headers = decision.headers
    return QuotaResponse(
        ip=ctx.ip,
        user_hash=hash_identity(ctx.user_id),
        access=decision.access.value,
        scope=decision.scope.value if decision.scope else None,
        limit=headers.limit if headers else None,
        remaining=headers.remaining if headers else None,
        reset=headers.reset if headers else None,
    )
