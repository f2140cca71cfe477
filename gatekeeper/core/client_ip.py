"""Client IP resolution for inbound requests."""

from __future__ import annotations

from fastapi import Request

UNKNOWN_CLIENT = "unknown"


def get_client_ip(request: Request, *, trust_forwarded_for: bool = True) -> str:
    """Return the caller's IP address.

    When running behind a trusted proxy the first ``X-Forwarded-For`` entry is
    the original client. Otherwise the socket peer is used.

    Args:
        request: FastAPI request.
        trust_forwarded_for: Whether the proxy header may be used.

    Returns:
        str: IP address, or ``"unknown"`` when none is available.
    """

    if trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first

    if request.client and request.client.host:
        return request.client.host
    return UNKNOWN_CLIENT
