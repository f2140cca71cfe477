"""Audit sink interface.

Durable audit storage lives outside this service. The engine only hands
events to a sink and never lets a sink failure change a decision.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class AuditEvent:
    """One admission outcome worth recording.

    Attributes:
        identity: Authenticated user id, if any.
        ip: Client IP address.
        endpoint: ``METHOD path`` of the request.
        method: HTTP method.
        status_code: Status returned to the client.
        reason: Machine-readable denial reason (e.g. ``IP_RATE_LIMIT_EXCEEDED``),
            None for admitted requests.
        metadata: Extra context such as violation counts.
    """

    identity: str | None
    ip: str
    endpoint: str
    method: str
    status_code: int
    reason: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class AbstractAuditSink(ABC):
    """Interface for audit event consumers."""

    @abstractmethod
    async def record(self, event: AuditEvent) -> None:
        """Record an event. Implementations may raise; callers absorb failures."""
        raise NotImplementedError
