"""Audit sink that emits one structured log line per event."""

from __future__ import annotations

import logging

from gatekeeper.adapters.audit.base import AbstractAuditSink, AuditEvent
from gatekeeper.core.logging import hash_identity

logger = logging.getLogger("gatekeeper.audit")


class LoggingAuditSink(AbstractAuditSink):
    """Write audit events to the ``gatekeeper.audit`` logger.

    Identities and IPs are hashed so the log stream can be shipped to shared
    aggregation without carrying raw personal identifiers.
    """

    async def record(self, event: AuditEvent) -> None:
        logger.info(
            "audit.request",
            extra={
                "identity_hash": hash_identity(event.identity),
                "ip_hash": hash_identity(event.ip),
                "endpoint": event.endpoint,
                "method": event.method,
                "status_code": event.status_code,
                "reason": event.reason,
                "metadata": event.metadata,
            },
        )
