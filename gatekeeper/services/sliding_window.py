"""Sliding window rate limiter and violation tracking.

Each ``(scope, identifier)`` pair owns an ordered set of request timestamps in
the counter store. A request is admitted when fewer than ``max_requests``
timestamps fall inside ``[now - window_ms, now]``. The purge, count and
insert run as one atomic store operation, so the limit holds exactly for a
single shared store.

Failure policy:
    Availability wins over enforcement. When the counter store is
    unreachable the limiter fails open, reporting a generous sentinel
    ``remaining`` value, and logs ``rate_limit.fail_open``. Violation
    counters degrade to zero so a lost store never triggers a block.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from gatekeeper.adapters.counter_store.base import AbstractCounterStore
from gatekeeper.core.config import RateLimitSettings
from gatekeeper.core.errors import StoreUnavailableError
from gatekeeper.core.logging import hash_identity

logger = logging.getLogger(__name__)

# Violations are counted over a fixed horizon, independent of the rate window.
VIOLATION_WINDOW_MS = 60 * 60 * 1000


class RateScope(str, Enum):
    """Dimension a rate limit applies to."""

    IP = "ip"
    USER = "user"
    ENDPOINT = "endpoint"


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a sliding window check.

    Attributes:
        allowed: Whether the request may proceed.
        limit: Max requests per window for the evaluated scope.
        remaining: Requests left in the window after this one (0 when denied).
        reset_time: Epoch milliseconds when a slot frees up.
        current: Requests counted in the window, including this one if admitted.
        fail_open: True when the decision was made without the counter store.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_time: int
    current: int
    fail_open: bool = False


def build_rate_key(scope: RateScope, identifier: str) -> str:
    """Derive the counter store key for a scope/identifier pair."""

    return f"ratelimit:{scope.value}:{identifier}"


def build_violation_key(entity_type: str, identifier: str) -> str:
    """Derive the counter store key for an identity's violation window."""

    return f"violations:{entity_type}:{identifier}"


class SlidingWindowLimiter:
    """Sliding window limiter over an injected counter store."""

    def __init__(
        self,
        store: AbstractCounterStore,
        *,
        window_ms: int,
        per_ip_max: int,
        per_user_max: int,
        per_endpoint_max: int,
        fail_open_remaining: int = 999,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the limiter.

        Args:
            store: Shared counter store.
            window_ms: Default window width in milliseconds.
            per_ip_max: Limit applied by ``check_ip``.
            per_user_max: Limit applied by ``check_user``.
            per_endpoint_max: Default limit applied by ``check_endpoint``.
            fail_open_remaining: ``remaining`` reported when failing open.
            clock: Time source returning UNIX time in seconds.

        Raises:
            ValueError: If the window is not positive.
        """
        if window_ms < 1:
            raise ValueError("window_ms must be >= 1")

        self._store = store
        self._window_ms = window_ms
        self._per_ip_max = per_ip_max
        self._per_user_max = per_user_max
        self._per_endpoint_max = per_endpoint_max
        self._fail_open_remaining = fail_open_remaining
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        store: AbstractCounterStore,
        rate_limit: RateLimitSettings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> "SlidingWindowLimiter":
        return cls(
            store,
            window_ms=rate_limit.window_ms,
            per_ip_max=rate_limit.per_ip_max,
            per_user_max=rate_limit.per_user_max,
            per_endpoint_max=rate_limit.per_endpoint_max,
            fail_open_remaining=rate_limit.fail_open_remaining,
            clock=clock,
        )

    @property
    def window_ms(self) -> int:
        return self._window_ms

    @property
    def per_ip_max(self) -> int:
        return self._per_ip_max

    @property
    def per_user_max(self) -> int:
        return self._per_user_max

    @property
    def per_endpoint_max(self) -> int:
        return self._per_endpoint_max

    def _now_ms(self) -> int:
        return round(self._clock() * 1000)

    async def check(
        self,
        scope: RateScope,
        identifier: str,
        max_requests: int,
        window_ms: int | None = None,
    ) -> RateLimitResult:
        """Check and consume one slot for ``identifier`` in ``scope``.

        Args:
            scope: Dimension being limited.
            identifier: IP, user id, or endpoint-qualified identifier.
            max_requests: Allowed requests per window; 0 always denies.
            window_ms: Window width; defaults to the configured window.

        Returns:
            RateLimitResult with the decision and header metadata.

        Raises:
            ValueError: If identifier is empty.
        """
        if not identifier:
            raise ValueError("identifier must be a non-empty string")

        window = window_ms or self._window_ms
        now = self._now_ms()

        if max_requests <= 0:
            return RateLimitResult(
                allowed=False, limit=0, remaining=0, reset_time=now + window, current=0
            )

        key = build_rate_key(scope, identifier)
        try:
            snapshot = await self._store.consume_window(
                key,
                now_ms=now,
                window_ms=window,
                limit=max_requests,
                member=f"{now}-{uuid.uuid4().hex}",
            )
        except StoreUnavailableError as exc:
            logger.warning(
                "rate_limit.fail_open",
                extra={
                    "scope": scope.value,
                    "key_hash": hash_identity(identifier),
                    "error_code": exc.code,
                },
            )
            return RateLimitResult(
                allowed=True,
                limit=max_requests,
                remaining=self._fail_open_remaining,
                reset_time=now + window,
                current=0,
                fail_open=True,
            )

        if not snapshot.admitted:
            oldest = snapshot.oldest_ms if snapshot.oldest_ms is not None else now
            logger.info(
                "rate_limit.exceeded",
                extra={
                    "scope": scope.value,
                    "key_hash": hash_identity(identifier),
                    "limit": max_requests,
                    "current": snapshot.count,
                    "window_ms": window,
                },
            )
            return RateLimitResult(
                allowed=False,
                limit=max_requests,
                remaining=0,
                reset_time=oldest + window,
                current=snapshot.count,
            )

        return RateLimitResult(
            allowed=True,
            limit=max_requests,
            remaining=max(0, max_requests - snapshot.count - 1),
            reset_time=now + window,
            current=snapshot.count + 1,
        )

    async def check_ip(self, ip: str) -> RateLimitResult:
        return await self.check(RateScope.IP, ip, self._per_ip_max)

    async def check_user(self, user_id: str) -> RateLimitResult:
        return await self.check(RateScope.USER, user_id, self._per_user_max)

    async def check_endpoint(
        self,
        endpoint: str,
        identifier: str = "global",
        max_requests: int | None = None,
    ) -> RateLimitResult:
        """Check the per-route limit keyed by ``endpoint`` and caller identifier."""

        limit = self._per_endpoint_max if max_requests is None else max_requests
        return await self.check(RateScope.ENDPOINT, f"{endpoint}:{identifier}", limit)

    async def record_violation(self, identifier: str, entity_type: str, reason: str) -> int:
        """Record a rate limit violation and return violations in the last hour.

        Returns 0 when the counter store is unavailable.
        """
        now = self._now_ms()
        window_start = now - VIOLATION_WINDOW_MS
        key = build_violation_key(entity_type, identifier)

        try:
            await self._store.add(key, now, f"{now}-{reason}-{uuid.uuid4().hex}")
            await self._store.expire(key, VIOLATION_WINDOW_MS)
            await self._store.remove_range_by_score(key, 0, window_start - 1)
            return len(await self._store.range_by_score(key, window_start, now))
        except StoreUnavailableError as exc:
            logger.warning(
                "violation.record_failed",
                extra={
                    "entity_type": entity_type,
                    "key_hash": hash_identity(identifier),
                    "error_code": exc.code,
                },
            )
            return 0

    async def get_violation_count(self, identifier: str, entity_type: str) -> int:
        """Return violations recorded for an identity in the last hour (0 on failure)."""

        now = self._now_ms()
        key = build_violation_key(entity_type, identifier)
        try:
            return len(await self._store.range_by_score(key, now - VIOLATION_WINDOW_MS, now))
        except StoreUnavailableError as exc:
            logger.warning(
                "violation.count_failed",
                extra={
                    "entity_type": entity_type,
                    "key_hash": hash_identity(identifier),
                    "error_code": exc.code,
                },
            )
            return 0
