"""Progressive abuse blocking over a two-tier block store.

States per identity::

    CLEAR -> BLOCKED(temporary, unblock_at) -> CLEAR   (expiry or unblock)
    CLEAR -> BLOCKED(permanent)                        (explicit block() only)

Read path for ``is_blocked``:

1. Accelerator: the ``blocked:{type}:{value}`` flag in the counter store.
2. Authoritative: the block store, queried for ``is_permanent OR
   unblock_at > now``. A hit repopulates the accelerator.

Staleness bound: the accelerator TTL is ``min(remaining block time,
block_cache_ttl)``, so a cached flag never outlives ``unblock_at`` and a
permanent block is re-read from the store at least every
``block_cache_ttl`` seconds. ``unblock`` deletes the flag together with the
record.

Both tiers fail open: a lookup that cannot reach either store reports
"not blocked", since blocking is a defense-in-depth layer and not the primary
admission gate.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from gatekeeper.adapters.block_store.base import AbstractBlockStore
from gatekeeper.adapters.counter_store.base import AbstractCounterStore
from gatekeeper.core.config import AbuseSettings
from gatekeeper.core.errors import StoreUnavailableError, ValidationAppError
from gatekeeper.core.logging import hash_identity
from gatekeeper.schemas.blocks import ENTITY_TYPES, BlockInfo, BlockPage, BlockRecord

logger = logging.getLogger(__name__)

BLOCKED_FLAG = "true"
MAX_PAGE_SIZE = 500


@dataclass(frozen=True)
class ViolationOutcome:
    """Result of applying the escalation rule to a violation count."""

    blocked: bool
    violations: int
    duration_minutes: int | None = None


def build_block_cache_key(entity_type: str, entity_value: str) -> str:
    return f"blocked:{entity_type}:{entity_value}"


def _validate_identity(entity_value: str, entity_type: str) -> None:
    if not entity_value or not isinstance(entity_value, str):
        raise ValidationAppError(
            code="invalid_entity_value",
            message="Entity value is required",
            details={"field": "entity_value"},
        )
    if entity_type not in ENTITY_TYPES:
        raise ValidationAppError(
            code="invalid_entity_type",
            message=f"Invalid entity type {entity_type!r}; expected one of {list(ENTITY_TYPES)}",
            details={"field": "entity_type"},
        )


class AbusePreventionService:
    """Owns block/unblock transitions and violation escalation."""

    def __init__(
        self,
        block_store: AbstractBlockStore,
        cache: AbstractCounterStore,
        *,
        threshold: int,
        block_duration_minutes: int,
        progressive_block_duration_minutes: int,
        block_cache_ttl_seconds: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = block_store
        self._cache = cache
        self._threshold = threshold
        self._block_duration = block_duration_minutes
        self._progressive_duration = progressive_block_duration_minutes
        self._cache_ttl_ms = block_cache_ttl_seconds * 1000
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        block_store: AbstractBlockStore,
        cache: AbstractCounterStore,
        abuse: AbuseSettings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> "AbusePreventionService":
        return cls(
            block_store,
            cache,
            threshold=abuse.threshold,
            block_duration_minutes=abuse.block_duration_minutes,
            progressive_block_duration_minutes=abuse.progressive_block_duration_minutes,
            block_cache_ttl_seconds=abuse.block_cache_ttl_seconds,
            clock=clock,
        )

    def _now(self) -> datetime:
        # Millisecond precision matches what the document store keeps.
        now_ms = round(self._clock() * 1000)
        return datetime.fromtimestamp(now_ms / 1000, tz=timezone.utc)

    def _cache_ttl_ms_for(self, record: BlockRecord, now: datetime) -> int:
        if record.is_permanent or record.unblock_at is None:
            return self._cache_ttl_ms
        # Keys stay readable at their expiry instant, so the flag must lapse
        # one millisecond before unblock_at
        remaining_ms = int((record.unblock_at - now).total_seconds() * 1000) - 1
        return min(remaining_ms, self._cache_ttl_ms)

    async def _cache_block(self, record: BlockRecord, now: datetime) -> None:
        ttl_ms = self._cache_ttl_ms_for(record, now)
        key = build_block_cache_key(record.entity_type, record.entity_value)
        try:
            if ttl_ms > 0:
                await self._cache.set_with_expiry(key, BLOCKED_FLAG, ttl_ms)
            else:
                await self._cache.delete(key)
        except StoreUnavailableError as exc:
            logger.warning(
                "block_cache.write_failed",
                extra={"entity_type": record.entity_type, "error_code": exc.code},
            )

    async def is_blocked(self, entity_value: str, entity_type: str) -> bool:
        """Return whether an identity is currently blocked (fails open)."""

        key = build_block_cache_key(entity_type, entity_value)
        try:
            if await self._cache.get(key) == BLOCKED_FLAG:
                return True
        except StoreUnavailableError as exc:
            logger.warning(
                "block_cache.read_failed",
                extra={"entity_type": entity_type, "error_code": exc.code},
            )

        now = self._now()
        try:
            record = await self._store.find_active(entity_type, entity_value, now)
        except StoreUnavailableError as exc:
            logger.warning(
                "block_check.fail_open",
                extra={
                    "entity_type": entity_type,
                    "key_hash": hash_identity(entity_value),
                    "error_code": exc.code,
                },
            )
            return False

        if record is None:
            return False

        await self._cache_block(record, now)
        return True

    async def block(
        self,
        entity_value: str,
        entity_type: str,
        reason: str,
        duration_minutes: int | None = None,
        blocked_by: str | None = None,
    ) -> BlockRecord:
        """Create or replace the block for an identity.

        Args:
            entity_value: User id or IP address.
            entity_type: ``user`` or ``ip``.
            reason: Human-readable reason stored with the record.
            duration_minutes: Block length; None makes the block permanent.
            blocked_by: Administrator identity, if any.

        Returns:
            The stored BlockRecord.

        Raises:
            ValidationAppError: If the identity or duration is malformed.
            StoreUnavailableError: If the block store cannot be written.
        """
        _validate_identity(entity_value, entity_type)
        if duration_minutes is not None and (
            isinstance(duration_minutes, bool)
            or not isinstance(duration_minutes, int)
            or duration_minutes < 1
        ):
            raise ValidationAppError(
                code="invalid_block_duration",
                message="Duration must be a positive integer number of minutes",
                details={"field": "duration_minutes"},
            )

        now = self._now()
        record = BlockRecord(
            entity_type=entity_type,
            entity_value=entity_value,
            reason=reason or "Admin action",
            blocked_at=now,
            unblock_at=None if duration_minutes is None else now + timedelta(minutes=duration_minutes),
            is_permanent=duration_minutes is None,
            blocked_by=blocked_by,
        )
        stored = await self._store.upsert(record)
        await self._cache_block(stored, now)

        logger.warning(
            "abuse.blocked",
            extra={
                "entity_type": entity_type,
                "key_hash": hash_identity(entity_value),
                "duration_minutes": duration_minutes,
                "is_permanent": stored.is_permanent,
                "reason": stored.reason,
            },
        )
        return stored

    async def unblock(self, entity_value: str, entity_type: str) -> bool:
        """Remove the block and its cached flag; return whether a record existed.

        Raises:
            ValidationAppError: If the identity is malformed.
            StoreUnavailableError: If the block store cannot be written.
        """
        _validate_identity(entity_value, entity_type)

        existed = await self._store.delete(entity_type, entity_value)
        try:
            await self._cache.delete(build_block_cache_key(entity_type, entity_value))
        except StoreUnavailableError as exc:
            logger.warning(
                "block_cache.delete_failed",
                extra={"entity_type": entity_type, "error_code": exc.code},
            )

        if existed:
            logger.info(
                "abuse.unblocked",
                extra={"entity_type": entity_type, "key_hash": hash_identity(entity_value)},
            )
        return existed

    async def handle_violation(
        self,
        entity_value: str,
        entity_type: str,
        reason: str,
        violation_count: int,
        blocked_by: str | None = None,
    ) -> ViolationOutcome:
        """Apply progressive blocking for an identity's recent violations.

        At ``threshold`` violations the identity is blocked for the base
        duration; at twice the threshold for the progressive duration. Below
        the threshold nothing happens.
        """
        if violation_count < self._threshold:
            return ViolationOutcome(blocked=False, violations=violation_count)

        duration = (
            self._progressive_duration
            if violation_count >= self._threshold * 2
            else self._block_duration
        )
        try:
            await self.block(entity_value, entity_type, reason, duration, blocked_by)
        except StoreUnavailableError as exc:
            logger.error(
                "abuse.block_failed",
                extra={
                    "entity_type": entity_type,
                    "key_hash": hash_identity(entity_value),
                    "violations": violation_count,
                    "error_code": exc.code,
                },
            )
            return ViolationOutcome(blocked=False, violations=violation_count)

        return ViolationOutcome(
            blocked=True, violations=violation_count, duration_minutes=duration
        )

    async def get_block_info(self, entity_value: str, entity_type: str) -> BlockInfo:
        """Return the current block straight from the authoritative store.

        Raises:
            StoreUnavailableError: If the block store cannot be read.
        """
        record = await self._store.find_active(entity_type, entity_value, self._now())
        return BlockInfo.from_record(record)

    async def list_blocked(self, limit: int = 50, skip: int = 0) -> BlockPage:
        """Return active blocks, newest first."""

        limit = max(1, min(limit, MAX_PAGE_SIZE))
        skip = max(0, skip)
        entities, total = await self._store.list_active(self._now(), limit=limit, skip=skip)
        return BlockPage(entities=entities, total=total, limit=limit, skip=skip)

    async def clear_expired_blocks(self) -> int:
        """Delete temporary blocks whose ``unblock_at`` has passed."""

        removed = await self._store.delete_expired(self._now())
        if removed:
            logger.info("abuse.expired_blocks_cleared", extra={"count": removed})
        return removed
