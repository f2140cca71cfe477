"""Factory functions for the storage adapters.

Routes configuration to a concrete backend. When a backend is disabled the
in-memory equivalent is returned so the engine runs unchanged in local
development and tests.
"""

from __future__ import annotations

import logging

from gatekeeper.adapters.block_store.base import AbstractBlockStore
from gatekeeper.adapters.block_store.in_memory import InMemoryBlockStore
from gatekeeper.adapters.counter_store.base import AbstractCounterStore
from gatekeeper.adapters.counter_store.in_memory import InMemoryCounterStore
from gatekeeper.core.config import Settings

logger = logging.getLogger(__name__)


def create_counter_store(settings: Settings) -> AbstractCounterStore:
    """Instantiate the fast counter store selected by ``REDIS_ENABLED``."""

    if not settings.redis.enabled:
        logger.warning("counter_store.in_memory", extra={"reason": "redis_disabled"})
        return InMemoryCounterStore()

    from gatekeeper.adapters.counter_store.redis_store import RedisCounterStore

    return RedisCounterStore.from_settings(settings.redis)


def create_block_store(settings: Settings) -> AbstractBlockStore:
    """Instantiate the durable block store selected by ``MONGO_ENABLED``."""

    if not settings.mongo.enabled:
        logger.warning("block_store.in_memory", extra={"reason": "mongo_disabled"})
        return InMemoryBlockStore()

    from gatekeeper.adapters.block_store.mongo import MongoBlockStore

    return MongoBlockStore.from_settings(settings.mongo)
