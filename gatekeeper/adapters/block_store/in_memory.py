"""In-memory block store keyed by identity (per-process, thread-safe)."""

from __future__ import annotations

import threading
from datetime import datetime

from gatekeeper.adapters.block_store.base import AbstractBlockStore
from gatekeeper.schemas.blocks import BlockRecord


class InMemoryBlockStore(AbstractBlockStore):
    """Dictionary of block records with one entry per ``(entity_type, entity_value)``."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._records: dict[tuple[str, str], BlockRecord] = {}

    async def find_active(
        self, entity_type: str, entity_value: str, now: datetime
    ) -> BlockRecord | None:
        with self._lock:
            record = self._records.get((entity_type, entity_value))
        if record is not None and record.is_active(now):
            return record
        return None

    async def upsert(self, record: BlockRecord) -> BlockRecord:
        with self._lock:
            self._records[(record.entity_type, record.entity_value)] = record
        return record

    async def delete(self, entity_type: str, entity_value: str) -> bool:
        with self._lock:
            return self._records.pop((entity_type, entity_value), None) is not None

    async def delete_expired(self, now: datetime) -> int:
        with self._lock:
            expired = [
                key
                for key, record in self._records.items()
                if not record.is_permanent
                and record.unblock_at is not None
                and record.unblock_at < now
            ]
            for key in expired:
                del self._records[key]
            return len(expired)

    async def list_active(
        self, now: datetime, *, limit: int, skip: int
    ) -> tuple[list[BlockRecord], int]:
        with self._lock:
            active = [record for record in self._records.values() if record.is_active(now)]
        active.sort(key=lambda record: record.blocked_at, reverse=True)
        return active[skip : skip + limit], len(active)
