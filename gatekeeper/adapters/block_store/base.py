"""Block store interface.

Records are keyed by ``(entity_type, entity_value)``: writes replace, they
never stack. Every method may raise ``StoreUnavailableError``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from gatekeeper.schemas.blocks import BlockRecord


class AbstractBlockStore(ABC):
    """Interface for the authoritative block record store."""

    @abstractmethod
    async def find_active(
        self, entity_type: str, entity_value: str, now: datetime
    ) -> BlockRecord | None:
        """Return the record if it is permanent or ``unblock_at > now``."""
        raise NotImplementedError

    @abstractmethod
    async def upsert(self, record: BlockRecord) -> BlockRecord:
        """Create or replace the record for the record's identity."""
        raise NotImplementedError

    @abstractmethod
    async def delete(self, entity_type: str, entity_value: str) -> bool:
        """Delete the record for an identity; return whether one existed."""
        raise NotImplementedError

    @abstractmethod
    async def delete_expired(self, now: datetime) -> int:
        """Delete temporary records with ``unblock_at < now``; return the count."""
        raise NotImplementedError

    @abstractmethod
    async def list_active(
        self, now: datetime, *, limit: int, skip: int
    ) -> tuple[list[BlockRecord], int]:
        """Return a page of active records (newest first) and the total count."""
        raise NotImplementedError

    async def ping(self) -> bool:
        """Return whether the backend is reachable."""
        return True

    async def close(self) -> None:
        """Release network resources, if any."""
        return None
