"""Counter store interfaces.

Services should depend on this abstraction (not the concrete implementation)
so the shared store can be swapped (Redis in production, in-memory in tests)
without touching the admission logic.

Every method may raise ``StoreUnavailableError``; callers decide how to
degrade.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class WindowSnapshot:
    """Outcome of one atomic sliding-window consume step.

    Attributes:
        admitted: Whether a new entry was inserted for this request.
        count: Entries inside the window before this request.
        oldest_ms: Score of the oldest retained entry (None when empty).
    """

    admitted: bool
    count: int
    oldest_ms: int | None


class AbstractCounterStore(ABC):
    """Interface for the shared, low-latency ordered key-value store."""

    @abstractmethod
    async def add(self, key: str, score: int, member: str) -> None:
        """Add ``member`` with ``score`` to the ordered set at ``key``."""
        raise NotImplementedError

    @abstractmethod
    async def range_by_score(self, key: str, min_score: int, max_score: int) -> list[int]:
        """Return scores of members with ``min_score <= score <= max_score``, ascending."""
        raise NotImplementedError

    @abstractmethod
    async def remove_range_by_score(self, key: str, min_score: int, max_score: int) -> int:
        """Remove members with ``min_score <= score <= max_score``; return how many."""
        raise NotImplementedError

    @abstractmethod
    async def expire(self, key: str, ttl_ms: int) -> None:
        """Set or refresh the expiry of ``key``."""
        raise NotImplementedError

    @abstractmethod
    async def set_with_expiry(self, key: str, value: str, ttl_ms: int) -> None:
        """Store a plain string value that disappears after ``ttl_ms``."""
        raise NotImplementedError

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the plain string value at ``key`` or None."""
        raise NotImplementedError

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete ``key``; return whether it existed."""
        raise NotImplementedError

    @abstractmethod
    async def consume_window(
        self,
        key: str,
        *,
        now_ms: int,
        window_ms: int,
        limit: int,
        member: str,
    ) -> WindowSnapshot:
        """Purge, count and conditionally insert as a single atomic step.

        Entries scored below ``now_ms - window_ms`` are purged. If fewer than
        ``limit`` entries remain in ``[now_ms - window_ms, now_ms]``, ``member``
        is inserted at ``now_ms`` and the key expiry is refreshed to
        ``window_ms``.
        """
        raise NotImplementedError

    async def ping(self) -> bool:
        """Return whether the backend is reachable."""
        return True

    async def close(self) -> None:
        """Release network resources, if any."""
        return None
