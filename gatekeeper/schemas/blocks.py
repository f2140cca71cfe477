"""Block record models shared by the block store and abuse prevention."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

EntityType = Literal["user", "ip"]

ENTITY_TYPES: tuple[str, ...] = ("user", "ip")


class BlockRecord(BaseModel):
    """Authoritative block for one ``(entity_type, entity_value)`` identity.

    ``is_permanent`` implies ``unblock_at`` is None. Creating a new block for
    the same identity replaces the previous record.
    """

    entity_type: EntityType = Field(..., description="Kind of identity being blocked")
    entity_value: str = Field(..., min_length=1, description="User id or IP address")
    reason: str = Field(..., description="Why the block was applied")
    blocked_at: datetime = Field(..., description="When the block was applied (UTC)")
    unblock_at: datetime | None = Field(None, description="When a temporary block lapses (UTC)")
    is_permanent: bool = Field(False, description="Block never lapses on its own")
    blocked_by: str | None = Field(None, description="Administrator identity, if any")

    @model_validator(mode="after")
    def _permanent_has_no_expiry(self) -> "BlockRecord":
        if self.is_permanent and self.unblock_at is not None:
            raise ValueError("permanent blocks cannot have unblock_at")
        if not self.is_permanent and self.unblock_at is None:
            raise ValueError("temporary blocks require unblock_at")
        return self

    def is_active(self, now: datetime) -> bool:
        """Return whether the block still applies at ``now``."""

        return self.is_permanent or (self.unblock_at is not None and self.unblock_at > now)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump()

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> "BlockRecord":
        return cls.model_validate({k: v for k, v in document.items() if k != "_id"})


class BlockInfo(BaseModel):
    """Read-only projection of the current block for an identity."""

    is_blocked: bool
    blocked_at: datetime | None = None
    unblock_at: datetime | None = None
    reason: str | None = None
    is_permanent: bool | None = None

    @classmethod
    def from_record(cls, record: BlockRecord | None) -> "BlockInfo":
        if record is None:
            return cls(is_blocked=False)
        return cls(
            is_blocked=True,
            blocked_at=record.blocked_at,
            unblock_at=record.unblock_at,
            reason=record.reason,
            is_permanent=record.is_permanent,
        )


class BlockPage(BaseModel):
    """A page of active blocks, newest first."""

    entities: list[BlockRecord]
    total: int
    limit: int
    skip: int
