from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Request

from gatekeeper.adapters.block_store.base import AbstractBlockStore
from gatekeeper.adapters.block_store.in_memory import InMemoryBlockStore
from gatekeeper.adapters.counter_store.base import AbstractCounterStore
from gatekeeper.adapters.counter_store.in_memory import InMemoryCounterStore

router = APIRouter(tags=["Health"])

StoreStatus = Literal["connected", "unavailable", "in_memory"]


async def _store_status(
    store: AbstractCounterStore | AbstractBlockStore, in_memory_type: type
) -> StoreStatus:
    if isinstance(store, in_memory_type):
        return "in_memory"
    return "connected" if await store.ping() else "unavailable"


@router.get("/health")
async def health_check(request: Request) -> dict:
    """Health check endpoint.

    Reports liveness plus the status of both stores. The service keeps
    admitting traffic when a store is down, so ``status`` stays ``"ok"`` and
    degraded stores only show up under ``stores``.

    Returns:
        dict: ``status`` and per-store status (``connected``, ``unavailable``
            or ``in_memory``).
    """

    state = request.app.state
    return {
        "status": "ok",
        "stores": {
            "redis": await _store_status(state.counter_store, InMemoryCounterStore),
            "mongodb": await _store_status(state.block_store, InMemoryBlockStore),
        },
    }
