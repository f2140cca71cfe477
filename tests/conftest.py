"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
It ensures that the TESTING environment variable is set to prevent
loading the .env file during tests, and that no test ever needs a running
Redis or MongoDB.
"""

import os

# CRITICAL: Set this before any imports that might load settings
# This prevents Pydantic from loading the .env file in tests
os.environ["TESTING"] = "true"

# Set default env vars that all tests might need
os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("MONGO_ENABLED", "false")
os.environ.setdefault("AUTH_JWT_SECRET", "test-secret-with-at-least-32-bytes!!")
os.environ.setdefault("ABUSE_SWEEP_INTERVAL_SECONDS", "0")

import pytest

from gatekeeper.adapters.audit.base import AbstractAuditSink, AuditEvent
from gatekeeper.adapters.block_store.in_memory import InMemoryBlockStore
from gatekeeper.adapters.counter_store.in_memory import InMemoryCounterStore
from gatekeeper.services.abuse_prevention import AbusePreventionService
from gatekeeper.services.access_lists import AccessListEvaluator
from gatekeeper.services.admission import AdmissionController
from gatekeeper.services.sliding_window import SlidingWindowLimiter

JWT_SECRET = os.environ["AUTH_JWT_SECRET"]

# Whole seconds so millisecond arithmetic stays exact in float
START_TIME = 1_700_000_000.0


class FakeClock:
    """Manually advanced time source returning UNIX seconds."""

    def __init__(self, start: float = START_TIME) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingAuditSink(AbstractAuditSink):
    """Keeps audit events in memory for assertions."""

    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    async def record(self, event: AuditEvent) -> None:
        self.events.append(event)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def counter_store(clock: FakeClock) -> InMemoryCounterStore:
    return InMemoryCounterStore(clock=clock)


@pytest.fixture
def block_store() -> InMemoryBlockStore:
    return InMemoryBlockStore()


@pytest.fixture
def limiter(counter_store: InMemoryCounterStore, clock: FakeClock) -> SlidingWindowLimiter:
    return SlidingWindowLimiter(
        counter_store,
        window_ms=60_000,
        per_ip_max=5,
        per_user_max=3,
        per_endpoint_max=2,
        clock=clock,
    )


@pytest.fixture
def abuse(
    block_store: InMemoryBlockStore,
    counter_store: InMemoryCounterStore,
    clock: FakeClock,
) -> AbusePreventionService:
    return AbusePreventionService(
        block_store,
        counter_store,
        threshold=5,
        block_duration_minutes=5,
        progressive_block_duration_minutes=15,
        block_cache_ttl_seconds=300,
        clock=clock,
    )


@pytest.fixture
def evaluator() -> AccessListEvaluator:
    return AccessListEvaluator(
        internal_ips=["127.0.0.1", "10.0.0.0/8"],
        admin_ips=["192.168.1.100"],
        blacklist_ips=["203.0.113.0/24", "198.51.100.7"],
        admin_role="admin",
    )


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def controller(
    evaluator: AccessListEvaluator,
    limiter: SlidingWindowLimiter,
    abuse: AbusePreventionService,
    audit_sink: RecordingAuditSink,
    clock: FakeClock,
) -> AdmissionController:
    return AdmissionController(
        evaluator=evaluator,
        limiter=limiter,
        abuse=abuse,
        audit_sink=audit_sink,
        permanent_block_retry_after_seconds=300,
        clock=clock,
    )
