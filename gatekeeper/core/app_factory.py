from __future__ import annotations

"""Application factory for FastAPI app.

Centralizes app construction (metadata, middleware, handlers, routers) and
the wiring of the admission engine. Store clients are created here and
injected into each service; the lifespan owns their startup and shutdown.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

from fastapi import FastAPI

from gatekeeper.adapters.audit.base import AbstractAuditSink
from gatekeeper.adapters.audit.logging_sink import LoggingAuditSink
from gatekeeper.adapters.block_store.base import AbstractBlockStore
from gatekeeper.adapters.counter_store.base import AbstractCounterStore
from gatekeeper.adapters.factory import create_block_store, create_counter_store
from gatekeeper.api.routes import health_router, quota_router
from gatekeeper.core.auth import JWTTokenVerifier
from gatekeeper.core.config import Settings, settings as default_settings
from gatekeeper.core.errors import StoreUnavailableError
from gatekeeper.core.exception_handlers import setup_exception_handlers
from gatekeeper.core.logging import configure_logging
from gatekeeper.core.middleware import request_id_middleware
from gatekeeper.core.openapi import apply_openapi_customizations
from gatekeeper.services.abuse_prevention import AbusePreventionService
from gatekeeper.services.access_lists import AccessListEvaluator
from gatekeeper.services.admission import AdmissionController
from gatekeeper.services.sliding_window import SlidingWindowLimiter

logger = logging.getLogger(__name__)


async def sweep_expired_blocks(abuse: AbusePreventionService, interval_seconds: float) -> None:
    """Periodically delete temporary blocks that have run out.

    Runs until cancelled. Store failures are logged and retried on the next
    tick.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await abuse.clear_expired_blocks()
        except StoreUnavailableError as exc:
            logger.warning(
                "abuse.sweep_failed",
                extra={"error_code": exc.code, "error_message": exc.message},
            )


async def _ensure_indexes(block_store: AbstractBlockStore) -> None:
    ensure_indexes = getattr(block_store, "ensure_indexes", None)
    if ensure_indexes is None:
        return
    try:
        await ensure_indexes()
        logger.info("block_store.indexes_ready")
    except StoreUnavailableError as exc:
        logger.warning(
            "block_store.indexes_unavailable",
            extra={"error_code": exc.code, "error_message": exc.message},
        )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Start background work on startup and release clients on shutdown."""

    app_settings: Settings = app.state.settings
    await _ensure_indexes(app.state.block_store)

    sweeper: asyncio.Task[None] | None = None
    interval = app_settings.abuse.sweep_interval_seconds
    if interval > 0:
        sweeper = asyncio.create_task(sweep_expired_blocks(app.state.abuse, interval))

    logger.info(
        "app.started",
        extra={
            "app_env": app_settings.app_env,
            "redis_enabled": app_settings.redis.enabled,
            "mongo_enabled": app_settings.mongo.enabled,
            "sweep_interval_s": interval,
        },
    )
    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
        await app.state.admission.flush_audit()
        await app.state.counter_store.close()
        await app.state.block_store.close()
        logger.info("app.stopped")


def build_admission_engine(
    app: FastAPI,
    app_settings: Settings,
    *,
    counter_store: AbstractCounterStore,
    block_store: AbstractBlockStore,
    audit_sink: AbstractAuditSink,
    clock: Callable[[], float],
) -> AdmissionController:
    """Build the admission services and publish them on ``app.state``."""

    limiter = SlidingWindowLimiter.from_settings(
        counter_store, app_settings.rate_limit, clock=clock
    )
    abuse = AbusePreventionService.from_settings(
        block_store, counter_store, app_settings.abuse, clock=clock
    )
    controller = AdmissionController(
        evaluator=AccessListEvaluator.from_settings(app_settings.access_lists),
        limiter=limiter,
        abuse=abuse,
        audit_sink=audit_sink,
        permanent_block_retry_after_seconds=(
            app_settings.abuse.permanent_block_retry_after_seconds
        ),
        clock=clock,
    )

    app.state.settings = app_settings
    app.state.counter_store = counter_store
    app.state.block_store = block_store
    app.state.abuse = abuse
    app.state.admission = controller
    app.state.token_verifier = JWTTokenVerifier.from_settings(app_settings.auth)
    return controller


def create_app(
    app_settings: Settings | None = None,
    *,
    counter_store: AbstractCounterStore | None = None,
    block_store: AbstractBlockStore | None = None,
    audit_sink: AbstractAuditSink | None = None,
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        app_settings: Settings to use; defaults to the process-wide settings.
        counter_store: Counter store override (tests inject in-memory stores).
        block_store: Block store override.
        audit_sink: Audit sink override; defaults to the logging sink.
        clock: Time source in seconds shared by every service.

    Returns:
        Configured FastAPI app with middleware, handlers, routers and docs.
    """
    app_settings = app_settings or default_settings

    # Logging first so subsequent init logs are formatted as desired
    configure_logging(app_settings.log)

    app = FastAPI(
        title=app_settings.app.name,
        description=(
            "Admission control for HTTP APIs: sliding window rate limits per IP, "
            "user and endpoint, static allow/deny lists and progressive blocking "
            "of abusive callers. Denied requests receive 403 or 429 with "
            "X-RateLimit-* headers and a retryAfter hint."
        ),
        version="0.1.0",
        debug=app_settings.app.debug,
        lifespan=lifespan,
    )

    build_admission_engine(
        app,
        app_settings,
        counter_store=counter_store or create_counter_store(app_settings),
        block_store=block_store or create_block_store(app_settings),
        audit_sink=audit_sink or LoggingAuditSink(),
        clock=clock,
    )

    # Middleware
    app.middleware("http")(request_id_middleware)

    # Exception handlers
    setup_exception_handlers(app)

    # Routers
    app.include_router(quota_router, prefix="/v1")
    app.include_router(health_router)

    # OpenAPI customizations (security scheme, tags, exemptions)
    apply_openapi_customizations(app)

    return app
