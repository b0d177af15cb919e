"""
Main entry point for the abuse guard service.

Builds the counter stores and the three gates, and serves the admin/status API.
"""

import asyncio
import logging
import signal
import sys
import time
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager, suppress
from typing import Any

import redis.asyncio as redis
import structlog
import uvicorn
from fastapi import FastAPI

from .api.endpoints import router as abuse_router
from .api.error_handlers import register_exception_handlers
from .config import ServiceConfig, get_config
from .gatekeeper import AbuseGatekeeper
from .penalties.manager import PenaltyManager
from .rate_limiting.job_policy import JobTriggerPolicy
from .security.activity_monitor import ActivityMonitor
from .storage.base import CounterStore
from .storage.failover import FailoverCounterStore
from .storage.memory_store import MemoryCounterStore
from .storage.redis_store import RedisCounterStore

VERSION = "0.1.0"


# Configure structured logging
def setup_logging(config: ServiceConfig | None = None) -> None:
    """Configure structured logging for the service."""
    config = config or get_config()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, config.log_level.upper()),
    )


def create_redis_client(config: ServiceConfig) -> redis.Redis:
    """Create the async Redis client from configuration."""
    options: dict[str, Any] = {
        "decode_responses": True,
        "socket_timeout": config.redis.socket_timeout_seconds,
        "socket_connect_timeout": config.redis.socket_connect_timeout_seconds,
    }
    if config.redis.url:
        return redis.Redis.from_url(config.redis.url, **options)
    return redis.Redis(
        host=config.redis.host,
        port=config.redis.port,
        db=config.redis.db,
        password=config.redis.password,
        **options,
    )


def build_gatekeeper(
    config: ServiceConfig,
    redis_client: redis.Redis | None = None,
    clock: Callable[[], float] = time.time,
) -> AbuseGatekeeper:
    """Compose the stores and gates.

    Without a Redis client the in-process store serves every call.

    Args:
        config: Service configuration
        redis_client: Shared Redis client, if any
        clock: Source of epoch seconds passed to every component

    Returns:
        A ready gatekeeper
    """
    fallback = MemoryCounterStore(clock=clock)
    store: CounterStore = fallback
    if redis_client is not None:
        primary = RedisCounterStore(
            redis_client,
            key_prefix=config.redis.key_prefix,
            operation_timeout=config.redis.operation_timeout_seconds,
            retry_interval=config.redis.retry_interval_seconds,
            clock=clock,
        )
        store = FailoverCounterStore(primary, fallback)

    return AbuseGatekeeper(
        store=store,
        job_policy=JobTriggerPolicy(store, job_configs=config.job_types, clock=clock),
        penalties=PenaltyManager(store, config.penalties, clock=clock),
        activity=ActivityMonitor(store, config.activity, clock=clock),
        config=config.gate,
        clock=clock,
    )


class AppContext:
    """Application context manager for lifecycle components."""

    def __init__(self, config: ServiceConfig) -> None:
        self.config = config
        self.redis_client: redis.Redis | None = None
        self.gatekeeper: AbuseGatekeeper | None = None
        self.maintenance_task: asyncio.Task | None = None

    async def startup(self) -> AbuseGatekeeper:
        """Initialize application components."""
        logger = structlog.get_logger(__name__)
        logger.info("Starting abuse guard service", version=VERSION)

        if self.config.redis.enabled:
            self.redis_client = create_redis_client(self.config)

        self.gatekeeper = build_gatekeeper(self.config, self.redis_client)
        storage = await self.gatekeeper.store.health_check()
        logger.info("Abuse gatekeeper initialized", storage=storage)

        self.maintenance_task = asyncio.create_task(self._maintenance_loop())
        return self.gatekeeper

    async def _maintenance_loop(self) -> None:
        """Reclaim memory held by expired entries; correctness does not depend on it."""
        logger = structlog.get_logger(__name__)
        while True:
            await asyncio.sleep(self.config.gate.maintenance_interval_seconds)
            if self.gatekeeper is None:
                continue
            try:
                await self.gatekeeper.penalties.cleanup_expired()
                self.gatekeeper.activity.cleanup_expired()
                store = self.gatekeeper.store
                fallback = store.fallback if isinstance(store, FailoverCounterStore) else store
                if isinstance(fallback, MemoryCounterStore):
                    fallback.purge_expired()
            except Exception as e:
                logger.error("Maintenance pass failed", error=str(e))

    async def shutdown(self) -> None:
        """Clean up application components."""
        logger = structlog.get_logger(__name__)
        logger.info("Shutting down abuse guard service")

        if self.maintenance_task and not self.maintenance_task.done():
            self.maintenance_task.cancel()
            with suppress(asyncio.CancelledError):
                await self.maintenance_task

        if self.gatekeeper:
            await self.gatekeeper.store.close()

        logger.info("Abuse guard service shutdown complete")


def create_app(config: ServiceConfig | None = None, gatekeeper: AbuseGatekeeper | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Service configuration; read from the environment when omitted
        gatekeeper: Prebuilt gatekeeper; when given, startup builds nothing

    Returns:
        The application
    """
    config = config or get_config()
    context = AppContext(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        """Manage application lifespan events."""
        if gatekeeper is not None:
            yield
            return
        app.state.gatekeeper = await context.startup()
        try:
            yield
        finally:
            await context.shutdown()

    app = FastAPI(
        title="Abuse Guard Service",
        description="Rate limiting, penalty escalation and activity monitoring for job triggers",
        version=VERSION,
        lifespan=lifespan,
        docs_url="/docs" if config.api.docs_enabled else None,
        redoc_url="/redoc" if config.api.docs_enabled else None,
    )
    if gatekeeper is not None:
        app.state.gatekeeper = gatekeeper

    register_exception_handlers(app)
    app.include_router(abuse_router, prefix=config.api.api_prefix)

    # Health check endpoint
    @app.get("/health")
    async def health_check() -> dict[str, Any]:
        """Health check endpoint."""
        current = getattr(app.state, "gatekeeper", None)
        if current is None:
            return {"status": "starting", "service": "abuse_guard", "version": VERSION}
        return {"service": "abuse_guard", "version": VERSION, **(await current.health_check())}

    return app


def handle_shutdown(signum: int, frame: Any) -> None:
    """Handle shutdown signals gracefully."""
    logger = structlog.get_logger(__name__)
    logger.info("Received shutdown signal", signal=signum)

    # The lifespan manager will handle cleanup
    sys.exit(0)


async def main() -> None:
    """Main async entry point."""
    config = get_config()
    setup_logging(config)

    # Validate configuration
    errors = config.validate()
    if errors:
        logger = structlog.get_logger(__name__)
        logger.error("Configuration validation failed", errors=errors)
        sys.exit(1)

    # Set up signal handlers
    signal.signal(signal.SIGINT, handle_shutdown)
    signal.signal(signal.SIGTERM, handle_shutdown)

    app = create_app(config)

    uvicorn_config = uvicorn.Config(
        app,
        host=config.api.host,
        port=config.api.port,
        log_level=config.api.log_level,
    )

    server = uvicorn.Server(uvicorn_config)
    await server.serve()


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
