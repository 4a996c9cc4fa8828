import logging
from contextlib import asynccontextmanager

import asyncpg
from fastapi import FastAPI

from kiosk.api.routes import admin, events, metrics, ping, queue
from kiosk.core.config import Settings, get_settings
from kiosk.core.logging import configure_logging, init_tracer, shutdown_tracer
from kiosk.middleware import RBACMiddleware
from kiosk.queue import InMemoryQueueRepository, PostgresQueueRepository, QueueDispatcher, QueueRepository

logger = logging.getLogger(__name__)


async def build_repository(settings: Settings) -> tuple[QueueRepository, asyncpg.Pool | None]:
    """Return the configured repository and the pool backing it, if any."""

    if settings.storage_backend == "memory":
        if settings.catalog_path:
            return InMemoryQueueRepository.from_catalog_file(settings.catalog_path), None
        return InMemoryQueueRepository(), None

    pool = await asyncpg.create_pool(dsn=settings.postgres_dsn, min_size=1, max_size=5)
    return PostgresQueueRepository(pool), pool


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
    settings = get_settings()
    configure_logging(settings)
    provider = init_tracer(settings)

    pool = None
    app.state.dispatcher = None
    try:
        repository, pool = await build_repository(settings)
        app.state.dispatcher = await QueueDispatcher.bootstrap(repository, settings)
        logger.info("Queue service ready (%s backend)", settings.storage_backend)
    except (OSError, asyncpg.PostgresError, ValueError):
        logger.exception("Queue service failed to start; queue endpoints will answer 503")

    try:
        yield
    finally:
        if pool is not None:
            await pool.close()
        shutdown_tracer(provider)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.add_middleware(RBACMiddleware)
    app.include_router(ping.router)
    app.include_router(queue.router)
    app.include_router(admin.router)
    app.include_router(events.router)
    app.include_router(metrics.router)
    return app


app = create_app()
