"""
Ops HTTP surface: health and queue inspection for the sync engine.
"""
from contextlib import asynccontextmanager
import logging

from fastapi import Depends, FastAPI, Request, status
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from .core.cache import CacheGateway
from .core.config import settings
from .core.database import close_db, init_db
from .core.observability import configure_logging, init_sentry
from .core.redis import close_redis, init_redis
from .jobs.queue import BatchQueue
from .services.store import AttemptStore

configure_logging(settings)
logger = logging.getLogger(__name__)

init_sentry(settings, integrations=[FastApiIntegration(transaction_style="endpoint"), SqlalchemyIntegration()])


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    """
    logger.info(f"Starting {settings.APP_NAME} ops API...")
    client = await init_redis(settings)
    session_factory = await init_db(settings)
    app.state.gateway = CacheGateway.from_settings(client, settings)
    app.state.queue = BatchQueue.from_settings(app.state.gateway, settings)
    app.state.store = AttemptStore(session_factory)

    yield

    logger.info(f"Shutting down {settings.APP_NAME} ops API...")
    await close_redis()
    await close_db()
    logger.info("Shutdown complete")


app = FastAPI(
    title=f"{settings.APP_NAME} Ops",
    version=settings.APP_VERSION,
    docs_url=None if settings.is_production() else "/docs",
    redoc_url=None,
    lifespan=lifespan,
)

if settings.PROMETHEUS_ENABLED:
    Instrumentator().instrument(app).expose(app, endpoint="/metrics")


def get_gateway(request: Request) -> CacheGateway:
    return request.app.state.gateway


def get_queue(request: Request) -> BatchQueue:
    return request.app.state.queue


def get_store(request: Request) -> AttemptStore:
    return request.app.state.store


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle general exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {
                "message": "An internal error occurred" if settings.is_production() else str(exc),
                "type": "internal_error",
            }
        },
    )


@app.get("/health", tags=["Health"])
async def health_check(
    gateway: CacheGateway = Depends(get_gateway),
    store: AttemptStore = Depends(get_store),
):
    """Cache and durable store reachability."""
    checks = {
        "redis": await gateway.ping(),
        "database": await store.ping(),
    }
    all_healthy = all(checks.values())
    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "healthy" if all_healthy else "degraded",
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "checks": checks,
        },
    )


@app.get("/v1/admin/queues", tags=["Admin"])
async def queue_lengths(queue: BatchQueue = Depends(get_queue)):
    """Length of every batch queue; null when the cache is unreachable."""
    lengths = await queue.lengths()
    return {
        "maxLength": queue.max_length,
        "queues": lengths,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "examsync.main:app",
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
        access_log=True,
    )
