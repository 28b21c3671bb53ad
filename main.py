"""
FastAPI application entrypoint.
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from api.routes import payments as payments_routes
from api.middleware import RequestIDMiddleware, LoggingMiddleware
from core.config import settings
from core.settings import payment_settings
from core.exceptions import register_exception_handlers
from core.response import success_response
from core.logging_config import get_logger, configure_logging
from infrastructure.database import AsyncSessionLocal, create_tables
from infrastructure.external.cache import (
    init_redis_client,
    shutdown_redis_client,
)
from infrastructure.external.payments import build_provider_registry
from infrastructure.idempotency import InMemoryIdempotencyStore, RedisIdempotencyStore
from infrastructure.repositories.order_status_repository import SQLAlchemyOrderStatusRepository
from infrastructure.repositories.payment_repository import (
    SQLAlchemyRefundRepository,
    SQLAlchemyTransactionLedger,
)


configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build long-lived payment collaborators and tear them down on exit."""
    # Development creates tables at startup; production runs `alembic upgrade head`
    if settings.DEBUG:
        await create_tables()
        logger.info("database_initialized", message="Database tables created (development)")
    else:
        logger.info(
            "database_migrations_required",
            message="No auto-create in production, use Alembic migrations (alembic upgrade head)"
        )

    if settings.redis.url:
        # Fail startup rather than run without a shared idempotency store
        cache = await init_redis_client()
        app.state.idempotency_store = RedisIdempotencyStore(cache)
        logger.info("idempotency_store_selected", backend="redis")
    else:
        app.state.idempotency_store = InMemoryIdempotencyStore()
        logger.warning(
            "idempotency_store_in_memory",
            message="REDIS__URL not set, idempotency is only guaranteed within this process",
        )

    app.state.transaction_ledger = SQLAlchemyTransactionLedger(AsyncSessionLocal)
    app.state.refund_repository = SQLAlchemyRefundRepository(AsyncSessionLocal)
    app.state.order_status = SQLAlchemyOrderStatusRepository(
        AsyncSessionLocal,
        table_name=payment_settings.orders.table_name,
    )
    app.state.provider_registry = build_provider_registry()

    yield

    await app.state.provider_registry.aclose()
    if settings.redis.url:
        await shutdown_redis_client()
        logger.info("redis_cache_shutdown", message="Redis cache shutdown")
    logger.info("application_shutdown", message="Application shutdown")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
    description="Payment orchestration for restaurant point-of-sale",
)

# Middleware runs bottom-up: RequestID first so logs carry request_id
app.add_middleware(LoggingMiddleware)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

app.include_router(payments_routes.router, prefix=settings.API_PREFIX)


@app.get("/", tags=["Root"])
async def root():
    return success_response(
        data={
            "name": settings.PROJECT_NAME,
            "version": settings.VERSION,
            "docs": "/docs",
            "redoc": "/redoc"
        },
    )


@app.get("/health", tags=["Health"])
async def health_check():
    return success_response(data={"status": "healthy"})


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info"
    )
