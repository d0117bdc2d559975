"""
FastAPI application entry point with health endpoints and service routing.

This module provides the application factory with CORS configuration, health
check endpoints, domain error handling and the v1 routers. The lifespan
builds the document store, the optional change publisher and the order
service, and runs the periodic backorder auto-merge sweep.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from stock_transfer.api.v1 import backorders_router, orders_router, reconciliation_router
from stock_transfer.cache.redis_client import (
    ChannelKeyManager,
    close_redis_client,
    get_redis_client,
)
from stock_transfer.core.config import Settings, get_settings
from stock_transfer.core.exceptions import (
    InvalidTransition,
    MissingPrerequisite,
    NotAuthorized,
    NotFound,
    OrderValidationError,
    TransferError,
)
from stock_transfer.core.logging import (
    clear_context,
    configure_logging,
    get_logger,
    get_request_id,
    log_performance,
    set_request_id,
)
from stock_transfer.database.connection import (
    check_database_health,
    close_database_connections,
    get_session_factory,
    initialize_database,
)
from stock_transfer.database.store import (
    DocumentStore,
    InMemoryDocumentStore,
    SqlDocumentStore,
)
from stock_transfer.services.backorders.service import BackorderQueueManager
from stock_transfer.services.notifications.publisher import (
    ChangePublisher,
    RedisChangePublisher,
)
from stock_transfer.services.orders.service import OrderService

# Configure logging before application initialization
configure_logging()
logger = get_logger(__name__)

ERROR_STATUS_CODES: dict[type[TransferError], int] = {
    NotFound: status.HTTP_404_NOT_FOUND,
    NotAuthorized: status.HTTP_403_FORBIDDEN,
    InvalidTransition: status.HTTP_409_CONFLICT,
    MissingPrerequisite: status.HTTP_409_CONFLICT,
    OrderValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
}


async def run_auto_merge_loop(manager: BackorderQueueManager, interval_seconds: int) -> None:
    """
    Background task merging eligible backorder items into draft orders.

    Runs every ``interval_seconds`` for every site with an active queue.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            with log_performance(logger, "backorder_auto_merge_sweep"):
                await manager.run_auto_merge_sweep()
        except Exception as e:
            logger.error(
                "Backorder auto-merge sweep failed",
                error=str(e),
                error_type=type(e).__name__,
            )


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[DocumentStore] = None,
    publisher: Optional[ChangePublisher] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Application settings (defaults to the cached settings)
        store: Document store to use instead of the configured backend
        publisher: Change publisher to use instead of the configured one

    Returns:
        Configured FastAPI application
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """
        Application lifespan context manager for startup and shutdown events.

        Yields:
            None during application runtime
        """
        logger.info(
            "Application starting",
            environment=settings.environment,
            debug=settings.debug,
            version=settings.app_version,
            storage_backend=settings.storage_backend,
        )

        uses_database = False
        uses_redis = False
        with log_performance(logger, "application_startup"):
            document_store = store
            if document_store is None and settings.storage_backend == "memory":
                document_store = InMemoryDocumentStore()
            elif document_store is None:
                await initialize_database(create_tables=settings.uses_sqlite)
                document_store = SqlDocumentStore(get_session_factory())
                uses_database = True

            change_publisher = publisher
            if change_publisher is None and settings.change_notifications_enabled:
                change_publisher = RedisChangePublisher(
                    await get_redis_client(),
                    ChannelKeyManager(settings.change_channel_prefix),
                )
                uses_redis = True

            service = OrderService(document_store, change_publisher, settings)
            app.state.order_service = service
            app.state.uses_database = uses_database
            app.state.uses_redis = uses_redis
            logger.info("Resources initialized successfully")

        auto_merge_task = None
        if settings.backorder_auto_merge_interval_seconds > 0:
            auto_merge_task = asyncio.create_task(
                run_auto_merge_loop(
                    service.backorders, settings.backorder_auto_merge_interval_seconds
                )
            )
            logger.info(
                "Backorder auto-merge task started",
                interval_seconds=settings.backorder_auto_merge_interval_seconds,
            )

        yield

        logger.info("Application shutting down")
        with log_performance(logger, "application_shutdown"):
            if auto_merge_task is not None:
                auto_merge_task.cancel()
                try:
                    await auto_merge_task
                except asyncio.CancelledError:
                    pass
                logger.info("Background tasks stopped")
            if uses_redis:
                await close_redis_client()
            if uses_database:
                await close_database_connections()
            logger.info("Resources cleaned up successfully")

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Stock transfer fulfillment API",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
        debug=settings.debug,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        """
        Middleware for request logging and correlation ID management.

        Sets request ID for correlation, logs request details, and measures
        response time. Clears context after request processing.
        """
        request_id = set_request_id(request.headers.get("X-Request-ID"))

        logger.info(
            "Request received",
            method=request.method,
            path=request.url.path,
            client_host=request.client.host if request.client else None,
        )

        try:
            with log_performance(
                logger,
                "request_processing",
                method=request.method,
                path=request.url.path,
            ):
                response = await call_next(request)

            response.headers["X-Request-ID"] = request_id

            logger.info(
                "Request completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
            )
            return response
        except Exception as e:
            logger.error(
                "Request failed",
                method=request.method,
                path=request.url.path,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise
        finally:
            clear_context()

    @app.exception_handler(TransferError)
    async def transfer_error_handler(request: Request, exc: TransferError) -> JSONResponse:
        """
        Translate domain errors into structured HTTP error responses.

        Args:
            request: HTTP request that raised the error
            exc: Domain error

        Returns:
            JSON response with the error type, message and context
        """
        status_code = next(
            (
                code
                for error_type, code in ERROR_STATUS_CODES.items()
                if isinstance(exc, error_type)
            ),
            status.HTTP_400_BAD_REQUEST,
        )
        logger.warning(
            "Request rejected",
            method=request.method,
            path=request.url.path,
            status_code=status_code,
            error=exc.message,
            error_type=type(exc).__name__,
        )

        content = {
            "error": type(exc).__name__,
            "message": exc.message,
            "details": jsonable_encoder(exc.context),
            "request_id": get_request_id(),
        }
        if isinstance(exc, InvalidTransition):
            content["allowed"] = exc.allowed
        return JSONResponse(status_code=status_code, content=content)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """
        Handle request validation errors with structured error response.

        Returns:
            JSON response with validation error details
        """
        logger.warning(
            "Request validation failed",
            method=request.method,
            path=request.url.path,
            errors=len(exc.errors()),
        )

        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "error": "Validation Error",
                "message": "Request validation failed",
                "details": jsonable_encoder(exc.errors()),
                "request_id": get_request_id(),
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Handle unexpected exceptions with structured error response.

        Logs error with full context and returns generic error message
        to avoid exposing internal details.
        """
        logger.error(
            "Unhandled exception",
            method=request.method,
            path=request.url.path,
            error=str(exc),
            error_type=type(exc).__name__,
            exc_info=True,
        )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal Server Error",
                "message": "An unexpected error occurred",
                "request_id": get_request_id(),
            },
        )

    @app.get(
        "/health",
        status_code=status.HTTP_200_OK,
        tags=["Health"],
        summary="Health check endpoint",
    )
    async def health_check() -> dict[str, str]:
        """
        Basic health check endpoint.

        Always returns 200 OK if application is running.
        """
        return {
            "status": "healthy",
            "service": settings.app_name,
            "version": settings.app_version,
            "environment": settings.environment,
        }

    @app.get(
        "/ready",
        status_code=status.HTTP_200_OK,
        tags=["Health"],
        summary="Readiness check endpoint",
    )
    async def readiness_check(request: Request):
        """
        Readiness check endpoint for orchestration.

        Verifies the document store database and, when change notifications
        are enabled, Redis. Returns 503 when a dependency is down.
        """
        database_ok = True
        if getattr(request.app.state, "uses_database", False):
            database_ok = await check_database_health()

        redis_ok = True
        if getattr(request.app.state, "uses_redis", False):
            redis_ok = await (await get_redis_client()).health_check()

        checks = {
            "database": "healthy" if database_ok else "unhealthy",
            "redis": "healthy" if redis_ok else "unhealthy",
        }
        if not (database_ok and redis_ok):
            logger.warning("Readiness check failed", **checks)
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={
                    "status": "not_ready",
                    "service": settings.app_name,
                    "dependencies_ready": False,
                    **checks,
                },
            )

        return {
            "status": "ready",
            "service": settings.app_name,
            "version": settings.app_version,
            "dependencies_ready": True,
            **checks,
        }

    app.include_router(orders_router, prefix=settings.api_v1_prefix)
    app.include_router(reconciliation_router, prefix=settings.api_v1_prefix)
    app.include_router(backorders_router, prefix=settings.api_v1_prefix)

    return app


app = create_app()
