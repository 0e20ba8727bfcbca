"""
FastAPI application entry point with health endpoints and service routing.

This module builds the application with CORS configuration, request
correlation, workflow error mapping and the order, notification and
dashboard routers. Startup wires the database, the live delivery channel
and, when configured, the Redis relay that fans live events out across
processes.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from orderflow.api.v1.dashboard import router as dashboard_router
from orderflow.api.v1.notifications import router as notifications_router
from orderflow.api.v1.orders import router as orders_router
from orderflow.core.config import Settings, get_settings
from orderflow.core.logging import (
    clear_context,
    configure_logging,
    get_logger,
    get_request_id,
    log_performance,
    set_request_id,
)
from orderflow.database.connection import (
    check_database_health,
    create_all_tables,
    create_engine,
    create_session_factory,
)
from orderflow.services.notifications.channel import DeliveryChannel
from orderflow.services.notifications.relay import RedisEventRelay
from orderflow.services.orders.errors import OrderWorkflowError

logger = get_logger(__name__)

ERROR_STATUS_CODES = {
    "unauthorized": status.HTTP_403_FORBIDDEN,
    "not_found": status.HTTP_404_NOT_FOUND,
    "invalid_state": status.HTTP_409_CONFLICT,
    "validation_failed": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "conflict": status.HTTP_409_CONFLICT,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan context manager for startup and shutdown events.

    Args:
        app: FastAPI application instance

    Yields:
        None during application runtime
    """
    settings: Settings = app.state.settings

    logger.info(
        "Application starting",
        environment=settings.environment,
        debug=settings.debug,
        version=settings.app_version,
        live_push_backend=settings.live_push_backend,
    )

    relay: Optional[RedisEventRelay] = None
    relay_task: Optional[asyncio.Task] = None

    with log_performance(logger, "application_startup"):
        engine = create_engine(settings)
        app.state.engine = engine
        app.state.session_factory = create_session_factory(engine)

        if settings.auto_create_tables:
            await create_all_tables(engine)

        if settings.live_push_backend == "redis":
            relay = RedisEventRelay(settings.redis_url, settings.redis_event_channel)
            await relay.connect()
            channel = DeliveryChannel(publisher=relay, queue_size=settings.sse_queue_size)
            relay_task = asyncio.create_task(relay.run(channel))
        else:
            channel = DeliveryChannel(queue_size=settings.sse_queue_size)
        app.state.delivery_channel = channel
        app.state.relay = relay
        logger.info("Resources initialized successfully")

    yield

    logger.info("Application shutting down")
    with log_performance(logger, "application_shutdown"):
        channel.close()
        if relay_task is not None:
            relay_task.cancel()
            try:
                await relay_task
            except asyncio.CancelledError:
                pass
        if relay is not None:
            await relay.disconnect()
        await engine.dispose()
        logger.info("Resources cleaned up successfully")


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


async def workflow_exception_handler(
    request: Request, exc: OrderWorkflowError
) -> JSONResponse:
    """
    Map order workflow errors to HTTP responses.

    The error's structured context is returned alongside the message.
    Persistence failures are reported without their internal details.
    """
    status_code = ERROR_STATUS_CODES.get(
        exc.error_code, status.HTTP_500_INTERNAL_SERVER_ERROR
    )
    log = logger.error if status_code >= 500 else logger.warning
    log(
        "Order workflow error",
        method=request.method,
        path=request.url.path,
        error_code=exc.error_code,
        error=exc.message,
        context=exc.context,
    )

    content = {
        "error": exc.error_code,
        "message": exc.message,
        "request_id": get_request_id(),
    }
    if status_code < 500:
        content.update(exc.context)
    else:
        content["message"] = "Failed to persist order changes"

    return JSONResponse(status_code=status_code, content=jsonable_encoder(content))


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle request validation errors with structured error response."""
    logger.warning(
        "Request validation failed",
        method=request.method,
        path=request.url.path,
        errors=exc.errors(),
    )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=jsonable_encoder(
            {
                "error": "validation_failed",
                "message": "Request validation failed",
                "details": exc.errors(),
                "request_id": get_request_id(),
            }
        ),
    )


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
            "error": "internal_error",
            "message": "An unexpected error occurred",
            "request_id": get_request_id(),
        },
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Settings to use, defaults to the cached application settings

    Returns:
        Configured application; resources are created by the lifespan
    """
    settings = settings or get_settings()
    configure_logging()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Order approval workflow API",
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
    app.middleware("http")(request_logging_middleware)

    app.add_exception_handler(OrderWorkflowError, workflow_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    @app.get(
        "/health",
        status_code=status.HTTP_200_OK,
        tags=["Health"],
        summary="Health check endpoint",
    )
    async def health_check() -> dict[str, str]:
        """Always returns 200 OK if the application is running."""
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
        Readiness check for orchestration.

        Verifies the database and, when configured, the Redis relay.
        """
        engine = getattr(request.app.state, "engine", None)
        database_ready = engine is not None and await check_database_health(
            engine, max_retries=1
        )
        relay: Optional[RedisEventRelay] = getattr(request.app.state, "relay", None)
        relay_ready = relay is None or await relay.health_check()

        body = {
            "service": settings.app_name,
            "database": "healthy" if database_ready else "unhealthy",
            "live_push": "healthy" if relay_ready else "unhealthy",
        }
        if not (database_ready and relay_ready):
            logger.warning("Readiness check failed", **body)
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", **body},
            )
        return {"status": "ready", "version": settings.app_version, **body}

    @app.get(
        "/live",
        status_code=status.HTTP_200_OK,
        tags=["Health"],
        summary="Liveness check endpoint",
    )
    async def liveness_check() -> dict[str, str]:
        return {
            "status": "alive",
            "service": settings.app_name,
            "version": settings.app_version,
        }

    app.include_router(orders_router, prefix=settings.api_v1_prefix)
    app.include_router(notifications_router, prefix=settings.api_v1_prefix)
    app.include_router(dashboard_router, prefix=settings.api_v1_prefix)

    return app


app = create_app()
