"""
Main FastAPI application.

Pharmacy order and payment API with:
- CORS configuration
- Error handling
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pharmacy_backend.config import Settings, get_settings
from pharmacy_backend.core.auth_service import AuthService
from pharmacy_backend.core.order_service import OrderService
from pharmacy_backend.core.payment_processor import PaymentProcessor
from pharmacy_backend.core.reconciliation import CallbackReconciler
from pharmacy_backend.database.connection import Database
from pharmacy_backend.domain.errors import PharmacyError
from pharmacy_backend.integrations.mpesa_client import MpesaClient
from pharmacy_backend.monitoring.health import HealthCheck
from pharmacy_backend.monitoring.logging import setup_logging

from .routes import auth_router, monitoring_router, order_router, payment_router

# Setup logging first
setup_logging()
logger = structlog.get_logger(__name__)


def build_services(app: FastAPI, settings: Settings, database: Database, gateway: MpesaClient) -> None:
    """Wire the service graph onto ``app.state``."""
    payment_processor = PaymentProcessor(database, gateway, settings)
    app.state.settings = settings
    app.state.database = database
    app.state.gateway = gateway
    app.state.auth_service = AuthService(database, settings)
    app.state.payment_processor = payment_processor
    app.state.order_service = OrderService(database, payment_processor, settings)
    app.state.callback_reconciler = CallbackReconciler(database)
    app.state.health_check = HealthCheck(database, gateway)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    settings: Settings = app.state.settings
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        mpesa_environment=settings.mpesa_environment,
    )

    try:
        await app.state.database.create_all()
        logger.info("database_initialized")
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    yield

    # Shutdown
    logger.info("application_shutdown")
    try:
        await app.state.gateway.close()
        await app.state.database.dispose()
        logger.info("database_connections_closed")
    except Exception as e:
        logger.error("database_shutdown_error", error=str(e))


async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
    """
    Add request ID to all requests for tracing.

    Also adds timing information and structured logging context.
    """
    request_id = str(uuid.uuid4())
    start_time = time.time()

    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    logger.info(
        "request_started",
        request_id=request_id,
        method=request.method,
        path=request.url.path,
        client_host=request.client.host if request.client else None,
    )

    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "request_completed",
            request_id=request_id,
            status_code=response.status_code,
            duration_seconds=time.time() - start_time,
        )
        return response

    except Exception as e:
        logger.error(
            "request_failed",
            request_id=request_id,
            error=str(e),
            duration_seconds=time.time() - start_time,
        )
        raise

    finally:
        structlog.contextvars.clear_contextvars()


async def pharmacy_error_handler(request: Request, exc: PharmacyError) -> JSONResponse:
    """Render domain errors with the status their class carries."""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "request_error",
        code=exc.code,
        error=exc.message,
        status_code=exc.status_code,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"status": "error", "error": exc.to_dict()},
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
        for err in exc.errors()
    ]
    logger.warning("request_validation_failed", path=request.url.path, errors=errors)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "status": "error",
            "error": {
                "code": "VALIDATION_ERROR",
                "message": "Request validation failed",
                "details": {"errors": errors},
            },
        },
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled exceptions.
    """
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "status": "error",
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred. Please try again later.",
            },
        },
    )


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    gateway: Optional[MpesaClient] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Defaults to the cached environment settings
        database: Defaults to an engine built from settings
        gateway: Defaults to a Daraja client built from settings
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Pharmacy Backend",
        description=(
            "Online pharmacy order and payment API. "
            "Features: server-side total validation, M-Pesa STK push, "
            "callback reconciliation, and order status tracking."
        ),
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    build_services(
        app,
        settings,
        database or Database.from_settings(settings),
        gateway or MpesaClient(settings),
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(add_request_id_middleware)

    app.add_exception_handler(PharmacyError, pharmacy_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    app.include_router(auth_router)
    app.include_router(order_router)
    app.include_router(payment_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": "1.0.0",
            "status": "operational",
            "environment": settings.app_env,
            "mpesa_environment": settings.mpesa_environment,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


app = create_app()


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "pharmacy_backend.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
