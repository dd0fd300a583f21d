"""
FastAPI application factory.

- CORS configuration
- Domain error rendering
- Request ID tracking
- Structured logging
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from order_payments import __version__
from order_payments.config import Settings, get_settings
from order_payments.core.exceptions import PaymentSystemError
from order_payments.database import init_db
from order_payments.monitoring.logging import setup_logging

from .dependencies import PaymentServices
from .routes import admin_router, monitoring_router, order_router, webhook_router

logger = structlog.get_logger(__name__)


def _warn_low_trust(settings: Settings) -> None:
    if not settings.webhook_low_trust:
        return
    if settings.is_production:
        logger.error(
            "webhook_low_trust_mode_in_production",
            message="STRIPE_WEBHOOK_SECRET is not set; webhook events are accepted unverified",
        )
    else:
        logger.warning(
            "webhook_low_trust_mode",
            message="STRIPE_WEBHOOK_SECRET is not set; webhook events are accepted unverified",
        )


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[PaymentServices] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Settings to use; read from the environment when omitted
        services: Prebuilt services; built from settings in the lifespan
            when omitted (and then owned and closed by the app)
    """
    settings = settings or (services.settings if services else get_settings())
    setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            env=settings.app_env,
            test_mode=settings.is_test_mode,
        )
        _warn_low_trust(settings)

        owned = services is None
        app.state.services = services or PaymentServices.from_settings(settings)
        if owned:
            try:
                await init_db(app.state.services.engine)
                logger.info("database_initialized")
            except Exception as e:
                logger.error("database_initialization_failed", error=str(e))
                raise

        yield

        logger.info("application_shutdown")
        if owned:
            await app.state.services.close()
            logger.info("database_connections_closed")

    app = FastAPI(
        title="Order Payments",
        description=(
            "Card payments for orders: authorization creation, Stripe webhook "
            "reconciliation and payment status queries."
        ),
        version=__version__,
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response
        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(PaymentSystemError)
    async def payment_error_handler(request: Request, exc: PaymentSystemError) -> JSONResponse:
        log = logger.error if exc.http_status >= 500 else logger.warning
        log(
            "request_rejected",
            error_code=exc.error_code,
            error=exc.message,
            status_code=exc.http_status,
            path=request.url.path,
        )
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": {
                    "code": "internal_error",
                    "message": "An unexpected error occurred. Please try again later.",
                    "type": "InternalError",
                }
            },
        )

    app.include_router(order_router)
    app.include_router(webhook_router)
    app.include_router(admin_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        return {
            "service": settings.app_name,
            "version": __version__,
            "environment": settings.app_env,
            "test_mode": settings.is_test_mode,
            "webhook_verification": not settings.webhook_low_trust,
        }

    return app


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "order_payments.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
