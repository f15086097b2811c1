"""FastAPI application factory"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from tractor_settlement.api.dependencies import get_notifier, get_payment_provider, get_request_id
from tractor_settlement.api.middleware import RequestIDMiddleware, MetricsMiddleware
from tractor_settlement.api.v1 import auctions, audit, deposits, escrow, purchases
from tractor_settlement.config import settings
from tractor_settlement.domain.exceptions import (
    AuthorizationError,
    ConfigurationError,
    ConflictError,
    DomainException,
    ExternalGatewayError,
    GatewayTimeoutError,
    NotFoundError,
    ValidationError,
)
from tractor_settlement.infrastructure.clients.notifier import WebhookNotifier
from tractor_settlement.infrastructure.observability.logging import setup_logging

# Setup structured logging
setup_logging(settings.log_level)

# Most specific first: GatewayTimeoutError is an ExternalGatewayError
STATUS_BY_ERROR = (
    (ValidationError, 422),
    (NotFoundError, 404),
    (ConflictError, 409),
    (AuthorizationError, 403),
    (GatewayTimeoutError, 504),
    (ExternalGatewayError, 502),
)


def status_for(exc: DomainException) -> int:
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Invalid payment mode fails at boot
    app.dependency_overrides.get(get_payment_provider, get_payment_provider)()
    yield
    notifier = app.dependency_overrides.get(get_notifier, get_notifier)()
    if isinstance(notifier, WebhookNotifier):
        await notifier.drain()


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="Tractor Auction Settlement",
        description="Auctions, earnest-money deposits, escrow and payment reconciliation",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    @app.exception_handler(DomainException)
    async def domain_exception_handler(request: Request, exc: DomainException):
        status_code = status_for(exc)
        level = logging.ERROR if status_code >= 500 else logging.WARNING
        logging.log(
            level,
            f"{type(exc).__name__}: {exc}",
            extra={"request_id": get_request_id(request), "path": request.url.path, "status": status_code},
        )
        return JSONResponse(status_code=status_code, content={"detail": str(exc), "error": type(exc).__name__})

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request: Request, exc: ConfigurationError):
        logging.error(f"Configuration error: {exc}", extra={"request_id": get_request_id(request)})
        return JSONResponse(status_code=500, content={"detail": "Service misconfigured"})

    # Health check endpoint
    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name, "payment_mode": settings.payment_mode}

    # Prometheus metrics endpoint
    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Register API routers
    app.include_router(auctions.router, prefix="/v1", tags=["auctions"])
    app.include_router(deposits.router, prefix="/v1", tags=["deposits"])
    app.include_router(purchases.router, prefix="/v1", tags=["purchases"])
    app.include_router(escrow.router, prefix="/v1", tags=["escrow"])
    app.include_router(audit.router, prefix="/v1", tags=["audit"])

    return app


app = create_app()
