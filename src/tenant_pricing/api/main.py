"""
Pricing & Billing API - FastAPI application factory.
"""
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from .. import __version__
from ..config.logging import configure_logging
from ..config.settings import get_settings
from ..db.models import utc_now
from ..errors import InvalidStateError, NotFoundError, PricingError, StoreUnavailableError, ValidationError
from ..services.container import PricingServices
from .billing_api import router as billing_router
from .pricing_api import router as pricing_router

logger = structlog.get_logger(__name__)

ERROR_STATUS = {
    NotFoundError: 404,
    InvalidStateError: 409,
    ValidationError: 400,
    StoreUnavailableError: 503,
}


def error_status(exc: PricingError) -> int:
    for error_type, status in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return status
    return 500


async def pricing_error_handler(request: Request, exc: PricingError) -> JSONResponse:
    status = error_status(exc)
    log = logger.warning if status < 500 else logger.error
    log("request_failed", path=request.url.path, status=status, code=exc.code, error=exc.message)
    return JSONResponse(
        status_code=status,
        content={"error": exc.message, "code": exc.code, "details": exc.details},
    )


def create_app(services: Optional[PricingServices] = None) -> FastAPI:
    """
    Build the API application.

    Args:
        services: Pre-built service container (tests pass one bound to an
            in-memory database); built from settings when omitted.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is None:
            settings = get_settings()
            configure_logging(settings.log_level, settings.log_json)
            app.state.services = PricingServices.build(settings)
            app.state.services.db.init_db()
        logger.info("api_started", version=__version__)
        yield
        if services is None:
            app.state.services.db.dispose()

    app = FastAPI(
        title="Tenant Pricing API",
        description="Multi-tenant pricing and billing service",
        version=__version__,
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(PricingError, pricing_error_handler)

    app.include_router(pricing_router)
    app.include_router(billing_router)

    @app.get("/")
    async def root():
        return {
            "service": "Tenant Pricing & Billing Service",
            "version": __version__,
            "endpoints": {
                "pricing": {
                    "models": "/api/v1/pricing/models",
                    "rules": "/api/v1/pricing/models/{id}/rules",
                    "calculate": "/api/v1/pricing/calculate",
                    "resolve": "/api/v1/pricing/resolve",
                    "scopes": "/api/v1/pricing/scopes",
                    "overrides": "/api/v1/pricing/overrides",
                },
                "billing": {
                    "cycles": "/api/v1/billing/cycles",
                    "items": "/api/v1/billing/cycles/{id}/items",
                    "summary": "/api/v1/billing/cycles/{id}/summary",
                    "audit": "/api/v1/billing/audit",
                },
            },
        }

    @app.get("/health")
    def health(request: Request):
        db = request.app.state.services.db
        try:
            with db.session_scope() as s:
                s.execute(text("SELECT 1"))
        except StoreUnavailableError as e:
            return JSONResponse(status_code=503, content={"status": "unhealthy", "error": e.message})
        return {"status": "healthy", "timestamp": utc_now().isoformat()}

    return app


app = create_app()
