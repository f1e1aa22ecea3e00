from fastapi import FastAPI
from loguru import logger

from policy_billing_api.core.settings import settings
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing


APP_VERSION = "0.1.0"


def create_app() -> FastAPI:
    """Application factory for the policy billing reconciliation service."""
    configure_logging(
        service_name="policy-billing-api",
        environment=settings.environment,
        version=APP_VERSION,
    )

    app = FastAPI(
        title="Policy Billing API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    configure_tracing(
        app,
        service_name="policy-billing-api",
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    app.include_router(api_router)

    missing = settings.missing_billing_settings()
    if missing:
        logger.warning("Billing settings incomplete; reconciliation endpoints will reject requests", missing=missing)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
