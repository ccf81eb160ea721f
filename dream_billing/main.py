import asyncio
import logging

import sentry_sdk
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dream_billing import __version__
from dream_billing.config import Config
from dream_billing.config.logging_config import configure_logging
from dream_billing.middleware.request_id_middleware import RequestIDMiddleware, get_request_id
from dream_billing.routes import admin, billing
from dream_billing.services.scheduled_sweep import get_sweep_status
from dream_billing.services.startup import BillingServices, lifespan

configure_logging()
logger = logging.getLogger(__name__)

# Initialize Sentry for error monitoring
if Config.SENTRY_ENABLED and Config.SENTRY_DSN:

    def sentry_traces_sampler(sampling_context):
        """Skip health checks; sample everything else at the configured rate."""
        asgi_scope = sampling_context.get("asgi_scope") or {}
        if asgi_scope.get("path") == "/health":
            return 0.0
        return Config.SENTRY_TRACES_SAMPLE_RATE

    sentry_sdk.init(
        dsn=Config.SENTRY_DSN,
        environment=Config.SENTRY_ENVIRONMENT,
        release=f"dream-billing@{__version__}",
        traces_sampler=sentry_traces_sampler,
        send_default_pii=False,
    )
    logger.info(f"Sentry initialized (environment: {Config.SENTRY_ENVIRONMENT})")
else:
    logger.info("Sentry disabled (SENTRY_ENABLED=false or SENTRY_DSN not set)")


def create_app(services: BillingServices | None = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        services: Pre-built billing services; when omitted the lifespan builds
            them from the environment on startup
    """
    app = FastAPI(
        title="Dream Journal Billing API",
        description="Stripe subscription lifecycle for the dream journal",
        version=__version__,
        lifespan=lifespan,
    )
    if services is not None:
        app.state.billing = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=Config.CORS_ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID", "stripe-signature"],
    )
    app.add_middleware(RequestIDMiddleware)

    app.include_router(billing.router)
    app.include_router(admin.router)

    # ==================== Exception Handlers ====================

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Log unexpected exceptions, report them to Sentry and return a JSON 500."""
        request_id = get_request_id(request)
        logger.error(
            f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True
        )
        sentry_sdk.capture_exception(exc)

        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "request_id": request_id},
            headers={"X-Request-ID": request_id},
        )

    # ==================== Health ====================

    @app.get("/health", tags=["Health"])
    async def health_check():
        services: BillingServices | None = getattr(app.state, "billing", None)
        database = {"status": "unavailable"}
        if services is not None:
            try:
                await asyncio.to_thread(services.store.ping)
                database = {"status": "healthy"}
            except Exception as e:
                logger.warning(f"Health check: subscription store unreachable: {e}")
                database = {"status": "unhealthy", "error": str(e), **services.connection.status()}

        sweep = get_sweep_status()
        healthy = database["status"] == "healthy"
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "degraded",
                "version": __version__,
                "database": database,
                "sweep": sweep,
            },
        )

    logger.info(f"Dream billing API v{__version__} configured ({Config.APP_ENV})")
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("dream_billing.main:app", host="0.0.0.0", port=8000)
