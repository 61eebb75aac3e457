"""FastAPI application factory."""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from ipforge.api.routes import registrations, training_jobs, webhooks
from ipforge.core import timezone  # noqa: F401
from ipforge.core.config import Settings, configure_logging
from ipforge.core.database import setup_db_session
from ipforge.core.rate_limit import IntervalRateLimiter
from ipforge.services.registration.backfill import RegistrationBackfillService
from ipforge.services.registration.engine import RegistrationEngine
from ipforge.services.story.client import create_story_client
from ipforge.services.webhook.reconciler import WebhookReconciler
from ipforge.uow import create_uow_factory

logger = structlog.get_logger()


def build_services(app: FastAPI, settings: Settings, session_factory, client) -> None:
    """Wire the registration pipeline into app.state.

    Args:
        app: Application whose state receives the services
        settings: Application settings
        session_factory: Database session factory
        client: Registration client, or None when Story is not configured
    """
    uow_factory = create_uow_factory(session_factory)

    engine = None
    if client is not None:
        engine = RegistrationEngine(
            uow_factory=uow_factory,
            client=client,
            license_terms_id=settings.story_license_terms_id,
            claim_ttl_seconds=settings.registration_claim_ttl_seconds,
        )

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    app.state.registration_engine = engine
    app.state.reconciler = WebhookReconciler(uow_factory=uow_factory, engine=engine)
    app.state.backfill_service = RegistrationBackfillService(
        uow_factory=uow_factory,
        engine=engine,
        rate_limiter=IntervalRateLimiter(settings.registration_min_interval_seconds),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: Configure logging, set up the database and build the registration pipeline
    - Shutdown: Wait for in-flight background registrations, dispose the engine
    """
    settings = app.state.settings

    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    client = create_story_client(settings)
    build_services(app, settings, session_factory, client)

    logger.info(
        "application.startup",
        db_url=settings.database_url.split("@")[-1],
        registration_enabled=client is not None,
    )

    yield

    logger.info(
        "application.shutdown", pending_registrations=app.state.reconciler.pending_registrations
    )
    await app.state.reconciler.drain()
    await session_factory.kw["bind"].dispose()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        settings: Settings to use (loaded from the environment when omitted)

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="ipforge API",
        description="Training job provenance and Story Protocol derivative registration",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
    app.include_router(training_jobs.router)
    app.include_router(registrations.router)

    # Health check endpoint with database validation
    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint with database connectivity test.

        Returns:
            200: {"status": "healthy"} if database connection succeeds
            503: {"status": "unhealthy", "error": {...}} if database connection fails
        """
        try:
            async with app.state.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()

            logger.debug("health_check.success")
            return {"status": "healthy"}

        except Exception as e:
            logger.error(
                "health_check.failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {
                "status": "unhealthy",
                "error": {
                    "type": type(e).__name__,
                    "message": str(e),
                },
            }

    return app


# Create app instance for uvicorn
app = create_app()
