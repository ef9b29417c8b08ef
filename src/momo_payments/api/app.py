"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from momo_payments.api.dependencies import AppComponents
from momo_payments.api.routes import health_router, payments_router
from momo_payments.config import PaymentsConfig, Settings, get_settings
from momo_payments.database import create_schema, dispose_db, init_db
from momo_payments.errors import PaymentError
from momo_payments.logging_config import configure_logging
from momo_payments.providers import GatewayClient, gateway_from_settings
from momo_payments.services.notifications import NotificationChannel, NotificationWorker
from momo_payments.services.signatures import WebhookAuthenticator

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    components: AppComponents = app.state.components
    if app.state.manage_database:
        engine, _ = init_db()
        await create_schema(engine)
    await components.worker.start()
    yield
    await components.worker.stop()
    if app.state.manage_database:
        await dispose_db()


def create_app(
    settings: Settings | None = None,
    *,
    config: PaymentsConfig | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    gateway: GatewayClient | None = None,
    channel: NotificationChannel | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Collaborators default to what ``settings`` describes; tests pass their
    own session factory, gateway and channel.
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    config = config or settings.payments_config()

    manage_database = session_factory is None
    if session_factory is None:
        _, session_factory = init_db()

    components = AppComponents(
        config=config,
        session_factory=session_factory,
        gateway=gateway or gateway_from_settings(settings),
        worker=NotificationWorker(session_factory, channel, config.notifications),
        authenticator=WebhookAuthenticator(config.webhook),
    )

    app = FastAPI(
        title="Mobile Money Payments API",
        description="Payment session lifecycle and webhook reconciliation",
        version="0.1.0",
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.components = components
    app.state.manage_database = manage_database

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(PaymentError)
    async def payment_error_handler(request: Request, exc: PaymentError) -> JSONResponse:
        """Render the error taxonomy with its own status code."""
        if exc.status_code >= 500:
            logger.error("%s on %s: %s", exc.code, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s", request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
                "retryable": False,
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(payments_router)

    return app
