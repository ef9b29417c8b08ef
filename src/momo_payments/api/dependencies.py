"""FastAPI dependencies for dependency injection."""

import hmac
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from momo_payments.config import PaymentsConfig
from momo_payments.errors import AuthenticationError
from momo_payments.providers.base import GatewayClient
from momo_payments.services.notifications import NotificationWorker
from momo_payments.services.signatures import WebhookAuthenticator
from momo_payments.services.webhook_verifier import WebhookVerifier


@dataclass
class AppComponents:
    """Long-lived collaborators shared by every request."""

    config: PaymentsConfig
    session_factory: async_sessionmaker[AsyncSession]
    gateway: GatewayClient
    worker: NotificationWorker
    authenticator: WebhookAuthenticator


def get_components(request: Request) -> AppComponents:
    return request.app.state.components


Components = Annotated[AppComponents, Depends(get_components)]


async def get_db_session(components: Components) -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    async with components.session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


DbSession = Annotated[AsyncSession, Depends(get_db_session)]


def get_verifier(db: DbSession, components: Components) -> WebhookVerifier:
    return WebhookVerifier(
        db,
        components.authenticator,
        components.config,
        worker=components.worker,
    )


Verifier = Annotated[WebhookVerifier, Depends(get_verifier)]


async def get_user_id(
    x_user_id: Annotated[str | None, Header()] = None,
) -> str:
    """Caller identity, set by the authenticating proxy."""
    if not x_user_id:
        raise AuthenticationError("X-User-ID header is required")
    return x_user_id


UserId = Annotated[str, Depends(get_user_id)]


def _presented_admin_key(x_admin_key: str | None, authorization: str | None) -> str | None:
    if x_admin_key:
        return x_admin_key
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and token:
            return token.strip()
    return None


def _check_admin_key(expected: str, presented: str | None) -> None:
    if not presented or not hmac.compare_digest(
        presented.encode("utf-8"), expected.encode("utf-8")
    ):
        raise AuthenticationError("Invalid admin credentials")


async def require_admin(
    components: Components,
    x_admin_key: Annotated[str | None, Header()] = None,
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    """Admin-only endpoints: the admin key must be configured and match."""
    expected = components.config.admin_api_key
    if not expected:
        raise AuthenticationError("Admin access is not configured")
    _check_admin_key(expected, _presented_admin_key(x_admin_key, authorization))


async def require_admin_if_configured(
    components: Components,
    x_admin_key: Annotated[str | None, Header()] = None,
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    """Cron-style endpoints are open until an admin key is configured."""
    expected = components.config.admin_api_key
    if expected:
        _check_admin_key(expected, _presented_admin_key(x_admin_key, authorization))
