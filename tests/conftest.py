"""Pytest fixtures for payment core tests."""

from __future__ import annotations

import json
import time
from collections.abc import AsyncGenerator
from datetime import datetime
from decimal import Decimal
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from momo_payments.config import NotificationConfig, PaymentsConfig, WebhookConfig
from momo_payments.database import make_session_factory
from momo_payments.models import Base, Notification, PaymentSession
from momo_payments.services.notifications import NotificationWorker
from momo_payments.services.session_store import SessionStore
from momo_payments.services.signatures import WebhookAuthenticator, sign_payload
from momo_payments.services.state_machine import SessionStatus, TransitionEvent
from momo_payments.services.webhook_verifier import WebhookVerifier

WEBHOOK_SECRET = "whsec_test_secret"
GATEWAY_API_KEY = "zp_test_key"
ADMIN_API_KEY = "admin_test_key"
ADMIN_RECIPIENT = "ops@shop.test"


class RecordingChannel:
    """Notification channel that remembers what it sent.

    ``failures`` is the number of send calls that raise before the channel
    starts succeeding.
    """

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.sent: list[tuple[str, str, str]] = []
        self.calls = 0

    async def send(self, notification: Notification) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError("channel unavailable")
        self.sent.append((notification.event_type, notification.recipient, notification.reference))


def signed_headers(body: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> dict[str, str]:
    """Headers a correctly configured gateway would send."""
    return {
        "content-type": "application/json",
        "x-signature": sign_payload(body, secret, timestamp or int(time.time())),
    }


def callback_body(**fields: Any) -> bytes:
    return json.dumps(fields).encode("utf-8")


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Create a file-backed SQLite engine per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def payments_config() -> PaymentsConfig:
    return PaymentsConfig(
        webhook=WebhookConfig(secret=WEBHOOK_SECRET, api_key=GATEWAY_API_KEY),
        notifications=NotificationConfig(
            admin_recipients=(ADMIN_RECIPIENT,),
            max_attempts=3,
            retry_base_seconds=0,
        ),
        admin_api_key=ADMIN_API_KEY,
        public_base_url="https://shop.test",
    )


@pytest.fixture
def authenticator(payments_config) -> WebhookAuthenticator:
    return WebhookAuthenticator(payments_config.webhook)


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def worker(session_factory, channel, payments_config) -> NotificationWorker:
    return NotificationWorker(session_factory, channel, payments_config.notifications)


@pytest.fixture
def verifier(db, authenticator, payments_config, worker) -> WebhookVerifier:
    return WebhookVerifier(db, authenticator, payments_config, worker=worker)


@pytest.fixture
def make_session(db):
    """Factory for committed payment sessions in any status and age."""

    async def _make(
        reference: str = "R1",
        *,
        user_id: str = "U1",
        amount: Decimal | int | str = 10000,
        currency: str = "TZS",
        provider: str = "M-Pesa",
        phone_number: str | None = "0712345678",
        status: SessionStatus = SessionStatus.PENDING,
        gateway_transaction_id: str | None = None,
        created_at: datetime | None = None,
        updated_at: datetime | None = None,
    ) -> PaymentSession:
        store = SessionStore(db)
        await store.create(
            reference=reference,
            user_id=user_id,
            amount=amount,
            currency=currency,
            provider=provider,
            payload={"items": [{"product_id": "P1", "quantity": 1, "price": str(amount)}]},
            phone_number=phone_number,
        )
        for step in _path_from_pending(status):
            await store.transition(
                reference,
                TransitionEvent(target=step, gateway_transaction_id=gateway_transaction_id),
            )

        values: dict[str, Any] = {}
        if created_at is not None:
            values["created_at"] = created_at
        if updated_at is not None:
            values["updated_at"] = updated_at
        if values:
            await db.execute(
                update(PaymentSession)
                .where(PaymentSession.reference == reference)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        await db.commit()
        return await store.get(reference)

    return _make


def _path_from_pending(status: SessionStatus) -> list[SessionStatus]:
    if status == SessionStatus.PENDING:
        return []
    if status in (SessionStatus.PROCESSING, SessionStatus.EXPIRED):
        return [status]
    return [SessionStatus.PROCESSING, status]
