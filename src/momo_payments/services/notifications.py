"""Notification dispatch - post-transition side effects.

The dispatcher writes ``Notification`` rows (status ``pending``) in the
same transaction as the session transition and returns immediately. The
worker delivers them later, outside the request that triggered them:

    dispatcher.dispatch(session)      # inside the webhook transaction
    await db.commit()
    worker.enqueue(ids)               # signal; the rows are the durable queue

Delivery failures never touch session state. Each delivery attempt is
claimed with a compare-and-set on ``attempts``, so two workers (or a
retry racing a restart) cannot both send the same row.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from decimal import Decimal
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from momo_payments.config import NotificationConfig
from momo_payments.models import Notification, PaymentSession, utcnow
from momo_payments.services.state_machine import SessionStateMachine, SessionStatus

logger = logging.getLogger(__name__)

EVENT_TYPES = {
    SessionStatus.COMPLETED: "payment_completed",
    SessionStatus.FAILED: "payment_failed",
}


def dedup_key_for(event_type: str, reference: str, recipient: str) -> str:
    return f"{event_type}:{reference}:{recipient}"


@runtime_checkable
class NotificationChannel(Protocol):
    """Delivery mechanism (email, SMS, push...)."""

    async def send(self, notification: Notification) -> None:
        """Deliver one notification; raise to signal failure."""
        ...


class LoggingChannel:
    """Channel that only writes the notice to the log.

    Stands in until a real provider is wired; message templating is not
    part of this package.
    """

    async def send(self, notification: Notification) -> None:
        logger.info(
            "NOTIFY %s -> %s (reference=%s)",
            notification.event_type,
            notification.recipient,
            notification.reference,
        )


class NotificationDispatcher:
    """Creates deduplicated notification rows for session outcomes."""

    def __init__(self, db: AsyncSession, config: NotificationConfig | None = None):
        self.db = db
        self.config = config or NotificationConfig()

    async def dispatch(
        self,
        session: PaymentSession,
        status: SessionStatus | None = None,
        *,
        order_id: UUID | None = None,
    ) -> list[Notification]:
        """Create pending notifications for a completed/failed session.

        ``status`` defaults to the session's current status. Returns only
        the rows created by this call; recipients that already have a
        pending or sent notice for this event are skipped.
        """
        status = SessionStatus(status or session.status)
        if status not in SessionStateMachine.NOTIFY_ON:
            return []

        event_type = EVENT_TYPES[status]
        recipients = [("customer", session.user_id)]
        recipients += [("admin", admin) for admin in self.config.admin_recipients]

        created: list[Notification] = []
        for role, recipient in recipients:
            key = dedup_key_for(event_type, session.reference, recipient)
            if await self._has_live_notification(key):
                logger.info("Skipping duplicate notification %s", key)
                continue

            notification = Notification(
                event_type=event_type,
                recipient=recipient,
                reference=session.reference,
                dedup_key=key,
                status="pending",
                payload=_payload(session, role, order_id),
            )
            self.db.add(notification)
            created.append(notification)

        if created:
            await self.db.flush()
            logger.info(
                "Enqueued %d %s notification(s) for %s",
                len(created),
                event_type,
                session.reference,
            )
        return created

    async def _has_live_notification(self, dedup_key: str) -> bool:
        existing = await self.db.scalar(
            select(Notification.id)
            .where(
                Notification.dedup_key == dedup_key,
                Notification.status != "failed",
            )
            .limit(1)
        )
        return existing is not None


def _payload(
    session: PaymentSession, role: str, order_id: UUID | None
) -> dict[str, Any]:
    amount = session.amount
    return {
        "role": role,
        "reference": session.reference,
        "user_id": session.user_id,
        "status": session.status,
        "amount": str(amount) if isinstance(amount, Decimal) else amount,
        "currency": session.currency,
        "provider": session.provider,
        "order_id": str(order_id) if order_id else None,
        "failure_reason": session.failure_reason,
    }


class NotificationWorker:
    """Background delivery of pending notifications with retries."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        channel: NotificationChannel | None = None,
        config: NotificationConfig | None = None,
    ):
        self.session_factory = session_factory
        self.channel = channel or LoggingChannel()
        self.config = config or NotificationConfig()
        self._queue: asyncio.Queue[UUID] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None

    @property
    def pending_signals(self) -> int:
        return self._queue.qsize()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def enqueue(self, notification_ids: Iterable[UUID]) -> None:
        """Signal the worker; never blocks."""
        for notification_id in notification_ids:
            self._queue.put_nowait(notification_id)

    async def start(self) -> None:
        """Re-queue leftovers from a previous process and start consuming."""
        if self._task is not None:
            return
        requeued = await self.drain_pending()
        if requeued:
            logger.info("Re-queued %d pending notification(s)", requeued)
        self._task = asyncio.create_task(self.run(), name="notification-worker")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def run(self) -> None:
        """Consume the queue forever. Failures are isolated per notification."""
        while True:
            notification_id = await self._queue.get()
            try:
                await self.deliver(notification_id)
            except Exception:
                logger.exception("Notification %s delivery crashed", notification_id)
            finally:
                self._queue.task_done()

    async def drain_pending(self, limit: int = 500) -> int:
        """Queue every pending notification still in the table."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(Notification.id)
                .where(Notification.status == "pending")
                .order_by(Notification.created_at.asc())
                .limit(limit)
            )
            ids = list(result.scalars().all())
        self.enqueue(ids)
        return len(ids)

    async def run_until_idle(self) -> None:
        """Deliver everything currently queued, then return (CLI and tests)."""
        while not self._queue.empty():
            notification_id = self._queue.get_nowait()
            try:
                await self.deliver(notification_id)
            except Exception:
                logger.exception("Notification %s delivery crashed", notification_id)
            finally:
                self._queue.task_done()

    async def deliver(self, notification_id: UUID) -> str:
        """Attempt delivery until sent or out of attempts.

        Returns the final status of the row.
        """
        while True:
            async with self.session_factory() as db:
                notification = await db.get(Notification, notification_id)
                if notification is None:
                    logger.warning("Notification %s vanished", notification_id)
                    return "missing"
                if notification.status != "pending":
                    return notification.status

                attempt = notification.attempts + 1
                claimed = await db.execute(
                    update(Notification)
                    .where(
                        Notification.id == notification_id,
                        Notification.status == "pending",
                        Notification.attempts == notification.attempts,
                    )
                    .values(attempts=attempt, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
                if (claimed.rowcount or 0) != 1:
                    # Someone else owns this attempt
                    return "claimed"

                try:
                    await self.channel.send(notification)
                except Exception as e:
                    final = attempt >= self.config.max_attempts
                    await db.execute(
                        update(Notification)
                        .where(Notification.id == notification_id)
                        .values(
                            status="failed" if final else "pending",
                            last_error=str(e)[:1000],
                            updated_at=utcnow(),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    await db.commit()
                    if final:
                        logger.error(
                            "Notification %s failed after %d attempt(s): %s",
                            notification_id,
                            attempt,
                            e,
                        )
                        return "failed"
                    logger.warning(
                        "Notification %s attempt %d failed: %s", notification_id, attempt, e
                    )
                else:
                    await db.execute(
                        update(Notification)
                        .where(Notification.id == notification_id)
                        .values(status="sent", last_error=None, updated_at=utcnow())
                        .execution_options(synchronize_session=False)
                    )
                    await db.commit()
                    return "sent"

            await asyncio.sleep(self.config.retry_base_seconds * (2 ** (attempt - 1)))
