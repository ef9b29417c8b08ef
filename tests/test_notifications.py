"""Tests for notification dispatch and delivery."""

import asyncio
import uuid

import pytest
from sqlalchemy import select

from momo_payments.models import Notification
from momo_payments.services.notifications import (
    LoggingChannel,
    NotificationChannel,
    NotificationDispatcher,
    NotificationWorker,
    dedup_key_for,
)
from momo_payments.services.state_machine import SessionStatus
from tests.conftest import ADMIN_RECIPIENT, RecordingChannel


@pytest.fixture
def dispatcher(db, payments_config) -> NotificationDispatcher:
    return NotificationDispatcher(db, payments_config.notifications)


async def dispatch_committed(db, dispatcher, session, **kwargs) -> list[Notification]:
    created = await dispatcher.dispatch(session, **kwargs)
    await db.commit()
    return created


class TestDispatcher:
    """Row creation and deduplication."""

    async def test_customer_and_admin_rows(self, db, dispatcher, make_session):
        session = await make_session("R1", status=SessionStatus.COMPLETED)

        created = await dispatch_committed(db, dispatcher, session)

        assert sorted(n.recipient for n in created) == sorted(["U1", ADMIN_RECIPIENT])
        assert {n.event_type for n in created} == {"payment_completed"}
        assert {n.status for n in created} == {"pending"}
        customer = next(n for n in created if n.recipient == "U1")
        assert customer.payload["role"] == "customer"
        assert customer.payload["amount"] == "10000.00"
        assert customer.dedup_key == dedup_key_for("payment_completed", "R1", "U1")

    async def test_failed_session_event_type(self, db, dispatcher, make_session):
        session = await make_session("R1", status=SessionStatus.FAILED)

        created = await dispatch_committed(db, dispatcher, session)

        assert {n.event_type for n in created} == {"payment_failed"}

    async def test_non_notifying_status_creates_nothing(self, db, dispatcher, make_session):
        session = await make_session("R1", status=SessionStatus.EXPIRED)

        assert await dispatcher.dispatch(session) == []

    async def test_second_dispatch_is_deduplicated(self, db, dispatcher, make_session):
        session = await make_session("R1", status=SessionStatus.COMPLETED)

        await dispatch_committed(db, dispatcher, session)
        again = await dispatch_committed(db, dispatcher, session)

        assert again == []
        rows = (await db.execute(select(Notification))).scalars().all()
        assert len(rows) == 2

    async def test_failed_row_can_be_superseded(self, db, dispatcher, make_session):
        session = await make_session("R1", status=SessionStatus.COMPLETED)
        created = await dispatch_committed(db, dispatcher, session)
        for notification in created:
            notification.status = "failed"
        await db.commit()

        again = await dispatch_committed(db, dispatcher, session)

        assert len(again) == 2

    async def test_order_id_in_payload(self, db, dispatcher, make_session):
        session = await make_session("R1", status=SessionStatus.COMPLETED)
        order_id = uuid.uuid4()

        created = await dispatch_committed(db, dispatcher, session, order_id=order_id)

        assert created[0].payload["order_id"] == str(order_id)


class TestWorker:
    """Delivery with retries, outside the triggering transaction."""

    @pytest.fixture
    def make_worker(self, session_factory, payments_config):
        def _make(channel):
            return NotificationWorker(session_factory, channel, payments_config.notifications)

        return _make

    async def pending_ids(self, db, dispatcher, make_session):
        session = await make_session("R1", status=SessionStatus.COMPLETED)
        return [n.id for n in await dispatch_committed(db, dispatcher, session)]

    async def test_deliver_marks_sent(self, db, dispatcher, make_session, make_worker):
        ids = await self.pending_ids(db, dispatcher, make_session)
        channel = RecordingChannel()
        worker = make_worker(channel)

        assert await worker.deliver(ids[0]) == "sent"

        row = await db.get(Notification, ids[0], populate_existing=True)
        assert row.status == "sent"
        assert row.attempts == 1
        assert len(channel.sent) == 1

    async def test_retry_then_succeed(self, db, dispatcher, make_session, make_worker):
        ids = await self.pending_ids(db, dispatcher, make_session)
        channel = RecordingChannel(failures=2)
        worker = make_worker(channel)

        assert await worker.deliver(ids[0]) == "sent"

        row = await db.get(Notification, ids[0], populate_existing=True)
        assert row.attempts == 3
        assert row.last_error is None

    async def test_gives_up_after_max_attempts(self, db, dispatcher, make_session, make_worker):
        ids = await self.pending_ids(db, dispatcher, make_session)
        channel = RecordingChannel(failures=10)
        worker = make_worker(channel)

        assert await worker.deliver(ids[0]) == "failed"

        row = await db.get(Notification, ids[0], populate_existing=True)
        assert row.status == "failed"
        assert row.attempts == 3
        assert row.last_error == "channel unavailable"
        assert channel.calls == 3

    async def test_already_sent_not_resent(self, db, dispatcher, make_session, make_worker):
        ids = await self.pending_ids(db, dispatcher, make_session)
        channel = RecordingChannel()
        worker = make_worker(channel)

        await worker.deliver(ids[0])
        assert await worker.deliver(ids[0]) == "sent"

        assert channel.calls == 1

    async def test_unknown_id(self, make_worker):
        worker = make_worker(RecordingChannel())

        assert await worker.deliver(uuid.uuid4()) == "missing"

    async def test_drain_pending_requeues_leftovers(self, db, dispatcher, make_session, make_worker):
        await self.pending_ids(db, dispatcher, make_session)
        channel = RecordingChannel()
        worker = make_worker(channel)

        assert await worker.drain_pending() == 2
        assert worker.pending_signals == 2

        await worker.run_until_idle()

        assert worker.pending_signals == 0
        assert len(channel.sent) == 2

    async def test_background_task_delivers(self, db, dispatcher, make_session, make_worker):
        channel = RecordingChannel()
        worker = make_worker(channel)
        await worker.start()
        try:
            assert worker.is_running
            worker.enqueue(await self.pending_ids(db, dispatcher, make_session))
            await asyncio.wait_for(worker._queue.join(), timeout=5)
        finally:
            await worker.stop()

        assert len(channel.sent) == 2


class TestChannels:
    async def test_logging_channel_satisfies_protocol(self):
        assert isinstance(LoggingChannel(), NotificationChannel)
        assert isinstance(RecordingChannel(), NotificationChannel)
