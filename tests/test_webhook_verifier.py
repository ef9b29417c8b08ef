"""Tests for webhook ingestion: authentication, dedup and transitions."""

import time
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import Text, func, select

from momo_payments.errors import AuthenticationError, InternalError, ValidationError
from momo_payments.models import Notification, Order, WebhookEvent
from momo_payments.services.state_machine import SessionStatus
from momo_payments.services.webhook_verifier import (
    CallbackPayload,
    compute_dedup_key,
    normalize_status,
    parse_callback,
)
from tests.conftest import ADMIN_RECIPIENT, callback_body, signed_headers


async def count(db, model) -> int:
    return await db.scalar(select(func.count()).select_from(model))


class TestNormalizeStatus:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("COMPLETED", SessionStatus.COMPLETED),
            ("success", SessionStatus.COMPLETED),
            (" Paid ", SessionStatus.COMPLETED),
            ("PENDING", SessionStatus.PROCESSING),
            ("DECLINED", SessionStatus.FAILED),
            ("cancelled", SessionStatus.FAILED),
            ("EXPIRED", SessionStatus.EXPIRED),
        ],
    )
    def test_known_vocabulary(self, raw, expected):
        assert normalize_status(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "REFUNDED", "???"])
    def test_unknown_is_none(self, raw):
        assert normalize_status(raw) is None


class TestParseCallback:
    def test_flat_payload(self):
        callback = parse_callback(
            callback_body(order_id="R1", status="completed", transaction_id="G1")
        )

        assert callback.reference == "R1"
        assert callback.gateway_transaction_id == "G1"
        assert callback.raw_status == "COMPLETED"
        assert callback.status == SessionStatus.COMPLETED

    def test_nested_data(self):
        callback = parse_callback(
            callback_body(data={"order_id": "R1", "payment_status": "FAILED"})
        )

        assert callback.reference == "R1"
        assert callback.status == SessionStatus.FAILED

    def test_malformed_json(self):
        with pytest.raises(ValidationError):
            parse_callback(b"{not json")

    def test_non_object_json(self):
        with pytest.raises(ValidationError):
            parse_callback(b"[1, 2, 3]")


class TestDedupKey:
    def test_key_depends_on_normalized_status(self):
        a = compute_dedup_key("R1", "G1", SessionStatus.COMPLETED)
        b = compute_dedup_key("R1", "G1", SessionStatus.FAILED)

        assert a != b
        assert len(a) == 64

    def test_same_event_same_key(self):
        assert compute_dedup_key("R1", None, SessionStatus.COMPLETED) == compute_dedup_key(
            "R1", None, SessionStatus.COMPLETED
        )


class TestIngest:
    """End-to-end callback handling against a real database."""

    async def test_completed_callback_applies_once(self, db, verifier, make_session, worker):
        await make_session("R1", status=SessionStatus.PROCESSING)
        body = callback_body(order_id="R1", status="COMPLETED", transaction_id="G1")

        first = await verifier.ingest(body, signed_headers(body))
        second = await verifier.ingest(body, signed_headers(body))

        assert first.outcome == "processed"
        assert first.status == "completed"
        assert first.duplicate is False
        assert first.notifications_enqueued == 2
        assert second.duplicate is True
        assert second.outcome == "processed"
        assert second.status == "completed"
        assert await count(db, WebhookEvent) == 1
        assert await count(db, Notification) == 2
        assert worker.pending_signals == 2

    async def test_duplicate_sends_notifications_once(self, verifier, make_session, worker, channel):
        await make_session("R1", status=SessionStatus.PROCESSING)
        body = callback_body(order_id="R1", status="COMPLETED", transaction_id="G1")

        await verifier.ingest(body, signed_headers(body))
        await verifier.ingest(body, signed_headers(body))
        await worker.run_until_idle()

        assert sorted(channel.sent) == [
            ("payment_completed", "U1", "R1"),
            ("payment_completed", ADMIN_RECIPIENT, "R1"),
        ]

    async def test_completed_session_sets_completed_at(self, verifier, make_session):
        await make_session("R1", status=SessionStatus.PROCESSING)
        body = callback_body(order_id="R1", status="SUCCESS", transaction_id="G1")

        await verifier.ingest(body, signed_headers(body))

        session = await verifier.store.get("R1")
        assert session.completed_at is not None
        assert session.gateway_transaction_id == "G1"

    async def test_pending_session_passes_through_processing(self, verifier, make_session):
        await make_session("R1")
        body = callback_body(order_id="R1", status="COMPLETED", transaction_id="G1")

        result = await verifier.ingest(body, signed_headers(body))

        assert result.outcome == "processed"
        assert result.status == "completed"

    async def test_failed_callback_records_reason(self, verifier, make_session, worker):
        await make_session("R1", status=SessionStatus.PROCESSING)
        body = callback_body(order_id="R1", status="DECLINED", failure_reason="Insufficient funds")

        result = await verifier.ingest(body, signed_headers(body))

        session = await verifier.store.get("R1")
        assert result.status == "failed"
        assert session.failure_reason == "Insufficient funds"
        assert worker.pending_signals == 2

    async def test_failed_callback_default_reason(self, verifier, make_session):
        await make_session("R1", status=SessionStatus.PROCESSING)
        body = callback_body(order_id="R1", status="FAILED")

        await verifier.ingest(body, signed_headers(body))

        assert (await verifier.store.get("R1")).failure_reason == "Payment failed"

    async def test_processing_callback_does_not_notify(self, verifier, make_session, worker):
        await make_session("R1")
        body = callback_body(order_id="R1", status="PENDING", transaction_id="G1")

        result = await verifier.ingest(body, signed_headers(body))

        assert result.outcome == "processed"
        assert result.status == "processing"
        assert result.notifications_enqueued == 0
        assert worker.pending_signals == 0

    async def test_already_at_status_is_noop(self, verifier, make_session, worker):
        await make_session("R1", status=SessionStatus.COMPLETED)
        body = callback_body(order_id="R1", status="COMPLETED", transaction_id="G9")

        result = await verifier.ingest(body, signed_headers(body))

        assert result.outcome == "noop"
        assert result.duplicate is False
        assert worker.pending_signals == 0

    async def test_contradicting_terminal_is_conflict(self, db, verifier, make_session, worker):
        await make_session("R1", status=SessionStatus.COMPLETED)
        body = callback_body(order_id="R1", status="FAILED")

        result = await verifier.ingest(body, signed_headers(body))

        assert result.outcome == "conflict"
        assert result.status == "completed"
        assert (await verifier.store.get("R1")).status == "completed"
        assert worker.pending_signals == 0
        event = await db.scalar(select(WebhookEvent))
        assert event.outcome == "conflict"
        assert "already completed" in event.detail

    async def test_unknown_reference_is_ignored(self, db, verifier):
        body = callback_body(order_id="NOPE", status="COMPLETED")

        result = await verifier.ingest(body, signed_headers(body))

        assert result.outcome == "ignored"
        assert result.status is None
        event = await db.scalar(select(WebhookEvent))
        assert event.detail == "No matching payment session"

    async def test_oversized_fields_recorded_intact(self, db, verifier):
        reference = "R" * 300
        raw_status = "X" * 120
        body = callback_body(order_id=reference, status=raw_status, transaction_id="G" * 400)

        result = await verifier.ingest(body, signed_headers(body))

        assert result.outcome == "ignored"
        event = await db.scalar(select(WebhookEvent))
        assert event.reference == reference
        assert event.raw_status == raw_status
        assert event.gateway_transaction_id == "G" * 400
        for column in ("reference", "gateway_transaction_id", "raw_status"):
            assert isinstance(WebhookEvent.__table__.c[column].type, Text)

    async def test_unrecognized_status_is_ignored(self, verifier, make_session):
        await make_session("R1", status=SessionStatus.PROCESSING)
        body = callback_body(order_id="R1", status="REFUNDED")

        result = await verifier.ingest(body, signed_headers(body))

        assert result.outcome == "ignored"
        assert (await verifier.store.get("R1")).status == "processing"

    async def test_resolves_by_gateway_transaction_id(self, verifier, make_session):
        await make_session("R1", status=SessionStatus.PROCESSING, gateway_transaction_id="G1")
        body = callback_body(transaction_id="G1", status="COMPLETED")

        result = await verifier.ingest(body, signed_headers(body))

        assert result.reference == "R1"
        assert result.status == "completed"

    async def test_api_key_authentication(self, verifier, make_session):
        await make_session("R1", status=SessionStatus.PROCESSING)
        body = callback_body(order_id="R1", status="COMPLETED")

        result = await verifier.ingest(body, {"x-api-key": "zp_test_key"})

        assert result.outcome == "processed"

    async def test_unknown_source_rejected(self, verifier):
        body = callback_body(order_id="R1", status="COMPLETED")

        with pytest.raises(ValueError):
            await verifier.ingest(body, signed_headers(body), source="someone")


class TestIngestRejections:
    """Rejected callbacks leave no trace."""

    async def test_stale_signature(self, db, verifier, make_session):
        await make_session("R1", status=SessionStatus.PROCESSING)
        body = callback_body(order_id="R1", status="COMPLETED")
        headers = signed_headers(body, timestamp=int(time.time()) - 600)

        with pytest.raises(AuthenticationError):
            await verifier.ingest(body, headers)

        assert (await verifier.store.get("R1")).status == "processing"
        assert await count(db, WebhookEvent) == 0

    async def test_wrong_secret(self, db, verifier, make_session):
        await make_session("R1", status=SessionStatus.PROCESSING)
        body = callback_body(order_id="R1", status="COMPLETED")

        with pytest.raises(AuthenticationError):
            await verifier.ingest(body, signed_headers(body, secret="not-the-secret"))

        assert (await verifier.store.get("R1")).status == "processing"
        assert await count(db, WebhookEvent) == 0

    async def test_malformed_body(self, db, verifier):
        body = b"definitely not json"

        with pytest.raises(ValidationError):
            await verifier.ingest(body, signed_headers(body))

        assert await count(db, WebhookEvent) == 0


class TestConcurrentDelivery:
    async def test_lost_insert_race_reports_duplicate(self, db, verifier, make_session, monkeypatch):
        """A delivery that passes the lookup but loses the insert is a duplicate."""
        await make_session("R1", status=SessionStatus.PROCESSING)
        body = callback_body(order_id="R1", status="COMPLETED", transaction_id="G1")
        await verifier.ingest(body, signed_headers(body))

        real_find_event = verifier._find_event
        calls = []

        async def find_event_racing(key):
            calls.append(key)
            if len(calls) == 1:
                # The concurrent writer has not committed yet
                return None
            return await real_find_event(key)

        monkeypatch.setattr(verifier, "_find_event", find_event_racing)

        result = await verifier.ingest(body, signed_headers(body))

        assert result.duplicate is True
        assert result.outcome == "processed"
        assert result.status == "completed"
        assert len(calls) == 2
        assert await count(db, WebhookEvent) == 1
        assert await count(db, Notification) == 2


    async def test_apply_without_normalized_status_is_internal_error(
        self, verifier, make_session
    ):
        session = await make_session("R1", status=SessionStatus.PROCESSING)
        callback = CallbackPayload(
            reference="R1",
            gateway_transaction_id=None,
            raw_status="REFUNDED",
            status=None,
            failure_reason=None,
            data={},
        )

        with pytest.raises(InternalError):
            await verifier._apply(session, callback)


class TestReconciliation:
    async def test_links_order_created_after_session(self, db, verifier, make_session):
        session = await make_session("R1", status=SessionStatus.PROCESSING)
        order = Order(
            user_id="U1",
            total_amount=Decimal("10000"),
            payment_status="paid",
            created_at=session.created_at + timedelta(minutes=2),
        )
        db.add(order)
        await db.commit()
        body = callback_body(order_id="R1", status="COMPLETED")

        result = await verifier.ingest(body, signed_headers(body))

        assert result.order_id == order.id
        notification = await db.scalar(select(Notification).limit(1))
        assert notification.payload["order_id"] == str(order.id)

    async def test_no_order_yet(self, verifier, make_session):
        await make_session("R1", status=SessionStatus.PROCESSING)
        body = callback_body(order_id="R1", status="COMPLETED")

        result = await verifier.ingest(body, signed_headers(body))

        assert result.outcome == "processed"
        assert result.order_id is None


class TestReplay:
    async def test_replay_is_signed_and_applied(self, verifier, make_session):
        await make_session("R1", status=SessionStatus.PROCESSING)

        result = await verifier.replay("R1", "COMPLETED", "G1", source="admin")

        assert result.outcome == "processed"
        assert result.status == "completed"

    async def test_replay_deduplicates_against_gateway_callback(self, verifier, make_session):
        await make_session("R1", status=SessionStatus.PROCESSING)
        body = callback_body(order_id="R1", status="COMPLETED", transaction_id="G1")
        await verifier.ingest(body, signed_headers(body))

        result = await verifier.replay("R1", "SUCCESS", "G1", extra={"manual_trigger": True})

        assert result.duplicate is True
