"""Webhook ingestion: untrusted callback in, trusted transition out, exactly once.

Pipeline for one callback:

1. Authenticate the raw bytes (signature or static key).
2. Parse and normalize the gateway vocabulary into ``SessionStatus``.
3. Claim the event's dedup key in the ``webhook_event`` ledger. A key that
   already exists means a retry of an event we have seen: the prior
   outcome is returned and nothing else runs.
4. Transition the session, reconcile the order, enqueue notifications.
5. Commit, then signal the notification worker.

Every outcome after authentication is success-shaped (``processed``,
``noop``, ``ignored`` or ``conflict``); the gateway must not be provoked
into retrying an event that can never change.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from momo_payments.config import PaymentsConfig
from momo_payments.errors import ConflictError, InternalError, ValidationError
from momo_payments.models import PaymentSession, WebhookEvent
from momo_payments.services.notifications import NotificationDispatcher, NotificationWorker
from momo_payments.services.reconciler import OrderReconciler
from momo_payments.services.session_store import SessionStore
from momo_payments.services.signatures import WebhookAuthenticator
from momo_payments.services.state_machine import (
    SessionStateMachine,
    SessionStatus,
    TransitionEvent,
)

logger = logging.getLogger(__name__)

SOURCES = ("gateway", "monitor", "admin")

SUCCESS_STATUSES = frozenset(
    {"SUCCESS", "SUCCEEDED", "COMPLETED", "APPROVED", "PAID", "SETTLED", "SUCCESSFUL"}
)
PENDING_STATUSES = frozenset({"PENDING", "PROCESSING", "AWAITING", "QUEUED"})
FAILURE_STATUSES = frozenset(
    {"FAILED", "DECLINED", "ERROR", "REJECTED", "TIMEOUT", "CANCELLED", "CANCELED"}
)
EXPIRED_STATUSES = frozenset({"EXPIRED"})


def normalize_status(raw: str | None) -> SessionStatus | None:
    """Map gateway status vocabulary onto the internal enum.

    Returns None for anything unrecognized.
    """
    if not raw:
        return None
    value = str(raw).strip().upper()
    if value in SUCCESS_STATUSES:
        return SessionStatus.COMPLETED
    if value in PENDING_STATUSES:
        return SessionStatus.PROCESSING
    if value in FAILURE_STATUSES:
        return SessionStatus.FAILED
    if value in EXPIRED_STATUSES:
        return SessionStatus.EXPIRED
    return None


@dataclass(frozen=True)
class CallbackPayload:
    """Fields extracted from a gateway callback body."""

    reference: str | None
    gateway_transaction_id: str | None
    raw_status: str | None
    status: SessionStatus | None
    failure_reason: str | None
    data: dict[str, Any]


def _first(*candidates: Any) -> str | None:
    for candidate in candidates:
        if candidate not in (None, ""):
            return str(candidate)
    return None


def parse_callback(body: bytes) -> CallbackPayload:
    """Parse a callback body.

    Gateways are inconsistent about field names and sometimes nest the
    interesting part under ``data``; the first non-empty candidate wins.

    Raises:
        ValidationError: If the body is not a JSON object
    """
    try:
        data = json.loads(body)
    except ValueError as e:
        raise ValidationError("Webhook body is not valid JSON") from e
    if not isinstance(data, dict):
        raise ValidationError("Webhook body must be a JSON object")

    nested = data.get("data")
    if not isinstance(nested, dict):
        nested = {}

    raw_status = _first(
        data.get("status"),
        nested.get("status"),
        data.get("payment_status"),
        nested.get("payment_status"),
        data.get("event_type"),
        data.get("event"),
        data.get("type"),
    )
    return CallbackPayload(
        reference=_first(
            data.get("order_id"),
            nested.get("order_id"),
            data.get("reference"),
            data.get("transaction_reference"),
        ),
        gateway_transaction_id=_first(
            data.get("transaction_id"),
            nested.get("transaction_id"),
            data.get("gateway_transaction_id"),
            data.get("transid"),
        ),
        raw_status=raw_status.upper() if raw_status else None,
        status=normalize_status(raw_status),
        failure_reason=_first(data.get("failure_reason"), nested.get("failure_reason")),
        data=data,
    )


def compute_dedup_key(
    reference: str | None,
    gateway_transaction_id: str | None,
    status: SessionStatus | None,
) -> str:
    """sha256 of ``reference|gateway_transaction_id|status``."""
    material = "|".join(
        [reference or "", gateway_transaction_id or "", status.value if status else ""]
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class IngestResult:
    """What happened to one callback."""

    outcome: str
    reference: str | None
    status: str | None
    duplicate: bool = False
    order_id: UUID | None = None
    notifications_enqueued: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome,
            "reference": self.reference,
            "status": self.status,
            "duplicate": self.duplicate,
            "order_id": str(self.order_id) if self.order_id else None,
            "notifications_enqueued": self.notifications_enqueued,
        }


class WebhookVerifier:
    """Authenticates, deduplicates and applies gateway callbacks.

    Owns the unit of work: ``ingest`` commits.
    """

    def __init__(
        self,
        db: AsyncSession,
        authenticator: WebhookAuthenticator,
        config: PaymentsConfig | None = None,
        worker: NotificationWorker | None = None,
    ):
        self.db = db
        self.authenticator = authenticator
        self.config = config or PaymentsConfig()
        self.worker = worker
        self.store = SessionStore(db)
        self.reconciler = OrderReconciler(db, self.config.reconciler)
        self.dispatcher = NotificationDispatcher(db, self.config.notifications)

    async def ingest(
        self,
        body: bytes,
        headers: Mapping[str, str],
        *,
        source: str = "gateway",
    ) -> IngestResult:
        """Process one raw callback.

        Raises:
            AuthenticationError: If neither credential is valid (nothing recorded)
            ValidationError: If the body is not a JSON object
        """
        if source not in SOURCES:
            raise ValueError(f"Unknown callback source '{source}'")

        method = self.authenticator.authenticate(body, headers)
        callback = parse_callback(body)
        logger.info(
            "Webhook received (source=%s auth=%s reference=%s gateway_txn=%s status=%s)",
            source,
            method,
            callback.reference,
            callback.gateway_transaction_id,
            callback.raw_status,
        )

        result, notification_ids = await self._process(callback, body, source)

        if notification_ids and self.worker is not None:
            self.worker.enqueue(notification_ids)
        return result

    async def _process(
        self, callback: CallbackPayload, body: bytes, source: str
    ) -> tuple[IngestResult, list[UUID]]:
        session = await self._resolve_session(callback)
        reference = session.reference if session is not None else callback.reference
        key = compute_dedup_key(reference, callback.gateway_transaction_id, callback.status)

        prior = await self._find_event(key)
        if prior is not None:
            return self._duplicate(prior, session), []

        event = WebhookEvent(
            dedup_key=key,
            reference=reference,
            gateway_transaction_id=callback.gateway_transaction_id,
            raw_status=callback.raw_status,
            normalized_status=callback.status.value if callback.status else None,
            source=source,
            raw_payload=body.decode("utf-8", errors="replace"),
        )
        self.db.add(event)
        try:
            await self.db.flush()
        except IntegrityError:
            # Lost the insert race: a concurrent delivery owns this event
            await self.db.rollback()
            prior = await self._find_event(key)
            if prior is None:
                raise
            session = await self.store.find(reference) if reference else None
            return self._duplicate(prior, session), []

        order_id: UUID | None = None
        created_ids: list[UUID] = []

        if callback.status is None:
            event.outcome = "ignored"
            event.detail = f"Unrecognized status '{callback.raw_status or ''}'"
            logger.warning("Ignoring webhook for %s: %s", reference, event.detail)
        elif session is None:
            event.outcome = "ignored"
            event.detail = "No matching payment session"
            logger.warning(
                "Ignoring webhook: no session for reference=%s gateway_txn=%s",
                callback.reference,
                callback.gateway_transaction_id,
            )
        else:
            try:
                session, changed, notify = await self._apply(session, callback)
            except ConflictError as e:
                event.outcome = "conflict"
                event.detail = e.message
                logger.warning("Webhook conflict for %s: %s", reference, e.message)
                session = await self.store.find(session.reference)
            else:
                event.outcome = "processed" if changed else "noop"
                if notify:
                    order = await self.reconciler.find_order(session)
                    order_id = order.id if order is not None else None
                    created = await self.dispatcher.dispatch(session, order_id=order_id)
                    created_ids = [n.id for n in created]

        await self.db.commit()

        logger.info(
            "Webhook %s for %s (source=%s status=%s)",
            event.outcome,
            reference,
            source,
            session.status if session is not None else None,
        )
        return (
            IngestResult(
                outcome=event.outcome,
                reference=reference,
                status=session.status if session is not None else None,
                order_id=order_id,
                notifications_enqueued=len(created_ids),
            ),
            created_ids,
        )

    async def _apply(
        self, session: PaymentSession, callback: CallbackPayload
    ) -> tuple[PaymentSession, bool, bool]:
        """Drive the session to the callback's status.

        Returns (session, changed, notify). ``notify`` is set only when this
        call performed the final move into a notifying status.
        """
        target = callback.status
        if target is None:
            raise InternalError(f"Callback for {session.reference} has no normalized status")
        changed = False
        last_changed = False
        for step in SessionStateMachine.path_to(session.status, target):
            result = await self.store.transition(
                session.reference,
                TransitionEvent(
                    target=step,
                    gateway_transaction_id=callback.gateway_transaction_id,
                    failure_reason=(
                        callback.failure_reason or "Payment failed"
                        if step == SessionStatus.FAILED
                        else None
                    ),
                ),
            )
            session = result.session
            changed = changed or result.changed
            last_changed = result.changed

        notify = last_changed and SessionStatus(session.status) in SessionStateMachine.NOTIFY_ON
        return session, changed, notify

    async def _resolve_session(self, callback: CallbackPayload) -> PaymentSession | None:
        if callback.reference:
            session = await self.store.find(callback.reference)
            if session is not None:
                return session
        if callback.gateway_transaction_id:
            return await self.store.find_by_gateway_transaction_id(
                callback.gateway_transaction_id
            )
        return None

    async def _find_event(self, dedup_key: str) -> WebhookEvent | None:
        result = await self.db.execute(
            select(WebhookEvent)
            .where(WebhookEvent.dedup_key == dedup_key)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    def _duplicate(
        self, prior: WebhookEvent, session: PaymentSession | None
    ) -> IngestResult:
        logger.info(
            "Duplicate webhook for %s (prior outcome=%s, first seen %s)",
            prior.reference,
            prior.outcome,
            prior.processed_at,
        )
        return IngestResult(
            outcome=prior.outcome,
            reference=prior.reference,
            status=session.status if session is not None else None,
            duplicate=True,
        )

    async def replay(
        self,
        reference: str,
        raw_status: str,
        gateway_transaction_id: str | None = None,
        *,
        source: str = "admin",
        extra: Mapping[str, Any] | None = None,
    ) -> IngestResult:
        """Synthesize a callback and ingest it like gateway traffic.

        The body is signed (or carries the API key) so it passes the same
        authentication as a real callback.
        """
        payload: dict[str, Any] = {
            "order_id": reference,
            "status": raw_status,
            "transaction_id": gateway_transaction_id,
        }
        if extra:
            payload.update(extra)
        body = json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")
        headers = self.authenticator.outbound_headers(body)
        return await self.ingest(body, headers, source=source)
