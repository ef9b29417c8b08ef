"""Durable store for payment sessions.

The store is the only writer of ``PaymentSession.status``. Every status
change is a compare-and-set UPDATE guarded by the status the caller
observed, so concurrent producers (gateway callback, admin replay,
stuck-session monitor) can race on one reference without applying an
effect twice.

The store flushes but never commits; the caller owns the unit of work.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from momo_payments.errors import ConflictError, NotFoundError, ValidationError
from momo_payments.models import PaymentSession, utcnow
from momo_payments.services.state_machine import (
    SessionStateMachine,
    SessionStatus,
    TransitionDecision,
    TransitionEvent,
)

logger = logging.getLogger(__name__)

CURRENCY_RE = re.compile(r"^[A-Z]{3}$")

# Re-reads allowed after losing a compare-and-set race before giving up
MAX_CAS_ATTEMPTS = 3


@dataclass(frozen=True)
class TransitionResult:
    """Result of a transition request."""

    session: PaymentSession
    changed: bool
    previous_status: SessionStatus


class SessionStore:
    """Persistence and guarded mutation of payment sessions."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        *,
        reference: str,
        user_id: str,
        amount: Decimal | int | str,
        currency: str,
        provider: str,
        payload: dict[str, Any] | None = None,
        phone_number: str | None = None,
        status: SessionStatus = SessionStatus.PENDING,
    ) -> PaymentSession:
        """Create a session in pending (or processing) status.

        Raises:
            ConflictError: If the reference already exists
            ValidationError: If amount or currency are malformed
        """
        if not reference:
            raise ValidationError("reference is required")
        if status not in (SessionStatus.PENDING, SessionStatus.PROCESSING):
            raise ValidationError(f"Sessions cannot be created in status '{status.value}'")

        amount = _to_amount(amount)
        currency = (currency or "").upper()
        if not CURRENCY_RE.match(currency):
            raise ValidationError(f"Invalid currency code '{currency}'")

        now = utcnow()
        session = PaymentSession(
            reference=reference,
            user_id=user_id,
            amount=amount,
            currency=currency,
            provider=provider,
            phone_number=phone_number,
            status=status.value,
            pending_order_payload=payload or {},
            created_at=now,
            updated_at=now,
        )
        try:
            # Savepoint: a duplicate reference must not discard the caller's work
            async with self.db.begin_nested():
                self.db.add(session)
        except IntegrityError as e:
            raise ConflictError(
                f"Session with reference '{reference}' already exists"
            ) from e

        logger.info(
            "Created payment session %s (user=%s amount=%s %s provider=%s)",
            reference,
            user_id,
            amount,
            currency,
            provider,
        )
        return session

    async def get(self, reference: str) -> PaymentSession:
        """Get a session by reference, freshly loaded from the database."""
        session = await self.find(reference)
        if session is None:
            raise NotFoundError(f"Payment session '{reference}' not found")
        return session

    async def find(self, reference: str) -> PaymentSession | None:
        """Like ``get`` but returns None for an unknown reference."""
        result = await self.db.execute(
            select(PaymentSession)
            .where(PaymentSession.reference == reference)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_by_gateway_transaction_id(
        self, gateway_transaction_id: str
    ) -> PaymentSession | None:
        result = await self.db.execute(
            select(PaymentSession)
            .where(PaymentSession.gateway_transaction_id == gateway_transaction_id)
            .order_by(PaymentSession.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def transition(self, reference: str, event: TransitionEvent) -> TransitionResult:
        """Move a session to ``event.target``.

        Already at target: returns the session unchanged. Allowed by the
        table: applied atomically. Anything else: ConflictError.
        """
        for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
            current = await self.db.scalar(
                select(PaymentSession.status).where(PaymentSession.reference == reference)
            )
            if current is None:
                raise NotFoundError(f"Payment session '{reference}' not found")

            decision = SessionStateMachine.decide(current, event.target)
            if decision == TransitionDecision.NOOP:
                logger.debug("Session %s already %s; no-op", reference, current)
                return TransitionResult(
                    session=await self.get(reference),
                    changed=False,
                    previous_status=SessionStatus(current),
                )

            if await self.compare_and_set(reference, SessionStatus(current), event):
                logger.info(
                    "Session %s transitioned %s -> %s",
                    reference,
                    current,
                    event.target.value,
                )
                return TransitionResult(
                    session=await self.get(reference),
                    changed=True,
                    previous_status=SessionStatus(current),
                )

            logger.info(
                "Session %s changed concurrently (expected %s, attempt %d); re-reading",
                reference,
                current,
                attempt,
            )

        raise ConflictError(
            f"Session '{reference}' kept changing concurrently; giving up",
            to_status=event.target.value,
        )

    async def compare_and_set(
        self,
        reference: str,
        expected: SessionStatus,
        event: TransitionEvent,
    ) -> bool:
        """Apply ``event`` only if the session is still in ``expected``.

        Returns True if this call performed the update. Does not consult the
        transition table; ``transition`` is the validated entry point.
        """
        now = utcnow()
        values: dict[str, Any] = {
            "status": event.target.value,
            "updated_at": now,
        }
        if event.target == SessionStatus.COMPLETED:
            values["completed_at"] = now
        if event.gateway_transaction_id:
            # Set once: the first acknowledgement wins
            values["gateway_transaction_id"] = func.coalesce(
                PaymentSession.gateway_transaction_id, event.gateway_transaction_id
            )
        if event.failure_reason:
            values["failure_reason"] = event.failure_reason

        result = await self.db.execute(
            update(PaymentSession)
            .where(
                PaymentSession.reference == reference,
                PaymentSession.status == expected.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return (result.rowcount or 0) == 1

    async def mark_checked(self, reference: str, now: datetime | None = None) -> bool:
        """Bump ``updated_at`` on a processing session without changing status.

        The monitor orders by ``updated_at``, so a checked session moves to
        the back of the queue.
        """
        result = await self.db.execute(
            update(PaymentSession)
            .where(
                PaymentSession.reference == reference,
                PaymentSession.status == SessionStatus.PROCESSING.value,
            )
            .values(updated_at=now or utcnow())
            .execution_options(synchronize_session=False)
        )
        return (result.rowcount or 0) == 1

    async def find_stuck(
        self,
        *,
        older_than: timedelta,
        limit: int,
        now: datetime | None = None,
    ) -> list[PaymentSession]:
        """Processing sessions not updated within ``older_than``, most stale first."""
        cutoff = (now or utcnow()) - older_than
        result = await self.db.execute(
            select(PaymentSession)
            .where(
                PaymentSession.status == SessionStatus.PROCESSING.value,
                PaymentSession.updated_at < cutoff,
            )
            .order_by(PaymentSession.updated_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_abandoned(
        self,
        *,
        older_than: timedelta,
        limit: int,
        now: datetime | None = None,
    ) -> list[PaymentSession]:
        """Pending sessions the gateway never acknowledged."""
        cutoff = (now or utcnow()) - older_than
        result = await self.db.execute(
            select(PaymentSession)
            .where(
                PaymentSession.status == SessionStatus.PENDING.value,
                PaymentSession.created_at < cutoff,
            )
            .order_by(PaymentSession.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_active_duplicate(
        self,
        *,
        user_id: str,
        amount: Decimal,
        provider: str,
        phone_number: str,
        since: datetime,
    ) -> PaymentSession | None:
        """Most recent processing session for the same charge created after ``since``."""
        result = await self.db.execute(
            select(PaymentSession)
            .where(
                PaymentSession.user_id == user_id,
                PaymentSession.amount == amount,
                PaymentSession.provider == provider,
                PaymentSession.phone_number == phone_number,
                PaymentSession.status == SessionStatus.PROCESSING.value,
                PaymentSession.created_at >= since,
            )
            .order_by(PaymentSession.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()


def _to_amount(value: Decimal | int | str) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"Invalid amount '{value}'") from e
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("amount must be positive")
    return amount.quantize(Decimal("0.01"))
