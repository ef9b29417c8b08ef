"""Stuck-session monitor.

A session that reached ``processing`` but never got its callback is
recovered by synthesizing that callback and pushing it through
``WebhookVerifier.ingest``, so dedup and the guarded transition apply
exactly as for real gateway traffic.

Recovery modes:

- ``verify`` (default): ask the gateway for the order's status and replay
  only a final outcome it reports. A session the gateway still reports as
  pending has its ``updated_at`` bumped so the next sweep reaches the
  sessions behind it; once it is older than ``abandon_after`` it is
  expired instead.
- ``optimistic``: replay COMPLETED without asking. A stalled session is
  not proof of payment; this mode exists for gateways without a usable
  status endpoint.

Pending sessions that the gateway never acknowledged are expired once
they pass ``abandon_after``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from momo_payments.config import MonitorConfig
from momo_payments.errors import ConflictError, InternalError
from momo_payments.models import utcnow
from momo_payments.providers.base import GatewayClient
from momo_payments.services.session_store import SessionStore
from momo_payments.services.state_machine import (
    SessionStateMachine,
    SessionStatus,
    TransitionEvent,
)
from momo_payments.services.webhook_verifier import WebhookVerifier, normalize_status

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class RecoveryOutcome:
    """Result of one recovery attempt."""

    reference: str
    age_minutes: float
    outcome: str  # processed/noop/ignored/conflict/still_pending/expired/error
    status: str | None = None
    duplicate: bool = False
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "reference": self.reference,
            "age_minutes": self.age_minutes,
            "outcome": self.outcome,
            "status": self.status,
            "duplicate": self.duplicate,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class SweepReport:
    """Everything one sweep did."""

    checked_at: datetime
    results: list[RecoveryOutcome] = field(default_factory=list)
    expired: list[str] = field(default_factory=list)

    @property
    def recovered(self) -> int:
        return sum(1 for r in self.results if r.outcome == "processed")

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked_at": self.checked_at.isoformat(),
            "checked": len(self.results),
            "recovered": self.recovered,
            "results": [r.to_dict() for r in self.results],
            "expired": list(self.expired),
        }


@dataclass(frozen=True)
class _Candidate:
    # Plain snapshot; ORM rows are expired by a rollback mid-batch
    reference: str
    gateway_transaction_id: str | None
    created_at: datetime


class StuckSessionMonitor:
    """Periodic sweep over stalled sessions."""

    def __init__(
        self,
        db: AsyncSession,
        verifier: WebhookVerifier,
        gateway: GatewayClient | None = None,
        config: MonitorConfig | None = None,
    ):
        self.db = db
        self.verifier = verifier
        self.gateway = gateway
        self.config = config or MonitorConfig()
        self.store = SessionStore(db)
        if self.config.recovery_mode == "verify" and gateway is None:
            raise ValueError("recovery_mode 'verify' requires a gateway client")

    async def sweep(self, now: datetime | None = None) -> SweepReport:
        """Run one sweep. Failures are isolated per session."""
        now = now or utcnow()
        stuck = await self.store.find_stuck(
            older_than=self.config.stale_after,
            limit=self.config.batch_size,
            now=now,
        )
        candidates = [
            _Candidate(s.reference, s.gateway_transaction_id, s.created_at) for s in stuck
        ]
        logger.info(
            "Monitor sweep: %d stuck session(s) (mode=%s)",
            len(candidates),
            self.config.recovery_mode,
        )

        results: list[RecoveryOutcome] = []
        for candidate in candidates:
            age_minutes = round((now - candidate.created_at).total_seconds() / 60, 1)
            try:
                outcome = await self._recover(candidate, age_minutes, now)
            except Exception as e:
                await self.db.rollback()
                logger.exception(
                    "Recovery failed for %s (age_minutes=%s)", candidate.reference, age_minutes
                )
                await self._advance(candidate.reference, now)
                outcome = RecoveryOutcome(
                    reference=candidate.reference,
                    age_minutes=age_minutes,
                    outcome="error",
                    detail=str(e),
                )
            results.append(outcome)

        expired = await self.expire_abandoned(now)
        return SweepReport(checked_at=now, results=results, expired=expired)

    async def _recover(
        self, candidate: _Candidate, age_minutes: float, now: datetime
    ) -> RecoveryOutcome:
        gateway_transaction_id = candidate.gateway_transaction_id

        if self.config.recovery_mode == "verify":
            if self.gateway is None:
                raise InternalError("recovery_mode 'verify' requires a gateway client")
            reported = await self.gateway.get_status(candidate.reference)
            normalized = normalize_status(reported.status)
            if normalized is None or not SessionStateMachine.is_terminal(normalized):
                if now - candidate.created_at >= self.config.abandon_after:
                    return await self._expire_stuck(candidate, age_minutes, reported.status)
                logger.info(
                    "Session %s still pending at gateway (reported=%s, age_minutes=%s)",
                    candidate.reference,
                    reported.status,
                    age_minutes,
                )
                await self.store.mark_checked(candidate.reference, now)
                await self.db.commit()
                return RecoveryOutcome(
                    reference=candidate.reference,
                    age_minutes=age_minutes,
                    outcome="still_pending",
                    status=SessionStatus.PROCESSING.value,
                    detail=f"Gateway reports {reported.status}",
                )
            raw_status = reported.status
            gateway_transaction_id = reported.gateway_transaction_id or gateway_transaction_id
        else:
            raw_status = "COMPLETED"

        result = await self.verifier.replay(
            candidate.reference,
            raw_status,
            gateway_transaction_id,
            source="monitor",
            extra={
                "automated_recovery": True,
                "recovery_mode": self.config.recovery_mode,
                "recovered_at": now.isoformat(),
                "age_minutes": age_minutes,
            },
        )

        logger.info(
            "Recovered session %s: %s -> %s (age_minutes=%s, duplicate=%s)",
            candidate.reference,
            result.outcome,
            result.status,
            age_minutes,
            result.duplicate,
        )
        return RecoveryOutcome(
            reference=candidate.reference,
            age_minutes=age_minutes,
            outcome=result.outcome,
            status=result.status,
            duplicate=result.duplicate,
        )

    async def _expire_stuck(
        self, candidate: _Candidate, age_minutes: float, reported: str | None
    ) -> RecoveryOutcome:
        result = await self.store.transition(
            candidate.reference,
            TransitionEvent(
                target=SessionStatus.EXPIRED,
                failure_reason=f"Gateway never confirmed the payment (last reported {reported})",
            ),
        )
        await self.db.commit()
        logger.warning(
            "Expired stuck session %s (reported=%s, age_minutes=%s)",
            candidate.reference,
            reported,
            age_minutes,
        )
        return RecoveryOutcome(
            reference=candidate.reference,
            age_minutes=age_minutes,
            outcome="expired" if result.changed else "noop",
            status=result.session.status,
            detail=f"Gateway reports {reported}",
        )

    async def _advance(self, reference: str, now: datetime) -> None:
        # A session that keeps failing must not pin the head of the queue
        try:
            await self.store.mark_checked(reference, now)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.exception("Could not mark %s as checked", reference)

    async def expire_abandoned(self, now: datetime | None = None) -> list[str]:
        """Expire pending sessions older than ``abandon_after``."""
        now = now or utcnow()
        abandoned = await self.store.find_abandoned(
            older_than=self.config.abandon_after,
            limit=self.config.batch_size,
            now=now,
        )
        references = [s.reference for s in abandoned]

        expired: list[str] = []
        for reference in references:
            try:
                result = await self.store.transition(
                    reference,
                    TransitionEvent(
                        target=SessionStatus.EXPIRED,
                        failure_reason="Gateway never acknowledged the payment",
                    ),
                )
                await self.db.commit()
            except ConflictError as e:
                await self.db.rollback()
                logger.info("Not expiring %s: %s", reference, e.message)
                continue
            except Exception:
                await self.db.rollback()
                logger.exception("Expiry failed for %s", reference)
                continue
            if result.changed:
                logger.info("Expired abandoned session %s", reference)
                expired.append(reference)
        return expired
