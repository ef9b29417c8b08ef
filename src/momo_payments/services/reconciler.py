"""Order reconciliation - best-effort link from a completed session to its order.

No column connects ``payment_session`` and ``orders``. The link is
inferred: same user, same amount, order already paid, created within a
short window after the session. Two identical-amount orders by the same
user inside that window cannot be told apart; the most recent one is
returned and the ambiguity is logged.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from momo_payments.config import ReconcilerConfig
from momo_payments.models import Order, PaymentSession
from momo_payments.services.state_machine import SessionStatus

logger = logging.getLogger(__name__)


class OrderReconciler:
    """Heuristic session → order matcher."""

    def __init__(self, db: AsyncSession, config: ReconcilerConfig | None = None):
        self.db = db
        self.config = config or ReconcilerConfig()

    async def find_order(self, session: PaymentSession) -> Order | None:
        """Most recent paid order matching ``session``, or None.

        None is a normal outcome: the client may still be creating the
        order after the payment was confirmed.
        """
        if session.status != SessionStatus.COMPLETED.value:
            return None

        window_start = session.created_at
        window_end = session.created_at + self.config.window

        result = await self.db.execute(
            select(Order)
            .where(
                Order.user_id == session.user_id,
                Order.total_amount == session.amount,
                Order.payment_status == self.config.paid_status,
                Order.created_at >= window_start,
                Order.created_at <= window_end,
            )
            .order_by(Order.created_at.desc())
            .limit(2)
        )
        matches = list(result.scalars().all())

        if not matches:
            logger.info("No order matched session %s yet", session.reference)
            return None

        if len(matches) > 1:
            logger.warning(
                "Session %s matches several orders of %s for user %s; using most recent %s",
                session.reference,
                session.amount,
                session.user_id,
                matches[0].id,
            )

        return matches[0]
