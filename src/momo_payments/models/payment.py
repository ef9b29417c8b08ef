"""Payment session and webhook ledger models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import CHAR, CheckConstraint, Index, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from momo_payments.models.base import Base, TimestampMixin, utcnow

SESSION_STATUSES = ("pending", "processing", "completed", "failed", "expired")


class PaymentSession(Base, TimestampMixin):
    """One payment attempt with an external mobile-money gateway.

    ``reference``, ``amount`` and ``currency`` are fixed at creation.
    ``status`` is only ever written by the session store's guarded
    transition.
    """

    __tablename__ = "payment_session"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    reference: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(CHAR(3), nullable=False, default="TZS")
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    phone_number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    pending_order_payload: Mapped[dict[str, Any]] = mapped_column(
        nullable=False, default=dict
    )
    gateway_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'expired')",
            name="payment_session_status_ck",
        ),
        CheckConstraint("amount > 0", name="payment_session_amount_ck"),
        CheckConstraint(
            "status <> 'completed' OR completed_at IS NOT NULL",
            name="payment_session_completed_at_ck",
        ),
        Index("payment_session_status_updated", "status", "updated_at"),
        Index("payment_session_user", "user_id", "created_at"),
        Index("payment_session_gateway_txn", "gateway_transaction_id"),
    )

    def __repr__(self) -> str:
        return f"<PaymentSession {self.reference} {self.status}>"


class WebhookEvent(Base):
    """Append-only ledger of every inbound (or synthesized) callback.

    ``dedup_key`` is unique: the first writer of a key owns the event and
    every later delivery of the same real-world event is a duplicate.
    """

    __tablename__ = "webhook_event"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    dedup_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    reference: Mapped[str | None] = mapped_column(Text, nullable=True)
    gateway_transaction_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_status: Mapped[str | None] = mapped_column(Text, nullable=True)
    normalized_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    source: Mapped[str] = mapped_column(String(20), nullable=False, default="gateway")
    raw_payload: Mapped[str] = mapped_column(Text, nullable=False)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False, default="received")
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "source IN ('gateway', 'monitor', 'admin')",
            name="webhook_event_source_ck",
        ),
        Index("webhook_event_reference", "reference", "processed_at"),
    )
