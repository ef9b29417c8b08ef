"""Read-only view of the order table owned by the order-creation flow.

Only the columns the reconciler reads are mapped. There is no foreign key
to ``payment_session``.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from momo_payments.models.base import Base, utcnow


class Order(Base):
    """Customer order (external collaborator)."""

    __tablename__ = "orders"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    __table_args__ = (
        Index("orders_user_created", "user_id", "created_at"),
    )
