"""Pydantic schemas for API request/response models."""

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Initiation
# ============================================================================


class InitiatePaymentRequest(BaseModel):
    """Checkout request."""

    amount: Decimal = Field(gt=0)
    currency: str = Field(default="TZS", min_length=3, max_length=3)
    provider: str
    phone_number: str
    order_data: dict[str, Any]


class InitiatePaymentResponse(BaseModel):
    """Result of a checkout request."""

    transaction_reference: str
    status: str
    message: str
    is_duplicate: bool = False
    gateway_transaction_id: str | None = None


# ============================================================================
# Webhooks and replays
# ============================================================================


class WebhookResponse(BaseModel):
    """Acknowledgement returned to the gateway (always 200 once authenticated)."""

    received: bool = True
    outcome: str
    duplicate: bool
    reference: str | None = None
    status: str | None = None


class AdminTriggerRequest(BaseModel):
    """Manual replay of a gateway callback."""

    reference: str = Field(min_length=1)
    status: str = "COMPLETED"
    gateway_transaction_id: str | None = None


# ============================================================================
# Status
# ============================================================================


class StatusRequest(BaseModel):
    """Status lookup."""

    reference: str = Field(min_length=1)


class SessionStatusResponse(BaseModel):
    """Current status plus the best-effort order link."""

    model_config = ConfigDict(from_attributes=True)

    reference: str
    status: str
    message: str
    amount: Decimal
    currency: str
    provider: str
    order_id: UUID | None = None
    gateway_transaction_id: str | None = None
    failure_reason: str | None = None
    updated_at: datetime | None = None


# ============================================================================
# Monitor
# ============================================================================


class RecoveryOutcomeResponse(BaseModel):
    reference: str
    age_minutes: float
    outcome: str
    status: str | None = None
    duplicate: bool = False
    detail: str | None = None


class SweepResponse(BaseModel):
    """Per-session results of one sweep."""

    checked_at: datetime
    checked: int
    recovered: int
    results: list[RecoveryOutcomeResponse]
    expired: list[str]


class ErrorResponse(BaseModel):
    """Error body rendered for every PaymentError."""

    detail: str
    code: str
    retryable: bool = False
    details: dict[str, Any] | None = None
