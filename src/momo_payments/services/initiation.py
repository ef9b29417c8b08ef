"""Payment initiation: create the session, then ask the gateway to charge.

The pending session is committed before the gateway call so a callback
arriving early always finds it, and no transaction is held open across
the network round trip.
"""

from __future__ import annotations

import logging
import re
import secrets
import time
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from momo_payments.config import PaymentsConfig
from momo_payments.errors import ConflictError, TransientGatewayError, ValidationError
from momo_payments.models import utcnow
from momo_payments.providers.base import CreateOrderArgs, GatewayClient
from momo_payments.services.session_store import SessionStore
from momo_payments.services.state_machine import SessionStatus, TransitionEvent

logger = logging.getLogger(__name__)

PROVIDER_CHANNELS = {
    "M-Pesa": "vodacom",
    "Tigo Pesa": "tigo",
    "Airtel Money": "airtel",
    "Halopesa": "halotel",
}

# A processing session younger than this is the same checkout being retried
DUPLICATE_WINDOW = timedelta(seconds=60)

_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


@dataclass(frozen=True)
class InitiatePayment:
    """Checkout request as received from the client."""

    amount: Decimal | int | str
    provider: str
    phone_number: str
    order_data: dict[str, Any] = field(default_factory=dict)
    currency: str = "TZS"


@dataclass(frozen=True)
class InitiationResult:
    """What the caller gets back from ``initiate``."""

    reference: str
    status: str
    message: str
    is_duplicate: bool = False
    gateway_transaction_id: str | None = None


def normalize_tz_phone(raw: str) -> str:
    """Normalize a Tanzanian mobile number to ``0XXXXXXXXX``."""
    digits = re.sub(r"\D", "", raw or "")
    if len(digits) == 10 and digits.startswith("0"):
        return digits
    if len(digits) == 12 and digits.startswith("255"):
        return f"0{digits[3:]}"
    if len(digits) == 9:
        return f"0{digits}"
    raise ValidationError(
        "Invalid phone number format. Use a Tanzania mobile number (07XX XXX XXX).",
        {"phone_number": raw},
    )


def channel_for(provider: str) -> str:
    try:
        return PROVIDER_CHANNELS[provider]
    except KeyError:
        raise ValidationError(
            f"Unsupported provider '{provider}'",
            {"supported": sorted(PROVIDER_CHANNELS)},
        ) from None


def _base36(number: int) -> str:
    out = ""
    while number:
        number, rem = divmod(number, 36)
        out = _BASE36[rem] + out
    return out or "0"


def generate_reference() -> str:
    """``MOMO`` + base36 millisecond time + 8 random base36 chars."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(8))
    return f"MOMO{_base36(int(time.time() * 1000))}{suffix}"


def _cart_total(order_data: dict[str, Any]) -> Decimal:
    items = order_data.get("items")
    if not isinstance(items, list) or not items:
        raise ValidationError("Order must contain at least one item")
    total = Decimal("0")
    for item in items:
        try:
            total += Decimal(str(item["price"])) * Decimal(str(item["quantity"]))
        except (KeyError, TypeError, InvalidOperation) as e:
            raise ValidationError("Every item needs a numeric price and quantity") from e
    return total


class PaymentInitiator:
    """Starts a mobile-money payment for a checkout."""

    def __init__(
        self,
        db: AsyncSession,
        gateway: GatewayClient,
        config: PaymentsConfig | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.config = config or PaymentsConfig()
        self.store = SessionStore(db)

    async def initiate(self, user_id: str, request: InitiatePayment) -> InitiationResult:
        """Create a session and push the payment prompt to the buyer.

        Raises:
            ValidationError: Bad input, or the gateway rejected the order
            TransientGatewayError: The gateway timed out or asked for a retry
        """
        if not user_id:
            raise ValidationError("user_id is required")

        try:
            amount = Decimal(str(request.amount))
        except InvalidOperation as e:
            raise ValidationError(f"Invalid amount '{request.amount}'") from e
        if not amount.is_finite() or amount <= 0:
            raise ValidationError("amount must be positive")

        calculated = _cart_total(request.order_data)
        if abs(calculated - amount) > Decimal("0.01"):
            raise ValidationError(
                "Amount mismatch",
                {"calculated": str(calculated), "provided": str(amount)},
            )

        phone = normalize_tz_phone(request.phone_number)
        channel = channel_for(request.provider)
        amount = amount.quantize(Decimal("0.01"))

        existing = await self.store.find_active_duplicate(
            user_id=user_id,
            amount=amount,
            provider=request.provider,
            phone_number=phone,
            since=utcnow() - DUPLICATE_WINDOW,
        )
        if existing is not None:
            logger.warning(
                "Duplicate payment prevented for user %s; returning session %s",
                user_id,
                existing.reference,
            )
            return InitiationResult(
                reference=existing.reference,
                status=existing.status,
                message="Payment session already exists",
                is_duplicate=True,
                gateway_transaction_id=existing.gateway_transaction_id,
            )

        reference = generate_reference()
        await self.store.create(
            reference=reference,
            user_id=user_id,
            amount=amount,
            currency=request.currency,
            provider=request.provider,
            payload=request.order_data,
            phone_number=phone,
        )
        await self.db.commit()

        order_data = request.order_data
        buyer_name = " ".join(
            part for part in (order_data.get("first_name"), order_data.get("last_name")) if part
        )
        try:
            ack = await self.gateway.create_order(
                CreateOrderArgs(
                    order_id=reference,
                    amount=amount,
                    buyer_phone=phone,
                    buyer_name=buyer_name or "Customer",
                    buyer_email=order_data.get("email"),
                    webhook_url=self.config.webhook_url,
                    channel=channel,
                )
            )
        except (ValidationError, TransientGatewayError) as e:
            logger.warning(
                "Gateway refused %s (retryable=%s): %s", reference, e.retryable, e.message
            )
            try:
                await self.store.transition(
                    reference,
                    TransitionEvent(target=SessionStatus.EXPIRED, failure_reason=e.message),
                )
                await self.db.commit()
            except ConflictError:
                # A callback settled the session while the gateway call was failing
                await self.db.rollback()
                session = await self.store.get(reference)
                if session.status != SessionStatus.COMPLETED.value:
                    raise e from None
                logger.info(
                    "Session %s completed despite gateway error: %s", reference, e.message
                )
                return InitiationResult(
                    reference=reference,
                    status=session.status,
                    message="Payment completed",
                    gateway_transaction_id=session.gateway_transaction_id,
                )
            raise

        try:
            result = await self.store.transition(
                reference,
                TransitionEvent(
                    target=SessionStatus.PROCESSING,
                    gateway_transaction_id=ack.gateway_transaction_id,
                ),
            )
            await self.db.commit()
            session = result.session
        except ConflictError:
            # The callback beat us here and already finished the session
            await self.db.rollback()
            session = await self.store.get(reference)
            logger.info("Session %s already %s before acknowledgement", reference, session.status)

        logger.info(
            "Payment initiated %s (user=%s amount=%s %s via %s)",
            reference,
            user_id,
            amount,
            request.currency,
            channel,
        )
        return InitiationResult(
            reference=reference,
            status=session.status,
            message=ack.message or f"Payment request sent to {phone}. Please approve on your phone.",
            gateway_transaction_id=session.gateway_transaction_id or ack.gateway_transaction_id,
        )
