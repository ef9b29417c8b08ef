"""Base protocol and types for mobile-money gateway clients.

The payment core depends only on these shapes, never on a gateway's
wire format.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol


@dataclass(frozen=True)
class CreateOrderArgs:
    """Outbound order-creation request."""

    order_id: str  # our session reference
    amount: Decimal
    buyer_phone: str  # normalized 0XXXXXXXXX
    buyer_name: str = "Customer"
    buyer_email: str | None = None
    webhook_url: str | None = None
    channel: str | None = None  # vodacom/tigo/airtel/halotel


@dataclass(frozen=True)
class CreateOrderResult:
    """Gateway acknowledgement of an order."""

    reference: str
    gateway_transaction_id: str | None = None
    message: str = ""
    result_code: str = "000"
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayStatus:
    """Gateway's authoritative view of an order.

    ``status`` is the gateway's own vocabulary (COMPLETED, PENDING,
    FAILED...); callers normalize it.
    """

    reference: str
    status: str
    gateway_transaction_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


class GatewayClient(Protocol):
    """Protocol for mobile-money gateway adapters."""

    provider_name: str

    async def create_order(self, args: CreateOrderArgs) -> CreateOrderResult:
        """Ask the gateway to push a payment prompt to the buyer's phone.

        Raises:
            ValidationError: Request rejected; retrying the same request fails again
            TransientGatewayError: Timeout, transport failure or retryable result code
        """
        ...

    async def get_status(self, reference: str) -> GatewayStatus:
        """Query the gateway's status for an order created with ``reference``."""
        ...
