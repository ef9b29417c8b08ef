"""In-memory gateway for local development and testing."""

from __future__ import annotations

import uuid

from momo_payments.errors import PaymentError
from momo_payments.providers.base import CreateOrderArgs, CreateOrderResult, GatewayStatus


class StubGateway:
    """Stub gateway.

    Orders are accepted immediately and report ``status`` when queried.
    Set ``fail_with`` to make the next ``create_order`` calls raise.
    """

    provider_name = "stub"

    def __init__(self, status: str = "PENDING", fail_with: PaymentError | None = None):
        self.status = status
        self.fail_with = fail_with
        self.orders: dict[str, CreateOrderArgs] = {}
        self._statuses: dict[str, str] = {}
        self._gateway_ids: dict[str, str] = {}
        self.status_queries: list[str] = []

    async def create_order(self, args: CreateOrderArgs) -> CreateOrderResult:
        if self.fail_with is not None:
            raise self.fail_with
        gateway_id = f"STUB-{uuid.uuid4().hex[:12].upper()}"
        self.orders[args.order_id] = args
        self._gateway_ids[args.order_id] = gateway_id
        return CreateOrderResult(
            reference=args.order_id,
            gateway_transaction_id=gateway_id,
            message=f"Payment request sent to {args.buyer_phone}",
        )

    async def get_status(self, reference: str) -> GatewayStatus:
        self.status_queries.append(reference)
        return GatewayStatus(
            reference=reference,
            status=self._statuses.get(reference, self.status),
            gateway_transaction_id=self._gateway_ids.get(reference),
        )

    def set_status(self, reference: str, status: str, gateway_transaction_id: str | None = None) -> None:
        """Force the status (and optionally gateway id) reported for one order."""
        self._statuses[reference] = status
        if gateway_transaction_id:
            self._gateway_ids[reference] = gateway_transaction_id
