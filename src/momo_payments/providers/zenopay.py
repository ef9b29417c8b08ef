"""ZenoPay (Tanzania mobile money) gateway client.

Endpoints:
    POST {base}/mobile_money_tanzania   create an order (push USSD prompt)
    GET  {base}/order-status?order_id=  query an order

Every request carries the merchant key in ``x-api-key``.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from momo_payments.errors import TransientGatewayError, ValidationError
from momo_payments.providers.base import CreateOrderArgs, CreateOrderResult, GatewayStatus

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://zenoapi.com/api/payments"

RESULT_CODE_MESSAGES = {
    "001": "Invalid API key - please contact support",
    "002": "Missing required parameters - please retry",
    "003": "Invalid phone number format - please check your phone number",
    "004": "Insufficient funds - please top up your mobile money account",
    "005": "Payment canceled - you can retry the payment",
    "999": "Gateway error - please try again",
}
RETRYABLE_RESULT_CODES = frozenset({"002", "005", "999"})


class ZenoPayClient:
    """Async ZenoPay client built on httpx."""

    provider_name = "zenopay"

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not api_key:
            raise ValueError("ZenoPay api_key is required")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={"accept": "application/json", "x-api-key": self.api_key},
        )

    async def create_order(self, args: CreateOrderArgs) -> CreateOrderResult:
        payload: dict[str, Any] = {
            "order_id": args.order_id,
            "buyer_name": args.buyer_name,
            "buyer_phone": args.buyer_phone,
            "buyer_email": args.buyer_email or "",
            # Gateway takes whole shillings
            "amount": int(args.amount.to_integral_value()),
        }
        if args.webhook_url:
            payload["webhook_url"] = args.webhook_url
        if args.channel:
            payload["channel"] = args.channel

        data = await self._request("POST", "/mobile_money_tanzania", json=payload)

        result_code = str(
            data.get("resultcode") or data.get("result_code") or data.get("code") or "000"
        )
        if result_code != "000":
            message = RESULT_CODE_MESSAGES.get(result_code) or data.get("message") or "Payment failed"
            logger.warning(
                "ZenoPay rejected order %s (code=%s): %s", args.order_id, result_code, message
            )
            details = {"result_code": result_code}
            if result_code in RETRYABLE_RESULT_CODES:
                raise TransientGatewayError(message, details)
            raise ValidationError(message, details)

        nested = data.get("data") if isinstance(data.get("data"), dict) else {}
        gateway_id = (
            nested.get("transaction_id")
            or data.get("transaction_id")
            or nested.get("order_id")
            or data.get("order_id")
        )
        logger.info("ZenoPay accepted order %s (gateway id=%s)", args.order_id, gateway_id)
        return CreateOrderResult(
            reference=args.order_id,
            gateway_transaction_id=str(gateway_id) if gateway_id else None,
            message=str(data.get("message") or "Payment request sent"),
            result_code=result_code,
            raw=data,
        )

    async def get_status(self, reference: str) -> GatewayStatus:
        data = await self._request("GET", "/order-status", params={"order_id": reference})

        records = data.get("data")
        record: dict[str, Any] = {}
        if isinstance(records, list) and records:
            record = records[0]
        elif isinstance(records, dict):
            record = records

        status = record.get("payment_status") or record.get("status") or "UNKNOWN"
        gateway_id = record.get("transid") or record.get("transaction_id")
        return GatewayStatus(
            reference=reference,
            status=str(status).upper(),
            gateway_transaction_id=str(gateway_id) if gateway_id else None,
            raw=data,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientGatewayError(
                f"ZenoPay request timed out after {self.timeout:g} seconds"
            ) from e
        except httpx.TransportError as e:
            raise TransientGatewayError(f"ZenoPay unreachable: {e}") from e

        if response.status_code >= 500:
            raise TransientGatewayError(
                f"ZenoPay {method} {path} failed ({response.status_code})",
                {"http_status": response.status_code},
            )
        if response.status_code >= 400:
            raise ValidationError(
                f"ZenoPay {method} {path} rejected ({response.status_code}): {response.text[:200]}",
                {"http_status": response.status_code},
            )

        try:
            data = response.json()
        except ValueError:
            return {"raw": response.text}
        return data if isinstance(data, dict) else {"data": data}
