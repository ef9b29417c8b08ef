"""Mobile-money gateway adapters."""

import logging

from momo_payments.config import Settings
from momo_payments.providers.base import (
    CreateOrderArgs,
    CreateOrderResult,
    GatewayClient,
    GatewayStatus,
)
from momo_payments.providers.stub import StubGateway
from momo_payments.providers.zenopay import ZenoPayClient

logger = logging.getLogger(__name__)


def gateway_from_settings(settings: Settings) -> GatewayClient:
    """ZenoPay when a key is configured, otherwise the in-memory stub."""
    if settings.gateway_api_key:
        return ZenoPayClient(
            api_key=settings.gateway_api_key,
            base_url=settings.gateway_base_url,
            timeout=settings.gateway_timeout_seconds,
        )
    logger.warning("ZENOPAY_API_KEY not set; using the stub gateway")
    return StubGateway()


__all__ = [
    "CreateOrderArgs",
    "CreateOrderResult",
    "GatewayClient",
    "GatewayStatus",
    "StubGateway",
    "ZenoPayClient",
    "gateway_from_settings",
]
