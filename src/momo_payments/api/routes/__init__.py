"""API routes."""

from momo_payments.api.routes.health import router as health_router
from momo_payments.api.routes.payments import router as payments_router

__all__ = ["payments_router", "health_router"]
