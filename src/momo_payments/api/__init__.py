"""HTTP API."""

from momo_payments.api.app import create_app

__all__ = ["create_app"]
