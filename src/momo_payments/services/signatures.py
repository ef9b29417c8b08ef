"""Webhook authentication.

Two credentials are accepted:

1. A static shared key in ``x-api-key`` (or ``Authorization: Bearer``).
2. A signature header ``t=<unix-seconds>, v1=<hex-hmac-sha256>`` where the
   HMAC covers the raw request bytes exactly as received. Signed requests
   whose timestamp falls outside the tolerance window are rejected even
   when the digest matches.

Verification always works on the raw bytes; parsing and re-serializing a
payload would change the digest.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import time
from collections.abc import Mapping
from dataclasses import dataclass

from momo_payments.config import WebhookConfig
from momo_payments.errors import AuthenticationError

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = ("x-signature", "x-webhook-signature")
API_KEY_HEADER = "x-api-key"

_HEX_DIGEST_RE = re.compile(r"[0-9a-f]{64}")


@dataclass(frozen=True)
class ParsedSignature:
    """Components of a ``t=..., v1=...`` header."""

    timestamp: int | None
    digests: tuple[str, ...]


def parse_signature_header(header: str) -> ParsedSignature:
    """Parse a comma-separated ``key=value`` signature header.

    Unknown keys are ignored; several ``v1`` entries are allowed so a
    sender can rotate secrets. Digests that are not 64 hex characters are
    dropped.
    """
    timestamp: int | None = None
    digests: list[str] = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        key = key.strip().lower()
        value = value.strip()
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                timestamp = None
        elif key in ("v1", "sha256"):
            value = value.lower()
            if _HEX_DIGEST_RE.fullmatch(value):
                digests.append(value)
    return ParsedSignature(timestamp=timestamp, digests=tuple(digests))


def compute_signature(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw ``body`` bytes."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def sign_payload(body: bytes, secret: str, timestamp: int | None = None) -> str:
    """Build a signature header for ``body``."""
    ts = int(time.time()) if timestamp is None else timestamp
    return f"t={ts}, v1={compute_signature(body, secret)}"


def _header(headers: Mapping[str, str], name: str) -> str | None:
    # Starlette headers are case-insensitive; plain dicts in tests are not
    value = headers.get(name)
    if value is None:
        value = headers.get(name.title())
    return value


def _bearer(headers: Mapping[str, str]) -> str | None:
    auth = _header(headers, "authorization")
    if not auth:
        return None
    scheme, _, token = auth.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


class WebhookAuthenticator:
    """Checks inbound callbacks against the configured credentials."""

    def __init__(self, config: WebhookConfig, clock=time.time):
        self.config = config
        self._clock = clock

    def authenticate(self, body: bytes, headers: Mapping[str, str]) -> str:
        """Authenticate a callback.

        Returns the method that succeeded ("signature" or "api_key").

        Raises:
            AuthenticationError: If no configured credential matches
        """
        if not self.config.secret and not self.config.api_key:
            raise AuthenticationError("Webhook authentication is not configured")

        signature = None
        for name in SIGNATURE_HEADERS:
            signature = _header(headers, name)
            if signature:
                break

        if signature and self.config.secret:
            if self.verify_signature(body, signature):
                return "signature"
            logger.warning("Webhook signature rejected")

        if self.config.api_key:
            presented = _header(headers, API_KEY_HEADER) or _bearer(headers)
            if presented and hmac.compare_digest(
                presented.encode("utf-8"), self.config.api_key.encode("utf-8")
            ):
                return "api_key"

        raise AuthenticationError("Invalid webhook authentication")

    def verify_signature(self, body: bytes, header: str) -> bool:
        """Verify a ``t=..., v1=...`` header against the raw body."""
        if not self.config.secret:
            return False
        parsed = parse_signature_header(header)
        if parsed.timestamp is None or not parsed.digests:
            return False

        skew = abs(int(self._clock()) - parsed.timestamp)
        if skew > self.config.tolerance_seconds:
            logger.warning(
                "Webhook timestamp outside allowed window (skew=%ss, tolerance=%ss)",
                skew,
                self.config.tolerance_seconds,
            )
            return False

        expected = compute_signature(body, self.config.secret).encode("ascii")
        return any(
            hmac.compare_digest(expected, digest.encode("ascii")) for digest in parsed.digests
        )

    def outbound_headers(self, body: bytes) -> dict[str, str]:
        """Credentials for a synthesized callback (monitor, admin replay)."""
        headers = {"content-type": "application/json"}
        if self.config.secret:
            headers["x-signature"] = sign_payload(body, self.config.secret, int(self._clock()))
        elif self.config.api_key:
            headers[API_KEY_HEADER] = self.config.api_key
        return headers
