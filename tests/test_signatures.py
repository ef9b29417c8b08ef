"""Tests for webhook authentication."""

import pytest

from momo_payments.config import WebhookConfig
from momo_payments.errors import AuthenticationError
from momo_payments.services.signatures import (
    WebhookAuthenticator,
    compute_signature,
    parse_signature_header,
    sign_payload,
)
from tests.conftest import GATEWAY_API_KEY, WEBHOOK_SECRET

BODY = b'{"order_id":"R1","status":"COMPLETED","transaction_id":"G1"}'
NOW = 1_700_000_000
DIGEST_A = "ab" * 32
DIGEST_B = "cd" * 32
NON_ASCII_DIGEST = "\u00e9" * 64


@pytest.fixture
def auth() -> WebhookAuthenticator:
    return WebhookAuthenticator(
        WebhookConfig(secret=WEBHOOK_SECRET, api_key=GATEWAY_API_KEY),
        clock=lambda: NOW,
    )


class TestParseSignatureHeader:
    def test_parses_timestamp_and_digest(self):
        parsed = parse_signature_header(f"t=123, v1={DIGEST_A.upper()}")

        assert parsed.timestamp == 123
        assert parsed.digests == (DIGEST_A,)

    def test_multiple_digests_for_rotation(self):
        parsed = parse_signature_header(f"t=1,v1={DIGEST_A},v1={DIGEST_B}")

        assert parsed.digests == (DIGEST_A, DIGEST_B)

    @pytest.mark.parametrize("digest", ["abcdef", "zz" * 32, NON_ASCII_DIGEST, "\u0661" * 64])
    def test_non_hex_digests_dropped(self, digest):
        parsed = parse_signature_header(f"t=1, v1={digest}")

        assert parsed.digests == ()

    def test_garbage_yields_nothing(self):
        parsed = parse_signature_header("nonsense")

        assert parsed.timestamp is None
        assert parsed.digests == ()

    def test_non_numeric_timestamp(self):
        assert parse_signature_header("t=soon, v1=aa").timestamp is None


class TestSignature:
    """HMAC over the raw bytes with a freshness window."""

    def test_valid_signature(self, auth):
        header = sign_payload(BODY, WEBHOOK_SECRET, NOW)

        assert auth.authenticate(BODY, {"x-signature": header}) == "signature"

    def test_alternate_header_name(self, auth):
        header = sign_payload(BODY, WEBHOOK_SECRET, NOW)

        assert auth.authenticate(BODY, {"x-webhook-signature": header}) == "signature"

    def test_within_tolerance(self, auth):
        header = sign_payload(BODY, WEBHOOK_SECRET, NOW - 299)

        assert auth.verify_signature(BODY, header) is True

    def test_stale_timestamp_rejected_even_with_correct_digest(self, auth):
        header = sign_payload(BODY, WEBHOOK_SECRET, NOW - 301)

        assert auth.verify_signature(BODY, header) is False
        with pytest.raises(AuthenticationError):
            auth.authenticate(BODY, {"x-signature": header})

    def test_future_timestamp_rejected(self, auth):
        header = sign_payload(BODY, WEBHOOK_SECRET, NOW + 600)

        assert auth.verify_signature(BODY, header) is False

    def test_tampered_body_rejected(self, auth):
        header = sign_payload(BODY, WEBHOOK_SECRET, NOW)
        tampered = BODY.replace(b"COMPLETED", b"FAILED")

        assert auth.verify_signature(tampered, header) is False

    def test_reserialized_body_rejected(self, auth):
        """Whitespace changes alter the digest; verification uses raw bytes."""
        header = sign_payload(BODY, WEBHOOK_SECRET, NOW)

        assert auth.verify_signature(BODY.replace(b",", b", "), header) is False

    def test_missing_timestamp_rejected(self, auth):
        header = f"v1={compute_signature(BODY, WEBHOOK_SECRET)}"

        assert auth.verify_signature(BODY, header) is False

    def test_non_ascii_digest_rejected_not_raised(self, auth):
        header = f"t={NOW}, v1={NON_ASCII_DIGEST}"
        signature_only = WebhookAuthenticator(
            WebhookConfig(secret=WEBHOOK_SECRET), clock=lambda: NOW
        )

        assert auth.verify_signature(BODY, header) is False
        with pytest.raises(AuthenticationError):
            signature_only.authenticate(BODY, {"x-signature": header})

    def test_wrong_secret_rejected(self, auth):
        header = sign_payload(BODY, "other-secret", NOW)

        assert auth.verify_signature(BODY, header) is False


class TestApiKey:
    def test_api_key_header(self, auth):
        assert auth.authenticate(BODY, {"x-api-key": GATEWAY_API_KEY}) == "api_key"

    def test_bearer_token(self, auth):
        headers = {"authorization": f"Bearer {GATEWAY_API_KEY}"}

        assert auth.authenticate(BODY, headers) == "api_key"

    def test_title_case_header(self, auth):
        assert auth.authenticate(BODY, {"X-Api-Key": GATEWAY_API_KEY}) == "api_key"

    def test_wrong_key_rejected(self, auth):
        with pytest.raises(AuthenticationError):
            auth.authenticate(BODY, {"x-api-key": "wrong"})

    def test_bad_signature_falls_back_to_api_key(self, auth):
        headers = {"x-signature": "t=1, v1=deadbeef", "x-api-key": GATEWAY_API_KEY}

        assert auth.authenticate(BODY, headers) == "api_key"

    def test_no_credentials_rejected(self, auth):
        with pytest.raises(AuthenticationError):
            auth.authenticate(BODY, {})


class TestConfiguration:
    def test_unconfigured_rejects_everything(self):
        auth = WebhookAuthenticator(WebhookConfig())

        with pytest.raises(AuthenticationError, match="not configured"):
            auth.authenticate(BODY, {"x-api-key": "anything"})

    def test_signature_only_ignores_api_key(self):
        auth = WebhookAuthenticator(WebhookConfig(secret=WEBHOOK_SECRET), clock=lambda: NOW)

        with pytest.raises(AuthenticationError):
            auth.authenticate(BODY, {"x-api-key": GATEWAY_API_KEY})

    @pytest.mark.parametrize("tolerance", [0, 3601])
    def test_tolerance_bounds(self, tolerance):
        with pytest.raises(ValueError):
            WebhookConfig(secret="s", tolerance_seconds=tolerance)


class TestOutboundHeaders:
    def test_signs_when_secret_configured(self, auth):
        headers = auth.outbound_headers(BODY)

        assert auth.authenticate(BODY, headers) == "signature"

    def test_uses_api_key_without_secret(self):
        auth = WebhookAuthenticator(WebhookConfig(api_key=GATEWAY_API_KEY))

        headers = auth.outbound_headers(BODY)

        assert headers["x-api-key"] == GATEWAY_API_KEY
        assert auth.authenticate(BODY, headers) == "api_key"
