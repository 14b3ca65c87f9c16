# tests/test_verifier.py
"""
Unit tests for protocol proof verification.
"""
import asyncio
import json
from base64 import b64decode, b64encode
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
import requests

from x402.types import SettleResponse

from app.x402.errors import ProofExpired, ProofInvalid, UpstreamUnavailable
from app.x402.verifier import (
    FacilitatorVerifier,
    PaymentRequirements,
    TestProofVerifier,
    X402_VERSION,
    decode_proof,
    encode_payment_response,
)

WALLET_A = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
TREASURY = "98UP3QVTsAkmJGKjhE4w6GeZNn4csUfLY6C8TdQ1p3PK"

NOW_MS = 1_760_000_000_000


def _proof(payload=None) -> str:
    payload = payload or {"x402Version": 1, "scheme": "exact", "network": "solana-devnet",
                          "payload": {"transaction": "AQID"}}
    return b64encode(json.dumps(payload).encode()).decode()


def _http_response(body, status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = body
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(f"{status_code} error")
    else:
        response.raise_for_status.return_value = None
    return response


class TestBuildRequirements:
    """Test payment requirements generation."""

    @patch("app.x402.verifier.settings")
    def test_requirements_fields(self, mock_settings):
        """Requirements carry network, atomic amount, treasury and mint."""
        mock_settings.x402_network = "solana-devnet"
        mock_settings.X402_DEPOSIT_ADDRESS = TREASURY
        mock_settings.usdc_mint = "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU"

        verifier = FacilitatorVerifier("https://facilitator.example.com", timeout=5)
        requirements = verifier.build_requirements(
            Decimal("0.002"), "https://api.example.com/api/chat", "AI chat message"
        )

        assert requirements.scheme == "exact"
        assert requirements.network == "solana-devnet"
        assert requirements.max_amount_required == "2000"
        assert requirements.pay_to == TREASURY
        assert requirements.asset == "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU"
        assert requirements.max_timeout_seconds == 60

    def test_wire_format_is_camel_case(self):
        """Serialized requirements use x402 camelCase keys."""
        requirements = PaymentRequirements(
            network="solana",
            max_amount_required="500",
            resource="https://api.example.com/api/x402/ping",
            pay_to=TREASURY,
            asset="EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
        )

        data = requirements.model_dump(by_alias=True)

        assert data["maxAmountRequired"] == "500"
        assert data["payTo"] == TREASURY
        assert data["maxTimeoutSeconds"] == 60
        assert data["mimeType"] == "application/json"

    def test_dollar_to_atomic_conversion(self):
        verifier = FacilitatorVerifier("https://facilitator.example.com")
        assert verifier.build_requirements(Decimal("1"), "u").max_amount_required == "1000000"
        assert verifier.build_requirements(Decimal("0.0005"), "u").max_amount_required == "500"


class TestExtractProof:
    """Test proof header detection."""

    def test_payment_signature_header(self):
        verifier = FacilitatorVerifier("https://facilitator.example.com")
        assert verifier.extract_proof({"payment-signature": "abc"}) == "abc"

    def test_x_payment_signature_header(self):
        verifier = FacilitatorVerifier("https://facilitator.example.com")
        assert verifier.extract_proof({"X-PAYMENT-SIGNATURE": "def"}) == "def"

    def test_no_proof(self):
        verifier = FacilitatorVerifier("https://facilitator.example.com")
        assert verifier.extract_proof({"x-wallet": WALLET_A}) is None


class TestFromSettings:
    """Test optional verifier construction."""

    @patch("app.x402.verifier.settings")
    def test_no_url_means_no_verifier(self, mock_settings):
        mock_settings.X402_FACILITATOR_URL = None
        assert FacilitatorVerifier.from_settings() is None

    @patch("app.x402.verifier.settings")
    def test_invalid_url_means_no_verifier(self, mock_settings):
        mock_settings.X402_FACILITATOR_URL = "not a url"
        assert FacilitatorVerifier.from_settings() is None

    @patch("app.x402.verifier.settings")
    def test_configured_url(self, mock_settings):
        mock_settings.X402_FACILITATOR_URL = "https://facilitator.payai.network/"
        verifier = FacilitatorVerifier.from_settings()
        assert verifier.base_url == "https://facilitator.payai.network"


class TestFacilitatorCalls:
    """Test verify/settle against a mocked facilitator."""

    def _requirements(self):
        return PaymentRequirements(
            network="solana-devnet",
            max_amount_required="2000",
            resource="https://api.example.com/api/chat",
            pay_to=TREASURY,
            asset="4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU",
        )

    @patch("app.x402.verifier.requests.post")
    def test_verify_valid(self, mock_post):
        """A valid proof is reported valid with its payer."""
        mock_post.return_value = _http_response({"isValid": True, "payer": WALLET_A})
        verifier = FacilitatorVerifier("https://facilitator.example.com", timeout=3)

        result = asyncio.run(verifier.verify(_proof(), self._requirements()))

        assert result.is_valid is True
        assert result.payer == WALLET_A
        url = mock_post.call_args[0][0]
        sent = mock_post.call_args[1]["json"]
        assert url == "https://facilitator.example.com/verify"
        assert sent["x402Version"] == X402_VERSION
        assert sent["paymentRequirements"]["maxAmountRequired"] == "2000"
        assert sent["paymentPayload"]["scheme"] == "exact"
        assert mock_post.call_args[1]["timeout"] == 3

    @patch("app.x402.verifier.requests.post")
    def test_verify_invalid(self, mock_post):
        """An invalid proof comes back with its reason."""
        mock_post.return_value = _http_response({"isValid": False, "invalidReason": "insufficient_funds"})
        verifier = FacilitatorVerifier("https://facilitator.example.com")

        result = asyncio.run(verifier.verify(_proof(), self._requirements()))

        assert result.is_valid is False
        assert result.invalid_reason == "insufficient_funds"

    @patch("app.x402.verifier.requests.post")
    def test_verify_timeout_is_a_failed_verification(self, mock_post):
        """A facilitator timeout never counts as success."""
        mock_post.side_effect = requests.exceptions.Timeout("timed out")
        verifier = FacilitatorVerifier("https://facilitator.example.com")

        with pytest.raises(ProofInvalid) as exc_info:
            asyncio.run(verifier.verify(_proof(), self._requirements()))

        assert exc_info.value.status_code == 402
        assert exc_info.value.details["retryable"] is True

    @patch("app.x402.verifier.requests.post")
    def test_verify_http_error(self, mock_post):
        mock_post.return_value = _http_response({}, status_code=500)
        verifier = FacilitatorVerifier("https://facilitator.example.com")

        with pytest.raises(ProofInvalid):
            asyncio.run(verifier.verify(_proof(), self._requirements()))

    @patch("app.x402.verifier.requests.post")
    def test_verify_unexpected_body(self, mock_post):
        """A 200 without isValid is a failed verification, not a crash."""
        mock_post.return_value = _http_response({"error": "busy"})
        verifier = FacilitatorVerifier("https://facilitator.example.com")

        with pytest.raises(ProofInvalid) as exc_info:
            asyncio.run(verifier.verify(_proof(), self._requirements()))

        assert exc_info.value.message == "Payment verification unavailable"
        assert exc_info.value.details["retryable"] is True

    def test_verify_undecodable_proof(self):
        """Garbage proofs fail before any network call."""
        verifier = FacilitatorVerifier("https://facilitator.example.com")

        with patch("app.x402.verifier.requests.post") as mock_post:
            with pytest.raises(ProofInvalid, match="Invalid payment header format"):
                asyncio.run(verifier.verify("not-base64!!!", self._requirements()))
            mock_post.assert_not_called()

    @patch("app.x402.verifier.requests.post")
    def test_settle_success(self, mock_post):
        mock_post.return_value = _http_response({"success": True, "transaction": "sig123", "payer": WALLET_A})
        verifier = FacilitatorVerifier("https://facilitator.example.com")

        result = asyncio.run(verifier.settle(_proof(), self._requirements()))

        assert result.success is True
        assert result.transaction == "sig123"
        assert result.network == "solana-devnet"
        assert mock_post.call_args[0][0] == "https://facilitator.example.com/settle"

    @patch("app.x402.verifier.requests.post")
    def test_settle_unexpected_body(self, mock_post):
        mock_post.return_value = _http_response({"error": "busy"})
        verifier = FacilitatorVerifier("https://facilitator.example.com")

        with pytest.raises(UpstreamUnavailable):
            asyncio.run(verifier.settle(_proof(), self._requirements()))

    @patch("app.x402.verifier.requests.post")
    def test_settle_transport_failure(self, mock_post):
        mock_post.side_effect = requests.exceptions.ConnectionError("refused")
        verifier = FacilitatorVerifier("https://facilitator.example.com")

        with pytest.raises(UpstreamUnavailable):
            asyncio.run(verifier.settle(_proof(), self._requirements()))


class TestDecodeProof:
    """Test payment header decoding."""

    def test_decode_valid(self):
        assert decode_proof(_proof({"x402Version": 1}))["x402Version"] == 1

    def test_decode_invalid_json(self):
        with pytest.raises(ProofInvalid):
            decode_proof(b64encode(b"not json").decode())

    def test_decode_non_object(self):
        with pytest.raises(ProofInvalid):
            decode_proof(b64encode(b"[1, 2]").decode())


class TestEncodePaymentResponse:
    """Test X-PAYMENT-RESPONSE header encoding."""

    def test_encode_settle_response(self):
        settle_response = SettleResponse(success=True, transaction="sig123", network="solana-devnet")

        decoded = json.loads(b64decode(encode_payment_response(settle_response)).decode())

        assert decoded["success"] is True
        assert decoded["transaction"] == "sig123"
        assert decoded["network"] == "solana-devnet"


class TestTestProofVerifier:
    """Test the test-mode proof scheme."""

    def _verifier(self):
        return TestProofVerifier(clock=lambda: NOW_MS / 1000)

    def test_fresh_proof_accepted(self):
        """A proof stamped now names its wallet."""
        assert self._verifier().verify(f"test:{WALLET_A}:{NOW_MS}") == WALLET_A

    def test_proof_within_window(self):
        """59 s in either direction is still fresh."""
        verifier = self._verifier()
        assert verifier.verify(f"test:{WALLET_A}:{NOW_MS - 59_000}") == WALLET_A
        assert verifier.verify(f"test:{WALLET_A}:{NOW_MS + 59_000}") == WALLET_A

    def test_stale_proof_expired(self):
        """Older than 60 s is rejected as expired."""
        with pytest.raises(ProofExpired):
            self._verifier().verify(f"test:{WALLET_A}:{NOW_MS - 61_000}")

    def test_wrong_marker(self):
        with pytest.raises(ProofInvalid, match="Invalid test payment format"):
            self._verifier().verify(f"prod:{WALLET_A}:{NOW_MS}")

    def test_wrong_part_count(self):
        with pytest.raises(ProofInvalid):
            self._verifier().verify(f"test:{WALLET_A}")

    def test_trivial_wallet(self):
        with pytest.raises(ProofInvalid, match="Invalid wallet"):
            self._verifier().verify(f"test:abc:{NOW_MS}")

    def test_bad_timestamp(self):
        with pytest.raises(ProofInvalid, match="Invalid timestamp"):
            self._verifier().verify(f"test:{WALLET_A}:yesterday")

    def test_extract_proof(self):
        verifier = self._verifier()
        assert verifier.extract_proof({"x-payment": "test:x:1"}) == "test:x:1"
        assert verifier.extract_proof({"x-wallet": WALLET_A}) is None
