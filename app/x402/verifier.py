# app/x402/verifier.py
"""
Protocol proof verification.

Two verifiers exist:

1. FacilitatorVerifier - real x402 payments. The client signs a USDC transfer
   and sends it base64-encoded in PAYMENT-SIGNATURE (or X-PAYMENT-SIGNATURE).
   Verification and settlement are delegated to the facilitator over HTTP.
2. TestProofVerifier - test mode only. Accepts X-Payment: test:{wallet}:{unixMillis}
   without any network call.

The gate never parses proofs itself; it asks a verifier whether a request
carries one and whether it is valid.
"""
import json
import logging
import time
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional

import requests
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel
from starlette.concurrency import run_in_threadpool

from x402.encoding import safe_base64_decode, safe_base64_encode
from x402.types import SettleResponse, VerifyResponse

from app.core.config import settings
from app.x402.errors import ProofExpired, ProofInvalid, UpstreamUnavailable
from app.x402.pricing import usd_to_atomic

logger = logging.getLogger(__name__)

# x402 protocol constants
X402_VERSION = 1
PAYMENT_SIGNATURE_HEADERS = ("PAYMENT-SIGNATURE", "X-PAYMENT-SIGNATURE")
X_PAYMENT_HEADER = "X-Payment"
X_PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"

# Test proofs
TEST_PROOF_MARKER = "test"
TEST_PROOF_MIN_WALLET_LENGTH = 10
TEST_PROOF_MAX_AGE_MS = 60_000

MAX_TIMEOUT_SECONDS = 60


class PaymentRequirements(BaseModel):
    """
    What a client must pay to access a resource, as advertised in a 402.

    Serialized with camelCase keys (maxAmountRequired, payTo, ...) to match
    the x402 wire format.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    scheme: str = "exact"
    network: str
    max_amount_required: str
    resource: str
    description: str = ""
    mime_type: str = "application/json"
    pay_to: str
    max_timeout_seconds: int = MAX_TIMEOUT_SECONDS
    asset: str
    extra: Optional[Dict[str, Any]] = None


def _get_header(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup on a plain mapping."""
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def decode_proof(proof: str) -> Dict[str, Any]:
    """
    Decode a base64 PAYMENT-SIGNATURE value into the payment payload dict.

    Raises:
        ProofInvalid: If the value is not base64-encoded JSON
    """
    try:
        decoded = safe_base64_decode(proof)
        payload = json.loads(decoded)
    except (ValueError, UnicodeDecodeError) as e:
        logger.warning(f"x402: Failed to decode payment header: {e}")
        raise ProofInvalid("Invalid payment header format") from e

    if not isinstance(payload, dict):
        raise ProofInvalid("Invalid payment header format")
    return payload


def encode_payment_response(settle_response: SettleResponse) -> str:
    """
    Encode a settlement response for the X-PAYMENT-RESPONSE header.

    Returns:
        Base64-encoded JSON string
    """
    response_json = json.dumps(settle_response.model_dump(by_alias=True))
    return safe_base64_encode(response_json.encode("utf-8"))


class FacilitatorVerifier:
    """Verifies and settles x402 payments through a facilitator service."""

    def __init__(self, base_url: str, timeout: Optional[float] = None):
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout

    @classmethod
    def from_settings(cls) -> Optional["FacilitatorVerifier"]:
        """
        Build a verifier from config.

        Returns None when no usable facilitator URL is configured; the gate
        then runs without the protocol-proof path.
        """
        url = settings.X402_FACILITATOR_URL
        if not url or not url.startswith(("http://", "https://")):
            logger.warning(f"x402: Facilitator not configured ({url!r}), running credit-only")
            return None
        logger.info(f"x402: Facilitator verifier ready ({url}, network: {settings.x402_network})")
        return cls(url)

    @property
    def timeout(self) -> float:
        """Get the facilitator timeout (lazy load from settings if not set)."""
        if self._timeout is not None:
            return self._timeout
        return settings.X402_FACILITATOR_TIMEOUT_SECONDS

    def build_requirements(
        self,
        price_usd: Decimal,
        resource_url: str,
        description: str = "",
    ) -> PaymentRequirements:
        """
        Build the payment requirements for a resource.

        Args:
            price_usd: Price in USD (converted to USDC atomic units)
            resource_url: Absolute URL of the resource being paid for
            description: Human-readable resource description

        Returns:
            PaymentRequirements for the 402 response and for verify/settle
        """
        return PaymentRequirements(
            scheme="exact",
            network=settings.x402_network,
            max_amount_required=str(usd_to_atomic(price_usd)),
            resource=resource_url,
            description=description,
            mime_type="application/json",
            pay_to=settings.X402_DEPOSIT_ADDRESS,
            max_timeout_seconds=MAX_TIMEOUT_SECONDS,
            asset=settings.usdc_mint,
        )

    def extract_proof(self, headers: Mapping[str, str]) -> Optional[str]:
        """Return the opaque proof blob if the request carries one."""
        for name in PAYMENT_SIGNATURE_HEADERS:
            value = _get_header(headers, name)
            if value:
                return value.strip()
        return None

    async def verify(self, proof: str, requirements: PaymentRequirements) -> VerifyResponse:
        """
        Ask the facilitator whether a proof pays for the requirements.

        Raises:
            ProofInvalid: If the proof cannot be decoded or the facilitator
                cannot be reached. Both count as a failed verification.
        """
        payload = decode_proof(proof)
        try:
            body = await run_in_threadpool(self._post, "/verify", payload, requirements)
            body.setdefault("payer", None)
            return VerifyResponse.model_validate(body)
        except requests.exceptions.Timeout as e:
            logger.error(f"x402: Facilitator verify timed out after {self.timeout}s")
            raise ProofInvalid(
                "Payment verification timed out", details={"retryable": True}
            ) from e
        except (requests.exceptions.RequestException, ValidationError, ValueError) as e:
            logger.error(f"x402: Facilitator verify failed: {e}")
            raise ProofInvalid(
                "Payment verification unavailable", details={"retryable": True}
            ) from e

    async def settle(self, proof: str, requirements: PaymentRequirements) -> SettleResponse:
        """
        Settle a verified proof through the facilitator.

        Raises:
            UpstreamUnavailable: If the facilitator cannot be reached or answers garbage
        """
        payload = decode_proof(proof)
        try:
            body = await run_in_threadpool(self._post, "/settle", payload, requirements)
            body.setdefault("network", requirements.network)
            return SettleResponse.model_validate(body)
        except (requests.exceptions.RequestException, ValidationError, ValueError) as e:
            raise UpstreamUnavailable(f"Payment settlement failed: {e}") from e

    def _post(self, path: str, payload: Dict[str, Any], requirements: PaymentRequirements) -> Dict[str, Any]:
        response = requests.post(
            f"{self.base_url}{path}",
            json={
                "x402Version": X402_VERSION,
                "paymentPayload": payload,
                "paymentRequirements": requirements.model_dump(by_alias=True, exclude_none=True),
            },
            timeout=self.timeout,
        )
        response.raise_for_status()
        body = response.json()
        if not isinstance(body, dict):
            raise ValueError(f"Unexpected facilitator response: {body!r}")
        return body


class TestProofVerifier:
    """
    Accepts self-issued test proofs: X-Payment: test:{wallet}:{unixMillis}.

    Only wired into the gate when X402_MODE=test. Never calls the facilitator
    and never touches the ledger.
    """

    __test__ = False  # not a pytest test class

    def __init__(self, max_age_ms: int = TEST_PROOF_MAX_AGE_MS, clock: Optional[Callable[[], float]] = None):
        self.max_age_ms = max_age_ms
        self._clock = clock or time.time

    def extract_proof(self, headers: Mapping[str, str]) -> Optional[str]:
        value = _get_header(headers, X_PAYMENT_HEADER)
        return value.strip() if value else None

    def verify(self, proof: str) -> str:
        """
        Check a test proof.

        Returns:
            The wallet named in the proof

        Raises:
            ProofInvalid: Malformed proof
            ProofExpired: Timestamp more than max_age_ms away from now
        """
        parts = proof.split(":")
        if len(parts) != 3 or parts[0] != TEST_PROOF_MARKER:
            raise ProofInvalid(
                "Invalid test payment format. Expected: test:{wallet}:{timestamp}",
                details={"accepts_test": True},
            )

        _, wallet, raw_timestamp = parts
        if len(wallet) < TEST_PROOF_MIN_WALLET_LENGTH:
            raise ProofInvalid("Invalid wallet address in test payment")

        try:
            timestamp = int(raw_timestamp)
        except ValueError:
            raise ProofInvalid("Invalid timestamp in test payment")

        now_ms = int(self._clock() * 1000)
        if abs(now_ms - timestamp) > self.max_age_ms:
            raise ProofExpired(f"Test payment expired (>{self.max_age_ms // 1000}s)")

        return wallet
