# app/x402/gate.py
"""
Payment gate: decides whether a request to a paid resource may proceed.

Authorization paths are tried in a fixed order (GATE_ORDER):

1. free_tier - the resource opts in, a wallet is present and has free uses left
2. proof     - the request carries an x402 proof (or a test proof in test mode)
3. credit    - a wallet is present and its prepaid balance covers the price

The first path that admits the request wins. A proof that fails verification
rejects the request outright; it never falls through to the credit path, so
a request carrying a proof is never debited.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from starlette.concurrency import run_in_threadpool

from x402.types import SettleResponse

from app.core.config import settings
from app.x402.errors import InsufficientBalance, PaymentRequired, ProofInvalid, UpstreamUnavailable
from app.x402.ledger import Ledger
from app.x402.pricing import format_usd
from app.x402.quota import FreeQuota
from app.x402.referral import ReferralBook
from app.x402.verifier import FacilitatorVerifier, TestProofVerifier
from app.x402.wallet import short_wallet, validate_wallet

logger = logging.getLogger(__name__)

X_WALLET_HEADER = "x-wallet"

GATE_ORDER = ("free_tier", "proof", "credit")

DEFAULT_INSTRUCTIONS = (
    "Send X-Wallet header with your Solana wallet address. "
    "Deposit USDC first via /deposit endpoints."
)


class PaymentMethod(str, Enum):
    """How an admitted request was paid for (also the X-Payment-Mode header value)."""
    FREE_TIER = "free-tier"
    X402 = "x402"
    TEST = "test"
    CREDIT = "credit"


@dataclass
class GateRequest:
    """The parts of an HTTP request the gate looks at."""
    method: str
    path: str
    resource_url: str
    price: Decimal
    headers: Dict[str, str] = field(default_factory=dict)
    free_tier: bool = False
    description: str = ""

    def __post_init__(self):
        self.headers = {k.lower(): v for k, v in self.headers.items()}

    @property
    def wallet(self) -> Optional[str]:
        """Raw X-Wallet value, or None when the header is absent or blank."""
        value = self.headers.get(X_WALLET_HEADER)
        if value is None or not value.strip():
            return None
        return value


@dataclass
class PaymentReceipt:
    """Result of a successful authorization."""
    method: PaymentMethod
    amount: Decimal
    wallet: Optional[str] = None
    balance: Optional[Decimal] = None
    free_remaining: Optional[int] = None
    payer: Optional[str] = None
    tx_ref: Optional[str] = None
    settlement: Optional[SettleResponse] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "method": self.method.value,
            "amount": float(self.amount),
            "wallet": self.wallet,
        }
        if self.balance is not None:
            data["balance"] = float(self.balance)
        if self.free_remaining is not None:
            data["free_remaining"] = self.free_remaining
        if self.payer is not None:
            data["payer"] = self.payer
        if self.tx_ref is not None:
            data["tx_ref"] = self.tx_ref
        return data


class PaymentGate:
    """
    Ordered authorization over free tier, protocol proof and prepaid credit.

    The verifier is optional. Without it the gate still runs: requests are
    admitted through the free tier, credit, or (in test mode) test proofs.
    """

    def __init__(
        self,
        ledger: Ledger,
        quota: FreeQuota,
        referrals: Optional[ReferralBook] = None,
        verifier: Optional[FacilitatorVerifier] = None,
        test_verifier: Optional[TestProofVerifier] = None,
    ):
        self.ledger = ledger
        self.quota = quota
        self.referrals = referrals
        self.verifier = verifier
        self.test_verifier = test_verifier

    async def authorize(self, request: GateRequest) -> PaymentReceipt:
        """
        Run the request through the authorization paths in GATE_ORDER.

        Raises:
            MalformedIdentity: X-Wallet is present but not a valid address
            PaymentRequired: No path admitted the request (or a subclass:
                InsufficientBalance, ProofInvalid, ProofExpired)
        """
        wallet = request.wallet
        if wallet is not None:
            wallet = validate_wallet(wallet)

        for step in GATE_ORDER:
            try:
                receipt = await getattr(self, f"_try_{step}")(request, wallet)
            except PaymentRequired as e:
                raise self._with_instructions(e, request)
            if receipt is not None:
                return receipt

        logger.info(f"x402: No payment for {request.method} {request.path}, returning 402")
        raise self._with_instructions(PaymentRequired(price=request.price), request)

    def payment_details(self, request: GateRequest) -> Dict[str, Any]:
        """Machine-readable payment instructions included in every 402."""
        details: Dict[str, Any] = {
            "price_display": format_usd(request.price),
            "currency": "USDC",
            "network": settings.x402_network,
            "deposit_address": settings.X402_DEPOSIT_ADDRESS,
            "usdc_mint": settings.usdc_mint,
            "accepts_test": self.test_verifier is not None,
            "instructions": DEFAULT_INSTRUCTIONS,
            "x402Version": 1,
        }
        if self.verifier is not None:
            requirements = self.verifier.build_requirements(
                request.price, request.resource_url, request.description
            )
            details["accepts"] = [requirements.model_dump(by_alias=True)]
        return details

    def _with_instructions(self, error: PaymentRequired, request: GateRequest) -> PaymentRequired:
        if error.price is None:
            error.price = request.price
        # Specific details (balance, shortfall, instructions) override the defaults
        error.details = {**self.payment_details(request), **error.details}
        return error

    # --- Authorization paths ---

    async def _try_free_tier(self, request: GateRequest, wallet: Optional[str]) -> Optional[PaymentReceipt]:
        if not request.free_tier or wallet is None:
            return None

        consumed = await run_in_threadpool(self.quota.decrement, wallet)
        if not consumed:
            return None

        remaining = await run_in_threadpool(self.quota.remaining, wallet)
        logger.info(f"x402: Free tier use for {short_wallet(wallet)} on {request.path} ({remaining} left)")
        return PaymentReceipt(
            method=PaymentMethod.FREE_TIER,
            amount=Decimal("0"),
            wallet=wallet,
            free_remaining=remaining,
        )

    async def _try_proof(self, request: GateRequest, wallet: Optional[str]) -> Optional[PaymentReceipt]:
        if self.verifier is not None:
            proof = self.verifier.extract_proof(request.headers)
            if proof is not None:
                return await self._admit_protocol_proof(request, wallet, proof)

        if self.test_verifier is not None:
            test_proof = self.test_verifier.extract_proof(request.headers)
            if test_proof is not None:
                return await self._admit_test_proof(request, test_proof)

        return None

    async def _try_credit(self, request: GateRequest, wallet: Optional[str]) -> Optional[PaymentReceipt]:
        if wallet is None:
            return None

        result = await run_in_threadpool(self.ledger.debit_spend, wallet, request.path, request.price)
        if not result.success:
            logger.info(
                f"x402: Insufficient balance for {short_wallet(wallet)} on {request.path} "
                f"(balance: ${result.balance}, price: ${request.price})"
            )
            raise InsufficientBalance(result.balance, request.price)

        if self.referrals is not None:
            try:
                await run_in_threadpool(self.referrals.record_spend, wallet, request.path, request.price)
            except Exception as e:
                logger.error(f"x402: Failed to record referral earning for {short_wallet(wallet)}: {e}")

        logger.info(f"x402: {request.path} - ${request.price} from {short_wallet(wallet)} (balance: ${result.balance})")
        return PaymentReceipt(
            method=PaymentMethod.CREDIT,
            amount=request.price,
            wallet=wallet,
            balance=result.balance,
        )

    # --- Proof admission ---

    async def _admit_protocol_proof(
        self, request: GateRequest, wallet: Optional[str], proof: str
    ) -> PaymentReceipt:
        requirements = self.verifier.build_requirements(
            request.price, request.resource_url, request.description
        )
        verification = await self.verifier.verify(proof, requirements)
        if not verification.is_valid:
            reason = verification.invalid_reason or "unknown reason"
            logger.warning(f"x402: Payment verification failed for {request.path}: {reason}")
            raise ProofInvalid(f"Payment verification failed: {reason}")

        payer = verification.payer or wallet
        logger.info(f"x402: Payment verified for payer {short_wallet(payer)} on {request.path}")

        settlement: Optional[SettleResponse] = None
        try:
            settlement = await self.verifier.settle(proof, requirements)
        except UpstreamUnavailable as e:
            # Verified but unsettled: admit anyway, settlement is retried out-of-band
            logger.error(f"x402: Payment settlement failed for {request.path}: {e.message}")

        tx_ref = None
        if settlement is not None:
            if settlement.success:
                tx_ref = settlement.transaction
                logger.info(f"x402: Payment settled for {request.path} (tx: {tx_ref})")
            else:
                logger.error(f"x402: Payment settlement rejected for {request.path}: {settlement.error_reason}")

        await self._log_protocol_payment(wallet or payer, request, requirements.max_amount_required, tx_ref)
        return PaymentReceipt(
            method=PaymentMethod.X402,
            amount=request.price,
            wallet=wallet,
            payer=payer,
            tx_ref=tx_ref,
            settlement=settlement if settlement is not None and settlement.success else None,
        )

    async def _admit_test_proof(self, request: GateRequest, proof: str) -> PaymentReceipt:
        payer = self.test_verifier.verify(proof)
        logger.info(f"x402: {request.path} - ${request.price} (TEST MODE) from {short_wallet(payer)}")
        return PaymentReceipt(
            method=PaymentMethod.TEST,
            amount=request.price,
            wallet=payer,
            payer=payer,
        )

    async def _log_protocol_payment(
        self, wallet: Optional[str], request: GateRequest, amount_atomic: str, tx_ref: Optional[str]
    ) -> None:
        try:
            await run_in_threadpool(
                self.ledger.log_protocol_payment, wallet, request.path, amount_atomic, tx_ref
            )
        except Exception as e:
            logger.error(f"x402: Failed to log protocol payment for {request.path}: {e}")


def build_payment_gate(session_factory, verifier: Optional[FacilitatorVerifier] = None) -> PaymentGate:
    """
    Wire a PaymentGate against a ledger store.

    The test-proof verifier is only attached when X402_MODE=test.
    """
    return PaymentGate(
        ledger=Ledger(session_factory),
        quota=FreeQuota(session_factory),
        referrals=ReferralBook(session_factory),
        verifier=verifier,
        test_verifier=TestProofVerifier() if settings.is_test_mode else None,
    )
