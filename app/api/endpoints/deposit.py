# app/api/endpoints/deposit.py
from fastapi import APIRouter, Depends, HTTPException, status
from typing import Any
from decimal import Decimal
import secrets
import time
import logging

from requests.exceptions import RequestException

from app.core.config import settings
from app.api.deps import get_ledger
from app.api.models.ledger import (
    DepositAddressResponse,
    DepositCheckRequest,
    DepositCheckResponse,
    SolDepositCheckResponse,
    TestCreditRequest,
    TestCreditResponse,
)
from app.services import solana_rpc
from app.x402.audit import log_deposit_credited
from app.x402.errors import DuplicateSettlement, MalformedIdentity
from app.x402.ledger import Ledger
from app.x402.pricing import to_usd
from app.x402.wallet import validate_wallet, short_wallet

router = APIRouter()
logger = logging.getLogger(__name__)

TX_SIGNATURE_MIN_LENGTH = 80
TX_SIGNATURE_MAX_LENGTH = 100
MAX_TEST_CREDIT_USD = Decimal("100")


def _validate_deposit_request(body: DepositCheckRequest) -> str:
    """Validate wallet and signature shape; returns the normalized wallet."""
    try:
        wallet = validate_wallet(body.wallet)
    except MalformedIdentity as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)

    if not TX_SIGNATURE_MIN_LENGTH <= len(body.tx_signature) <= TX_SIGNATURE_MAX_LENGTH:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid transaction signature")
    return wallet


def _fetch_transaction(tx_signature: str) -> dict:
    """Look up a transaction, mapping RPC failures to 503 and unknown signatures to 404."""
    try:
        tx = solana_rpc.get_transaction(tx_signature)
    except (RequestException, solana_rpc.SolanaRPCError) as e:
        logger.error(f"Deposit: RPC error fetching {tx_signature[:16]}...: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Failed to fetch transaction from Solana. Try again later. ({e})"
        )

    if not tx:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Transaction not found. Wait for confirmation and try again."
        )
    return tx


def _credit(ledger: Ledger, wallet: str, tx_signature: str, amount: Decimal, asset: str):
    result = ledger.credit_deposit(wallet, tx_signature, amount)
    if not result.success:
        error = DuplicateSettlement(result.error)
        raise HTTPException(status_code=error.status_code, detail=error.message)
    log_deposit_credited(wallet, tx_signature, amount, asset)
    return ledger.get_account(wallet)


@router.get(
    "/address",
    response_model=DepositAddressResponse,
    summary="Get Deposit Address"
)
def get_deposit_address() -> Any:
    """
    Returns the treasury address that accepts deposits, the USDC mint for the
    configured network and the SOL/USD rate applied to native SOL deposits.
    """
    return DepositAddressResponse(
        deposit_address=settings.X402_DEPOSIT_ADDRESS,
        usdc_mint=settings.usdc_mint,
        network=settings.x402_network,
        minimum_deposit=float(settings.X402_MIN_DEPOSIT_USD),
        sol_price=float(settings.X402_SOL_USD_RATE),
        instructions=[
            "1. Send USDC (or SOL) to the deposit address",
            "2. Wait for the transaction to confirm",
            "3. POST the transaction signature to /deposit/check (or /deposit/check-sol)",
            "4. Call paid endpoints with the X-Wallet header",
        ],
        note=f"Deposits on Solana {settings.SOLANA_NETWORK}. SOL credits = SOL amount x SOL price.",
    )


@router.post(
    "/check",
    response_model=DepositCheckResponse,
    summary="Verify and Credit a USDC Deposit"
)
def check_usdc_deposit(
    body: DepositCheckRequest,
    ledger: Ledger = Depends(get_ledger),
) -> Any:
    """
    Verifies a USDC transfer to the deposit address and credits the sender's balance.

    Each transaction signature is credited at most once.

    Raises:
        HTTPException: 400 invalid input, no transfer or already processed;
            404 transaction not found; 503 Solana RPC unavailable
    """
    wallet = _validate_deposit_request(body)
    logger.info(f"Deposit: Checking tx {body.tx_signature[:16]}... for {short_wallet(wallet)}")

    tx = _fetch_transaction(body.tx_signature)
    amount = to_usd(solana_rpc.parse_usdc_transfer(tx, settings.X402_DEPOSIT_ADDRESS, settings.usdc_mint))
    if amount <= 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No USDC transfer to deposit address found in this transaction"
        )

    account = _credit(ledger, wallet, body.tx_signature, amount, "USDC")
    logger.info(f"Deposit: Credited ${amount} to {short_wallet(wallet)}")

    return DepositCheckResponse(
        success=True,
        credited=float(amount),
        new_balance=float(account.balance),
        total_deposited=float(account.total_deposited),
        tx_signature=body.tx_signature,
    )


@router.post(
    "/check-sol",
    response_model=SolDepositCheckResponse,
    summary="Verify and Credit a SOL Deposit"
)
def check_sol_deposit(
    body: DepositCheckRequest,
    ledger: Ledger = Depends(get_ledger),
) -> Any:
    """
    Verifies a native SOL transfer to the deposit address and credits its USD
    equivalent at the configured SOL/USD rate. The claimed wallet must take
    part in the transaction.
    """
    wallet = _validate_deposit_request(body)
    logger.info(f"Deposit: Checking SOL tx {body.tx_signature[:16]}... for {short_wallet(wallet)}")

    tx = _fetch_transaction(body.tx_signature)
    account_keys = solana_rpc.get_account_keys(tx)
    if settings.X402_DEPOSIT_ADDRESS not in account_keys:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Deposit wallet not found in transaction")

    sol_received = solana_rpc.parse_sol_transfer(tx, settings.X402_DEPOSIT_ADDRESS)
    if sol_received <= 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No SOL received by deposit address in this transaction"
        )

    if wallet not in account_keys:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Sender wallet not found in transaction")

    sol_price = settings.X402_SOL_USD_RATE
    usd_credits = to_usd(sol_received * sol_price)
    if usd_credits <= 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Deposit too small to credit")

    account = _credit(ledger, wallet, body.tx_signature, usd_credits, "SOL")
    logger.info(f"Deposit: SOL deposit {sol_received} SOL = ${usd_credits} credited to {short_wallet(wallet)}")

    return SolDepositCheckResponse(
        success=True,
        sol_amount=float(sol_received),
        usd_credited=float(usd_credits),
        sol_price=float(sol_price),
        new_balance=float(account.balance),
        total_deposited=float(account.total_deposited),
        tx_signature=body.tx_signature,
    )


@router.post(
    "/credit-test",
    response_model=TestCreditResponse,
    summary="Credit Test Balance (test mode only)"
)
def credit_test_balance(
    body: TestCreditRequest,
    ledger: Ledger = Depends(get_ledger),
) -> Any:
    """
    Credits a balance without a real transaction, for demos. Only available
    when X402_MODE=test.
    """
    if not settings.is_test_mode:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Test credits only available in test mode")

    try:
        wallet = validate_wallet(body.wallet)
    except MalformedIdentity as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)

    amount = to_usd(body.amount)
    if amount <= 0 or amount > MAX_TEST_CREDIT_USD:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Amount must be between 0 and 100")

    fake_tx = f"test_{int(time.time() * 1000)}_{secrets.token_hex(4)}"
    account = _credit(ledger, wallet, fake_tx, amount, "TEST")
    logger.info(f"Deposit: TEST CREDIT ${amount} to {short_wallet(wallet)}")

    return TestCreditResponse(
        success=True,
        credited=float(amount),
        new_balance=float(account.balance),
    )
