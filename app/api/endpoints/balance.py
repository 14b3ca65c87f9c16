# app/api/endpoints/balance.py
from fastapi import APIRouter, Depends, HTTPException, Path, status
from typing import Any
from datetime import datetime, timezone
import logging

from app.api.deps import get_ledger, get_quota
from app.api.models.ledger import BalanceResponse
from app.x402.ledger import Ledger
from app.x402.quota import FreeQuota
from app.x402.wallet import is_valid_wallet

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get(
    "/{wallet}",
    response_model=BalanceResponse,
    summary="Get Wallet Balance and Usage"
)
def get_balance(
    wallet: str = Path(..., description="Solana wallet address."),
    ledger: Ledger = Depends(get_ledger),
    quota: FreeQuota = Depends(get_quota),
) -> Any:
    """
    Returns the prepaid balance, lifetime totals, spend today and this month
    (UTC), and free-tier uses left. Reading a balance never creates an account.
    """
    if not is_valid_wallet(wallet):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid wallet address")

    free_remaining = quota.remaining(wallet)
    account = ledger.get_account(wallet)
    if account is None:
        return BalanceResponse(wallet=wallet, free_remaining=free_remaining, exists=False)

    now = datetime.now(timezone.utc)
    today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    month_start = today_start.replace(day=1)
    today = ledger.spend_stats(wallet, today_start)
    month = ledger.spend_stats(wallet, month_start)

    return BalanceResponse(
        wallet=wallet,
        balance=float(account.balance),
        total_deposited=float(account.total_deposited),
        total_spent=float(account.total_spent),
        usage_today=float(today.total),
        usage_month=float(month.total),
        requests_today=today.count,
        requests_month=month.count,
        free_remaining=free_remaining,
        exists=True,
        created_at=account.created_at,
        updated_at=account.updated_at,
    )
