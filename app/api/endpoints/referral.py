# app/api/endpoints/referral.py
from fastapi import APIRouter, Depends, HTTPException, Query, status
from typing import Any
import logging

from app.core.config import settings
from app.api.deps import get_referrals
from app.api.models.referral import (
    ReferralApplyRequest,
    ReferralApplyResponse,
    ReferralClaimRequest,
    ReferralClaimResponse,
    ReferralCodeResponse,
    ReferralGenerateRequest,
    ReferralStatsResponse,
)
from app.x402.audit import log_referral_claimed
from app.x402.errors import MalformedIdentity
from app.x402.referral import ReferralBook
from app.x402.wallet import validate_wallet

router = APIRouter()
logger = logging.getLogger(__name__)


def _wallet_or_400(wallet: str) -> str:
    try:
        return validate_wallet(wallet)
    except MalformedIdentity as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)


def _referral_link(code: str) -> str:
    return f"{settings.REFERRAL_BASE_URL.rstrip('/')}/ref/{code}"


@router.post(
    "/generate",
    response_model=ReferralCodeResponse,
    summary="Generate or Get a Referral Code"
)
def generate_code(
    body: ReferralGenerateRequest,
    referrals: ReferralBook = Depends(get_referrals),
) -> Any:
    """Returns the wallet's referral code, creating it (optionally with a custom code) on first use."""
    wallet = _wallet_or_400(body.wallet)
    try:
        code = referrals.get_or_create_code(wallet, body.custom_code)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return ReferralCodeResponse(code=code, link=_referral_link(code))


@router.post(
    "/apply",
    response_model=ReferralApplyResponse,
    summary="Apply a Referral Code"
)
def apply_code(
    body: ReferralApplyRequest,
    referrals: ReferralBook = Depends(get_referrals),
) -> Any:
    """
    Links the wallet to the owner of the referral code. A wallet can only be
    referred once and cannot refer itself.
    """
    wallet = _wallet_or_400(body.wallet)
    referrer = referrals.resolve_code(body.code)
    if referrer is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invalid referral code")

    result = referrals.link(referrer, wallet, body.code)
    if not result.success:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result.error)

    return ReferralApplyResponse(ok=True, referrer=f"{referrer[:4]}...{referrer[-4:]}")


@router.get(
    "/stats",
    response_model=ReferralStatsResponse,
    summary="Get Referral Dashboard"
)
def get_stats(
    wallet: str = Query(..., description="Referrer wallet address."),
    referrals: ReferralBook = Depends(get_referrals),
) -> Any:
    """Code, link, number of referred wallets, and total/unpaid/recent earnings."""
    wallet = _wallet_or_400(wallet)
    code = referrals.get_or_create_code(wallet)

    return ReferralStatsResponse(
        code=code,
        link=_referral_link(code),
        referralCount=referrals.referral_count(wallet),
        totalEarnings={k: float(v) for k, v in referrals.total_earnings(wallet).items()},
        unpaidEarnings={k: float(v) for k, v in referrals.unpaid_earnings(wallet).items()},
        recentEarnings=referrals.recent_earnings(wallet),
    )


@router.post(
    "/claim",
    response_model=ReferralClaimResponse,
    summary="Claim Unpaid Referral Earnings"
)
def claim_earnings(
    body: ReferralClaimRequest,
    referrals: ReferralBook = Depends(get_referrals),
) -> Any:
    """
    Marks all unpaid earnings as paid once any asset reaches its minimum payout.
    The payout itself is queued for manual processing.
    """
    wallet = _wallet_or_400(body.wallet)
    result = referrals.claim(wallet)
    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": result.error, "unpaid": {k: float(v) for k, v in result.claimed.items()}},
        )

    log_referral_claimed(wallet, result.claimed, result.paid_ref, result.marked)
    return ReferralClaimResponse(
        success=True,
        claimed={k: float(v) for k, v in result.claimed.items()},
        txSignature=result.paid_ref,
        marked=result.marked,
    )
