# app/api/models/referral.py
from pydantic import BaseModel, Field
from typing import Optional, List, Dict
from datetime import datetime


class ReferralGenerateRequest(BaseModel):
    wallet: str = Field(..., description="Wallet that will share the code.")
    custom_code: Optional[str] = Field(None, description="Optional vanity code (3-20 letters, digits, '_' or '-').")


class ReferralCodeResponse(BaseModel):
    code: str
    link: str


class ReferralApplyRequest(BaseModel):
    wallet: str = Field(..., description="Wallet being referred.")
    code: str = Field(..., description="Referral code of the referrer.")


class ReferralApplyResponse(BaseModel):
    ok: bool = True
    referrer: str = Field(..., description="Referrer wallet, abbreviated.")


class ReferralEarningItem(BaseModel):
    referred_wallet: str
    endpoint: str
    source_amount: float
    earned_amount: float
    asset: str
    paid: bool
    created_at: Optional[datetime] = None


class ReferralStatsResponse(BaseModel):
    code: str
    link: str
    referralCount: int
    totalEarnings: Dict[str, float]
    unpaidEarnings: Dict[str, float]
    recentEarnings: List[ReferralEarningItem]


class ReferralClaimRequest(BaseModel):
    wallet: str


class ReferralClaimResponse(BaseModel):
    success: bool
    claimed: Dict[str, float]
    txSignature: str = Field(..., description="Payout reference; the payout itself is processed manually.")
    note: str = "Payout queued for manual processing"
    marked: int
