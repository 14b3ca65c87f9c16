# app/api/deps.py
"""Request-scoped access to the ledger components created in the app lifespan."""
from fastapi import Request

from app.x402.gate import PaymentGate
from app.x402.ledger import Ledger
from app.x402.quota import FreeQuota
from app.x402.referral import ReferralBook


def get_payment_gate(request: Request) -> PaymentGate:
    return request.app.state.payment_gate


def get_ledger(request: Request) -> Ledger:
    return get_payment_gate(request).ledger


def get_quota(request: Request) -> FreeQuota:
    return get_payment_gate(request).quota


def get_referrals(request: Request) -> ReferralBook:
    return get_payment_gate(request).referrals
