# app/x402/referral.py
"""
Referral accounting.

A referred wallet's credit-mode spends earn its referrer a 10% revenue share.
Earnings are a separate ledger from spendable balance: they accumulate as
unpaid rows and are marked paid in one step when the referrer claims them.
Executing the payout itself happens out-of-band.
"""
import logging
import re
import secrets
import time
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from app.db.models import ReferralCode, ReferralEarning, ReferralLink
from app.x402.audit import log_referral_earned
from app.x402.pricing import Numeric, to_usd
from app.x402.wallet import short_wallet

logger = logging.getLogger(__name__)

REFERRAL_SHARE = Decimal("0.10")

# Minimum unpaid amount per asset before a claim is accepted
MIN_PAYOUTS = {
    "SOL": Decimal("0.005"),
    "USDC": Decimal("0.50"),
}

CODE_LENGTH = 8
CUSTOM_CODE_RE = re.compile(r"^[A-Za-z0-9_-]{3,20}$")
MAX_CODE_ATTEMPTS = 5


@dataclass
class LinkResult:
    success: bool
    error: Optional[str] = None


@dataclass
class ClaimResult:
    success: bool
    claimed: Dict[str, Decimal] = field(default_factory=dict)
    paid_ref: Optional[str] = None
    marked: int = 0
    error: Optional[str] = None


def _sum_by_asset(rows) -> Dict[str, Decimal]:
    totals: Dict[str, Decimal] = defaultdict(lambda: Decimal("0"))
    for asset, amount in rows:
        totals[asset] += amount
    return dict(totals)


class ReferralBook:
    """Referral codes, links and earnings backed by the ledger store."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    # --- Codes ---

    def get_code(self, wallet: str) -> Optional[str]:
        with self._session_factory() as session:
            return session.scalar(
                select(ReferralCode.code).where(ReferralCode.wallet_address == wallet)
            )

    def get_or_create_code(self, wallet: str, custom_code: Optional[str] = None) -> str:
        """
        Return the wallet's referral code, creating one if needed.

        Args:
            wallet: Wallet that will share the code
            custom_code: Optional vanity code (3-20 chars of A-Z, 0-9, _ or -)

        Raises:
            ValueError: If the custom code is malformed or already taken
        """
        existing = self.get_code(wallet)
        if existing:
            return existing

        if custom_code is not None and not CUSTOM_CODE_RE.match(custom_code):
            raise ValueError("Referral code must be 3-20 letters, digits, '_' or '-'")

        for _ in range(MAX_CODE_ATTEMPTS):
            code = (custom_code or secrets.token_hex(CODE_LENGTH // 2)).upper()
            try:
                with self._session_factory.begin() as session:
                    session.add(ReferralCode(wallet_address=wallet, code=code))
                logger.info(f"Referral: Created code {code} for {short_wallet(wallet)}")
                return code
            except IntegrityError:
                # Either this wallet got a code concurrently or the code is taken
                existing = self.get_code(wallet)
                if existing:
                    return existing
                if custom_code is not None:
                    raise ValueError(f"Referral code '{custom_code}' is already taken")

        raise RuntimeError("Could not allocate a unique referral code")

    def resolve_code(self, code: str) -> Optional[str]:
        """Find the wallet that owns a referral code."""
        with self._session_factory() as session:
            return session.scalar(
                select(ReferralCode.wallet_address).where(ReferralCode.code == code.upper())
            )

    # --- Links ---

    def link(self, referrer: str, referred: str, code: str) -> LinkResult:
        """
        Record that `referred` was referred by `referrer`.

        A wallet can be referred once; the link never changes afterwards.
        """
        if referrer == referred:
            return LinkResult(success=False, error="Cannot refer yourself")

        try:
            with self._session_factory.begin() as session:
                session.add(ReferralLink(
                    referred_wallet=referred,
                    referrer=referrer,
                    code=code.upper(),
                ))
        except IntegrityError:
            return LinkResult(success=False, error="Wallet already has a referrer")

        logger.info(f"Referral: {short_wallet(referred)} referred by {short_wallet(referrer)}")
        return LinkResult(success=True)

    def referrer_of(self, wallet: str) -> Optional[str]:
        with self._session_factory() as session:
            return session.scalar(
                select(ReferralLink.referrer).where(ReferralLink.referred_wallet == wallet)
            )

    def referral_count(self, wallet: str) -> int:
        with self._session_factory() as session:
            return session.scalar(
                select(func.count()).select_from(ReferralLink).where(ReferralLink.referrer == wallet)
            )

    # --- Earnings ---

    def record_earning(
        self,
        referrer: str,
        referred: str,
        endpoint: str,
        source_amount: Numeric,
        asset: str = "USDC",
    ) -> ReferralEarning:
        """Append one revenue-share row worth REFERRAL_SHARE of the source amount."""
        source_amount = to_usd(source_amount)
        earned = to_usd(source_amount * REFERRAL_SHARE)
        with self._session_factory.begin() as session:
            earning = ReferralEarning(
                referrer=referrer,
                referred_wallet=referred,
                endpoint=endpoint,
                source_amount=source_amount,
                earned_amount=earned,
                asset=asset,
                paid=False,
            )
            session.add(earning)
        return earning

    def record_spend(self, wallet: str, endpoint: str, amount: Numeric) -> Optional[ReferralEarning]:
        """
        Credit the spender's referrer, if any, for a credit-mode spend.

        Best-effort: the charge has already committed, so a failure here is
        logged and swallowed rather than surfaced to the request.
        """
        try:
            referrer = self.referrer_of(wallet)
            if referrer is None:
                return None
            earning = self.record_earning(referrer, wallet, endpoint, amount)
            logger.info(
                f"Referral: {short_wallet(referrer)} earned ${earning.earned_amount} "
                f"from {short_wallet(wallet)} on {endpoint}"
            )
            log_referral_earned(referrer, wallet, endpoint, earning.earned_amount)
            return earning
        except Exception as e:
            logger.error(f"Referral: Failed to record earning for {short_wallet(wallet)}: {e}")
            return None

    def total_earnings(self, wallet: str) -> Dict[str, Decimal]:
        with self._session_factory() as session:
            rows = session.execute(
                select(ReferralEarning.asset, ReferralEarning.earned_amount)
                .where(ReferralEarning.referrer == wallet)
            ).all()
        return _sum_by_asset(rows)

    def unpaid_earnings(self, wallet: str) -> Dict[str, Decimal]:
        with self._session_factory() as session:
            rows = session.execute(
                select(ReferralEarning.asset, ReferralEarning.earned_amount)
                .where(ReferralEarning.referrer == wallet, ReferralEarning.paid.is_(False))
            ).all()
        return _sum_by_asset(rows)

    def recent_earnings(self, wallet: str, limit: int = 20) -> List[Dict[str, Any]]:
        with self._session_factory() as session:
            earnings = session.scalars(
                select(ReferralEarning)
                .where(ReferralEarning.referrer == wallet)
                .order_by(ReferralEarning.created_at.desc(), ReferralEarning.id.desc())
                .limit(limit)
            ).all()
        return [
            {
                "referred_wallet": e.referred_wallet,
                "endpoint": e.endpoint,
                "source_amount": e.source_amount,
                "earned_amount": e.earned_amount,
                "asset": e.asset,
                "paid": e.paid,
                "created_at": e.created_at,
            }
            for e in earnings
        ]

    def claim(self, wallet: str) -> ClaimResult:
        """
        Claim all unpaid earnings of a referrer.

        The claim goes through when the unpaid total of any asset reaches its
        minimum payout. All unpaid rows are then marked paid under one payment
        reference, in the same transaction that read them.
        """
        with self._session_factory.begin() as session:
            rows = session.scalars(
                select(ReferralEarning)
                .where(ReferralEarning.referrer == wallet, ReferralEarning.paid.is_(False))
                .with_for_update()
            ).all()
            unpaid = _sum_by_asset((r.asset, r.earned_amount) for r in rows)

            eligible = any(
                unpaid.get(asset, Decimal("0")) >= minimum
                for asset, minimum in MIN_PAYOUTS.items()
            )
            if not eligible:
                return ClaimResult(
                    success=False,
                    claimed=unpaid,
                    error=(
                        f"Minimum payout: {MIN_PAYOUTS['SOL']} SOL "
                        f"or ${MIN_PAYOUTS['USDC']} USDC"
                    ),
                )

            paid_ref = f"manual_{int(time.time() * 1000)}_{wallet[:8]}"
            result = session.execute(
                update(ReferralEarning)
                .where(
                    ReferralEarning.id.in_([r.id for r in rows]),
                    ReferralEarning.paid.is_(False),
                )
                .values(paid=True, paid_ref=paid_ref)
                .execution_options(synchronize_session=False)
            )
            marked = result.rowcount

        logger.info(f"Referral: {short_wallet(wallet)} claimed {unpaid} ({marked} rows, ref {paid_ref})")
        return ClaimResult(success=True, claimed=unpaid, paid_ref=paid_ref, marked=marked)
