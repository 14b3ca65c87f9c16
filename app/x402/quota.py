# app/x402/quota.py
"""
Free-tier quota: a one-time allotment of no-cost uses per wallet.

Wallets that were never seen report the full allotment. The counter only
goes down; nothing in the system replenishes it.

Configuration:
- X402_FREE_TIER_ALLOTMENT: Initial number of free uses per wallet (default: 100)
"""
import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import settings
from app.db.models import FreeQuotaRow, utcnow
from app.db.session import insert_ignore
from app.x402.wallet import short_wallet

logger = logging.getLogger(__name__)


class FreeQuota:
    """Per-wallet free-use counter backed by the ledger store."""

    def __init__(self, session_factory: sessionmaker[Session], allotment: Optional[int] = None):
        """
        Args:
            session_factory: Ledger store session factory
            allotment: Initial free uses per wallet. If None, uses config.
        """
        self._session_factory = session_factory
        self._allotment = allotment

    @property
    def allotment(self) -> int:
        """Get the initial allotment (lazy load from settings if not set)."""
        if self._allotment is not None:
            return self._allotment
        return settings.X402_FREE_TIER_ALLOTMENT

    def remaining(self, wallet: str) -> int:
        """Free uses left for a wallet."""
        with self._session_factory() as session:
            remaining = session.scalar(
                select(FreeQuotaRow.remaining).where(FreeQuotaRow.wallet_address == wallet)
            )
        return self.allotment if remaining is None else remaining

    def decrement(self, wallet: str) -> bool:
        """
        Consume one free use.

        Returns:
            True if a use was consumed, False if the quota is exhausted
        """
        with self._session_factory.begin() as session:
            insert_ignore(session, FreeQuotaRow, {
                "wallet_address": wallet,
                "remaining": self.allotment,
                "total_used": 0,
            })
            result = session.execute(
                update(FreeQuotaRow)
                .where(FreeQuotaRow.wallet_address == wallet, FreeQuotaRow.remaining > 0)
                .values(
                    remaining=FreeQuotaRow.remaining - 1,
                    total_used=FreeQuotaRow.total_used + 1,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            consumed = result.rowcount > 0

        if not consumed:
            logger.info(f"x402: Free tier exhausted for {short_wallet(wallet)}")
        return consumed
