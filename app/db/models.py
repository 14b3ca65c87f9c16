# app/db/models.py
"""
Ledger tables.

Money columns use MicroUSD: Decimal values in Python, integer micro-USD in the
database. SQL arithmetic such as ``balance - :amount`` therefore stays exact no
matter how many sub-cent charges accumulate.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from app.x402.pricing import atomic_to_usd, usd_to_atomic


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MicroUSD(TypeDecorator):
    """Decimal USD amount stored as integer micro-USD."""

    impl = BigInteger
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return usd_to_atomic(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return atomic_to_usd(value)


class Base(DeclarativeBase):
    pass


class Account(Base):
    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),
    )

    wallet_address: Mapped[str] = mapped_column(String(64), primary_key=True)
    balance: Mapped[Decimal] = mapped_column(MicroUSD, nullable=False, default=Decimal("0"))
    total_deposited: Mapped[Decimal] = mapped_column(MicroUSD, nullable=False, default=Decimal("0"))
    total_spent: Mapped[Decimal] = mapped_column(MicroUSD, nullable=False, default=Decimal("0"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Deposit(Base):
    __tablename__ = "deposits"
    __table_args__ = (
        Index("idx_deposits_wallet", "wallet_address"),
        Index("idx_deposits_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_address: Mapped[str] = mapped_column(
        String(64), ForeignKey("accounts.wallet_address"), nullable=False
    )
    tx_signature: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    amount: Mapped[Decimal] = mapped_column(MicroUSD, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class SpendEvent(Base):
    __tablename__ = "spend_log"
    __table_args__ = (
        Index("idx_spend_log_wallet", "wallet_address"),
        Index("idx_spend_log_created", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_address: Mapped[str] = mapped_column(
        String(64), ForeignKey("accounts.wallet_address"), nullable=False
    )
    endpoint: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MicroUSD, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class FreeQuotaRow(Base):
    __tablename__ = "free_quota"
    __table_args__ = (
        CheckConstraint("remaining >= 0", name="ck_free_quota_remaining_non_negative"),
    )

    wallet_address: Mapped[str] = mapped_column(String(64), primary_key=True)
    remaining: Mapped[int] = mapped_column(Integer, nullable=False)
    total_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class ReferralCode(Base):
    __tablename__ = "referral_codes"

    wallet_address: Mapped[str] = mapped_column(String(64), primary_key=True)
    code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class ReferralLink(Base):
    __tablename__ = "referral_links"
    __table_args__ = (
        Index("idx_referral_links_referrer", "referrer"),
    )

    referred_wallet: Mapped[str] = mapped_column(String(64), primary_key=True)
    referrer: Mapped[str] = mapped_column(String(64), nullable=False)
    code: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class ReferralEarning(Base):
    __tablename__ = "referral_earnings"
    __table_args__ = (
        Index("idx_referral_earnings_referrer", "referrer", "paid"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    referrer: Mapped[str] = mapped_column(String(64), nullable=False)
    referred_wallet: Mapped[str] = mapped_column(String(64), nullable=False)
    endpoint: Mapped[str] = mapped_column(String(255), nullable=False)
    source_amount: Mapped[Decimal] = mapped_column(MicroUSD, nullable=False)
    earned_amount: Mapped[Decimal] = mapped_column(MicroUSD, nullable=False)
    asset: Mapped[str] = mapped_column(String(16), nullable=False, default="USDC")
    paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    paid_ref: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class ProtocolPayment(Base):
    __tablename__ = "protocol_payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    endpoint: Mapped[str] = mapped_column(String(255), nullable=False)
    amount_atomic: Mapped[str] = mapped_column(String(32), nullable=False)
    tx_ref: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
