# app/x402/ledger.py
"""
Prepaid credit ledger.

Balances, deposits and spend events per wallet address. Three operations
mutate state and each runs as one all-or-nothing transaction:

- get_or_create_account: insert-if-absent
- credit_deposit: idempotent on the external transaction signature
- debit_spend: conditional decrement plus spend-log insert

Balance fields are never read and written back from Python; every change is
a single UPDATE with the arithmetic done in SQL, so the store's transaction
boundary is the only serialization point.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from app.db.models import Account, Deposit, ProtocolPayment, SpendEvent, utcnow
from app.db.session import insert_ignore
from app.x402.pricing import Numeric, to_usd
from app.x402.wallet import short_wallet

logger = logging.getLogger(__name__)

ALREADY_PROCESSED = "Transaction already processed"
INSUFFICIENT_BALANCE = "Insufficient balance"


@dataclass
class CreditResult:
    """Outcome of credit_deposit."""
    success: bool
    error: Optional[str] = None


@dataclass
class DebitResult:
    """Outcome of debit_spend. balance is the resulting (or current, on failure) balance."""
    success: bool
    balance: Decimal
    error: Optional[str] = None


@dataclass
class SpendStats:
    total: Decimal
    count: int


class Ledger:
    """
    Credit ledger bound to a store session factory.

    The factory is injected at construction so the store's lifecycle belongs
    to the application (or the test), not to this module.
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def get_account(self, wallet: str) -> Optional[Account]:
        """Read an account without creating it."""
        with self._session_factory() as session:
            return session.get(Account, wallet)

    def get_or_create_account(self, wallet: str) -> Account:
        """Return the wallet's account, creating a zero-balance one if absent."""
        with self._session_factory.begin() as session:
            insert_ignore(session, Account, {"wallet_address": wallet})
            account = session.get(Account, wallet)
        return account

    def credit_deposit(self, wallet: str, tx_signature: str, amount: Numeric) -> CreditResult:
        """
        Credit a confirmed deposit to a wallet.

        A given tx_signature credits at most once. A repeated signature returns
        a failure and leaves the ledger untouched.

        Args:
            wallet: Wallet address to credit
            tx_signature: External transaction identifier (idempotency key)
            amount: USD amount, must be positive

        Returns:
            CreditResult
        """
        amount = to_usd(amount)
        if amount <= 0:
            raise ValueError(f"Deposit amount must be positive, got {amount}")

        try:
            with self._session_factory.begin() as session:
                existing = session.scalar(
                    select(Deposit.id).where(Deposit.tx_signature == tx_signature)
                )
                if existing is not None:
                    logger.info(f"Ledger: Deposit {tx_signature[:8]}... already processed")
                    return CreditResult(success=False, error=ALREADY_PROCESSED)

                insert_ignore(session, Account, {"wallet_address": wallet})
                session.execute(
                    update(Account)
                    .where(Account.wallet_address == wallet)
                    .values(
                        balance=Account.balance + amount,
                        total_deposited=Account.total_deposited + amount,
                        updated_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                now = utcnow()
                session.add(Deposit(
                    wallet_address=wallet,
                    tx_signature=tx_signature,
                    amount=amount,
                    status="confirmed",
                    created_at=now,
                    confirmed_at=now,
                ))
                session.flush()
        except IntegrityError:
            # A concurrent request recorded the same signature first
            logger.info(f"Ledger: Deposit {tx_signature[:8]}... credited concurrently, skipping")
            return CreditResult(success=False, error=ALREADY_PROCESSED)

        logger.info(f"Ledger: Credited ${amount} to {short_wallet(wallet)} (tx: {tx_signature[:8]}...)")
        return CreditResult(success=True)

    def debit_spend(self, wallet: str, endpoint: str, amount: Numeric) -> DebitResult:
        """
        Charge a wallet for one request.

        The decrement only applies while balance >= amount, so a debit can
        never drive the balance negative. The spend event is written in the
        same transaction.

        Args:
            wallet: Wallet address to charge
            endpoint: Resource path being paid for
            amount: USD amount, must be positive

        Returns:
            DebitResult with the new balance, or the current balance on failure
        """
        amount = to_usd(amount)
        if amount <= 0:
            raise ValueError(f"Spend amount must be positive, got {amount}")

        with self._session_factory.begin() as session:
            insert_ignore(session, Account, {"wallet_address": wallet})
            result = session.execute(
                update(Account)
                .where(Account.wallet_address == wallet, Account.balance >= amount)
                .values(
                    balance=Account.balance - amount,
                    total_spent=Account.total_spent + amount,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                balance = session.scalar(
                    select(Account.balance).where(Account.wallet_address == wallet)
                )
                return DebitResult(success=False, balance=balance, error=INSUFFICIENT_BALANCE)

            session.add(SpendEvent(wallet_address=wallet, endpoint=endpoint, amount=amount))
            balance = session.scalar(
                select(Account.balance).where(Account.wallet_address == wallet)
            )

        logger.debug(f"Ledger: Debited ${amount} from {short_wallet(wallet)} for {endpoint} (balance: ${balance})")
        return DebitResult(success=True, balance=balance)

    def spend_stats(self, wallet: str, since: datetime) -> SpendStats:
        """Total spend and request count for a wallet since a point in time."""
        with self._session_factory() as session:
            total, count = session.execute(
                select(func.sum(SpendEvent.amount), func.count(SpendEvent.id))
                .where(SpendEvent.wallet_address == wallet, SpendEvent.created_at >= since)
            ).one()
        return SpendStats(total=total if total is not None else Decimal("0"), count=count)

    def log_protocol_payment(
        self,
        wallet: Optional[str],
        endpoint: str,
        amount_atomic: str,
        tx_ref: Optional[str] = None,
    ) -> None:
        """Record an admission paid through the x402 protocol. Balances are not touched."""
        with self._session_factory.begin() as session:
            session.add(ProtocolPayment(
                wallet_address=wallet,
                endpoint=endpoint,
                amount_atomic=amount_atomic,
                tx_ref=tx_ref,
            ))
