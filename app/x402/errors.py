# app/x402/errors.py
"""
Error taxonomy for the payment gate.

Each error knows its HTTP status and renders the structured body an
automated client needs to self-correct (price, balance, instructions).
The middleware turns them into JSON responses; route handlers map them
to HTTPException.
"""
from decimal import Decimal
from typing import Any, Dict, Optional


class PaymentError(Exception):
    """Base class for gate rejections."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, **self.details}


class MalformedIdentity(PaymentError):
    """Wallet string fails structural validation."""
    status_code = 400


class DuplicateSettlement(PaymentError):
    """A deposit transaction reference has already been credited."""
    status_code = 400


class PaymentRequired(PaymentError):
    """No authorization path admitted the request."""
    status_code = 402

    def __init__(self, message: str = "Payment Required", price: Optional[Decimal] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.price = price

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"status": 402, "message": self.message}
        if self.price is not None:
            body["price"] = float(self.price)
        body.update(self.details)
        return body


class InsufficientBalance(PaymentRequired):
    """Credit-path balance below price."""

    def __init__(self, balance: Decimal, price: Decimal, details: Optional[Dict[str, Any]] = None):
        shortfall = price - balance
        super().__init__(
            "Insufficient balance",
            price=price,
            details={
                **(details or {}),
                "balance": float(balance),
                "shortfall": float(shortfall),
                "instructions": f"Deposit at least ${shortfall:.4f} USDC to continue.",
            },
        )
        self.balance = balance
        self.shortfall = shortfall


class ProofInvalid(PaymentRequired):
    """Protocol proof failed verification."""


class ProofExpired(ProofInvalid):
    """Test proof timestamp outside the accepted window."""


class UpstreamUnavailable(PaymentError):
    """Facilitator or chain RPC timed out or errored."""
    status_code = 503
