# app/x402/wallet.py
"""Structural validation of wallet addresses (Solana base58 public keys)."""
import re
from typing import Optional

from app.x402.errors import MalformedIdentity

WALLET_MIN_LENGTH = 32
WALLET_MAX_LENGTH = 44

# Base58 alphabet: no 0, O, I or l
_BASE58_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]+$")


def is_valid_wallet(wallet: Optional[str]) -> bool:
    """Check length bounds and alphabet of a wallet address."""
    if not wallet:
        return False
    if not WALLET_MIN_LENGTH <= len(wallet) <= WALLET_MAX_LENGTH:
        return False
    return bool(_BASE58_RE.match(wallet))


def validate_wallet(wallet: Optional[str]) -> str:
    """
    Validate a wallet address, raising MalformedIdentity if it is not well-formed.

    Returns:
        The wallet address, stripped of surrounding whitespace
    """
    candidate = (wallet or "").strip()
    if not is_valid_wallet(candidate):
        raise MalformedIdentity(
            "Invalid wallet address format",
            details={"expected": f"{WALLET_MIN_LENGTH}-{WALLET_MAX_LENGTH} character base58 address"},
        )
    return candidate


def short_wallet(wallet: Optional[str]) -> str:
    """Truncate a wallet for log lines."""
    if not wallet:
        return "-"
    return f"{wallet[:8]}..."
