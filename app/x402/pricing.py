# app/x402/pricing.py
"""
Price table and unit conversions for x402 payment responses.

This module owns the catalogue of paid resources served behind the gate:
1. Each resource is a (method, path prefix) pair with a fixed USD price
2. Prices can be overridden per path via X402_PRICE_TABLE
3. USD amounts are fixed-precision decimals quantized to micro-USD,
   the same precision as USDC atomic units (6 decimals)

Configuration is loaded from app/core/config.py:
- X402_PRICE_TABLE: JSON mapping of resource path to USD price
- X402_DEPOSIT_ADDRESS: Treasury address advertised to clients
- SOLANA_NETWORK: Selects the x402 network id and USDC mint
"""
import logging
from dataclasses import dataclass, replace
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, List, Optional, Union

from app.core.config import settings

logger = logging.getLogger(__name__)

# USDC has 6 decimals, so $1.00 = 1,000,000 atomic units
USDC_DECIMALS = 6
ATOMIC_PER_USD = 10 ** USDC_DECIMALS
USD_QUANTUM = Decimal(1).scaleb(-USDC_DECIMALS)  # 0.000001

Numeric = Union[Decimal, int, float, str]


def to_usd(value: Numeric) -> Decimal:
    """
    Convert a numeric value to a micro-USD quantized Decimal.

    Floats go through their shortest string form so 0.002 stays 0.002
    instead of picking up binary noise. Sub-micro fractions are truncated.
    """
    if isinstance(value, float):
        value = repr(value)
    return Decimal(value).quantize(USD_QUANTUM, rounding=ROUND_DOWN)


def usd_to_atomic(value: Numeric) -> int:
    """Convert USD to USDC atomic units."""
    return int(to_usd(value).scaleb(USDC_DECIMALS))


def atomic_to_usd(atomic: int) -> Decimal:
    """Convert USDC atomic units to USD."""
    return to_usd(Decimal(int(atomic)).scaleb(-USDC_DECIMALS))


def format_usd(value: Numeric) -> str:
    """Human-readable price, e.g. "$0.002 USDC"."""
    return f"${to_usd(value).normalize():f} USDC"


@dataclass(frozen=True)
class PaidResource:
    """A resource gated behind x402 payment."""
    method: str
    path: str
    price_usd: Decimal
    description: str
    free_tier: bool = False

    def matches(self, method: str, path: str) -> bool:
        if method != self.method:
            return False
        prefix = self.path.rstrip("/")
        candidate = path.rstrip("/")
        return candidate == prefix or candidate.startswith(prefix + "/")


# Paid resources and their default prices. Handlers for most of these live in
# the downstream chat/skill pipeline; the gate only needs the catalogue.
DEFAULT_RESOURCES: List[PaidResource] = [
    PaidResource("POST", "/api/chat", Decimal("0.002"), "AI chat message (standard model)", free_tier=True),
    PaidResource("POST", "/api/chat/smart", Decimal("0.005"), "AI chat message (smart model)"),
    PaidResource("POST", "/api/heartbeat", Decimal("0.002"), "Portfolio heartbeat check"),
    PaidResource("POST", "/api/briefing", Decimal("0.005"), "Daily market briefing"),
    PaidResource("POST", "/api/swap/swap-quote", Decimal("0.003"), "Swap quote"),
    PaidResource("POST", "/api/swap/swap-execute", Decimal("0.005"), "Swap execution"),
    PaidResource("POST", "/api/park/generate", Decimal("0.005"), "Agent park post generation"),
    PaidResource("GET", "/api/x402/trending", Decimal("0.001"), "Live trending tokens with safety scoring"),
    PaidResource("GET", "/api/x402/price", Decimal("0.0005"), "Token price with 24h change, volume, market cap"),
    PaidResource("GET", "/api/x402/research", Decimal("0.005"), "Deep token research with risk analysis"),
    PaidResource("GET", "/api/x402/whale-alerts", Decimal("0.002"), "Recent whale wallet movements"),
    PaidResource("GET", "/api/x402/news", Decimal("0.001"), "Latest crypto news digest"),
    PaidResource("GET", "/api/x402/history", Decimal("0.003"), "Historical price data with OHLC"),
    PaidResource("GET", "/api/x402/ping", Decimal("0.0005"), "Paid ping returning the payment receipt"),
]


def get_paid_resources(overrides: Optional[Dict[str, Numeric]] = None) -> List[PaidResource]:
    """
    Get the paid resource catalogue with configured price overrides applied.

    Args:
        overrides: Optional mapping of path -> USD price. Uses X402_PRICE_TABLE if not provided.

    Returns:
        List of PaidResource with final prices
    """
    price_table = overrides if overrides is not None else settings.X402_PRICE_TABLE
    resources = []
    for resource in DEFAULT_RESOURCES:
        if resource.path in price_table:
            resource = replace(resource, price_usd=to_usd(price_table[resource.path]))
        resources.append(resource)
    return resources


def find_paid_resource(method: str, path: str) -> Optional[PaidResource]:
    """
    Find the paid resource matching a request.

    The longest matching path wins, so "/api/chat/smart" is not billed as "/api/chat".
    """
    matches = [r for r in get_paid_resources() if r.matches(method, path)]
    if not matches:
        return None
    return max(matches, key=lambda r: len(r.path))


def build_discovery_document(
    base_url: str, resources: Optional[List[PaidResource]] = None
) -> Dict[str, Any]:
    """
    Build the x402 service-discovery document.

    Autonomous clients read this to learn every paid resource and its price
    without triggering a 402 first.

    Args:
        base_url: Public base URL of the gateway (no trailing slash)
        resources: Resources to advertise. Defaults to the full catalogue.

    Returns:
        Dict ready to be served as JSON
    """
    base_url = base_url.rstrip("/")
    endpoints = []
    for resource in (resources if resources is not None else get_paid_resources()):
        endpoints.append({
            "resource": f"{base_url}{resource.path}",
            "method": resource.method,
            "description": resource.description,
            "price": format_usd(resource.price_usd),
            "price_usd": float(resource.price_usd),
            "amount": str(usd_to_atomic(resource.price_usd)),
            "free_tier": resource.free_tier,
        })

    return {
        "x402Version": 1,
        "name": settings.PROJECT_NAME,
        "description": "Pay-per-request API gated by x402 payments or prepaid USDC credit",
        "network": settings.x402_network,
        "treasury": settings.X402_DEPOSIT_ADDRESS,
        "asset": settings.usdc_mint,
        "currency": "USDC",
        "payment_methods": ["x402", "credit", "free-tier"],
        "endpoints": endpoints,
    }
