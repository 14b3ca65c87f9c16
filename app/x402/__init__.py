# app/x402/__init__.py
"""
x402 Payment Gate and Credit Ledger.

Gates paid API resources behind HTTP 402 Payment Required, admitting a
request through the free tier, an x402 payment proof, or a prepaid USDC
balance keyed by wallet address.

Key components:
- gate: ordered authorization (free tier -> proof -> credit)
- middleware: FastAPI middleware applying the gate to paid resources
- ledger: prepaid balances, deposits and spend events
- quota: per-wallet free-tier counter
- referral: referral codes and 10% revenue share
- verifier: facilitator and test-mode proof verification
- pricing: paid resource table and discovery document
- audit: JSON-lines audit trail

Configuration is loaded from environment variables via app.core.config.
"""

__version__ = "0.1.0"
