# app/api/models/ledger.py
from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime


class DepositAddressResponse(BaseModel):
    """Where and how to fund a prepaid balance."""
    deposit_address: str = Field(..., description="Treasury wallet that receives deposits.")
    usdc_mint: str = Field(..., description="USDC mint accepted for deposits on this network.")
    network: str = Field(..., description="x402 network identifier (solana or solana-devnet).")
    minimum_deposit: float = Field(..., description="Smallest deposit worth sending, in USD.")
    sol_price: float = Field(..., description="SOL/USD rate applied to native SOL deposits.")
    instructions: List[str] = Field(..., description="Step-by-step funding instructions.")
    note: Optional[str] = None


class DepositCheckRequest(BaseModel):
    wallet: str = Field(..., description="Wallet to credit (32-44 character base58 address).")
    tx_signature: str = Field(..., description="Signature of the confirmed deposit transaction.")

    class Config:
        json_schema_extra = {
            "example": {
                "wallet": "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU",
                "tx_signature": "5VERv8NMvzbJMEkV8xnrLkEaWRtSz9CosKDYjCJjBRnbJLgp8uirBgmQpjKhoR4tjF3ZpRzrFmBV6UjKdiSZkQUW",
            }
        }


class DepositCheckResponse(BaseModel):
    success: bool
    credited: float = Field(..., description="USD amount credited to the balance.")
    new_balance: float
    total_deposited: float
    tx_signature: str


class SolDepositCheckResponse(BaseModel):
    success: bool
    sol_amount: float = Field(..., description="SOL received by the deposit address.")
    usd_credited: float = Field(..., description="USD credited at the configured SOL/USD rate.")
    sol_price: float
    new_balance: float
    total_deposited: float
    tx_signature: str


class TestCreditRequest(BaseModel):
    wallet: str = Field(..., description="Wallet to credit.")
    amount: float = Field(..., description="USD amount, greater than 0 and at most 100.")


class TestCreditResponse(BaseModel):
    success: bool
    credited: float
    new_balance: float
    test_mode: bool = True
    note: str = "This is a test credit. No real USDC was transferred."


class BalanceResponse(BaseModel):
    """
    Prepaid balance and usage for a wallet. Wallets that never deposited
    or spent report zeros with exists=false.
    """
    wallet: str
    balance: float = 0
    total_deposited: float = 0
    total_spent: float = 0
    usage_today: float = 0
    usage_month: float = 0
    requests_today: int = 0
    requests_month: int = 0
    free_remaining: int = Field(..., description="Free-tier uses left for this wallet.")
    exists: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
