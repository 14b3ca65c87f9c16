# app/core/config.py
from decimal import Decimal
from typing import Dict, Optional

from pydantic_settings import BaseSettings
from functools import lru_cache
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

# Solana USDC mint addresses by network
USDC_MINTS = {
    "mainnet": "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
    "devnet": "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU",
}

# x402 network identifiers by Solana network
X402_NETWORKS = {
    "mainnet": "solana",
    "devnet": "solana-devnet",
}


class Settings(BaseSettings):
    PROJECT_NAME: str = "x402 Credit Gateway"
    API_PREFIX: str = "/api"
    LOG_LEVEL: str = "INFO"

    # Ledger store (any SQLAlchemy URL; SQLite file by default)
    DATABASE_URL: str = "sqlite:///./x402_ledger.db"

    # x402 gate
    X402_ENABLED: bool = True
    X402_MODE: str = "production"  # "production" or "test"
    X402_DEPOSIT_ADDRESS: str = "98UP3QVTsAkmJGKjhE4w6GeZNn4csUfLY6C8TdQ1p3PK"
    X402_FACILITATOR_URL: Optional[str] = "https://facilitator.payai.network"
    X402_FACILITATOR_TIMEOUT_SECONDS: float = 10.0
    X402_PRICE_TABLE: Dict[str, Decimal] = {}  # path -> USD price overrides
    X402_FREE_TIER_ALLOTMENT: int = 100
    X402_MIN_DEPOSIT_USD: Decimal = Decimal("0.01")
    X402_SOL_USD_RATE: Decimal = Decimal("180")  # Manual SOL/USD rate for SOL deposits
    X402_AUDIT_LOG_PATH: str = "logs/x402_audit.jsonl"

    # Solana
    SOLANA_NETWORK: str = "devnet"  # "mainnet" or "devnet"
    SOLANA_RPC_URL: str = "https://api.devnet.solana.com"
    SOLANA_RPC_TIMEOUT_SECONDS: float = 15.0

    # Referral program
    REFERRAL_BASE_URL: str = "https://openseeker.xyz"

    # Public base URL used to build resource URLs (falls back to the request URL)
    BASE_URL: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

    @property
    def is_test_mode(self) -> bool:
        return self.X402_MODE == "test"

    @property
    def x402_network(self) -> str:
        return X402_NETWORKS.get(self.SOLANA_NETWORK, X402_NETWORKS["devnet"])

    @property
    def usdc_mint(self) -> str:
        return USDC_MINTS.get(self.SOLANA_NETWORK, USDC_MINTS["devnet"])


@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
