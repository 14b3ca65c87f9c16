# tests/conftest.py
"""
Shared fixtures: a throwaway SQLite ledger store per test and an isolated
audit log file.
"""
import pytest

from app.core.config import settings
from app.db.session import create_db_engine, create_session_factory, init_db
from app.x402.ledger import Ledger
from app.x402.quota import FreeQuota
from app.x402.referral import ReferralBook

# Structurally valid Solana addresses
WALLET_A = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
WALLET_B = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
WALLET_C = "HN7cABqLq46Es1jh92dQQisAq662SmxELLLsHHe4YWrH"


@pytest.fixture(autouse=True)
def audit_log_path(tmp_path, monkeypatch):
    """Send audit events to a per-test file instead of logs/."""
    path = tmp_path / "audit" / "x402_audit.jsonl"
    monkeypatch.setattr(settings, "X402_AUDIT_LOG_PATH", str(path))
    return path


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def ledger(session_factory):
    return Ledger(session_factory)


@pytest.fixture
def quota(session_factory):
    return FreeQuota(session_factory, allotment=100)


@pytest.fixture
def referrals(session_factory):
    return ReferralBook(session_factory)
