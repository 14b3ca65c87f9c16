# tests/test_referral.py
"""
Unit tests for referral accounting.
"""
from decimal import Decimal
from unittest.mock import patch

import pytest

from app.x402.referral import MIN_PAYOUTS, REFERRAL_SHARE

WALLET_A = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
WALLET_B = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
WALLET_C = "HN7cABqLq46Es1jh92dQQisAq662SmxELLLsHHe4YWrH"

TX_1 = "5VERv8NMvzbJMEkV8xnrLkEaWRtSz9CosKDYjCJjBRnbJLgp8uirBgmQpjKhoR4tjF3ZpRzrFmBV6UjKdiSZkQUW"


class TestReferralCodes:
    """Test code generation and lookup."""

    def test_generated_code_is_stable(self, referrals):
        """A wallet keeps the same code across calls."""
        code = referrals.get_or_create_code(WALLET_A)

        assert code == code.upper()
        assert referrals.get_or_create_code(WALLET_A) == code
        assert referrals.get_code(WALLET_A) == code

    def test_custom_code_is_uppercased(self, referrals):
        """Custom codes are stored uppercase and resolve case-insensitively."""
        code = referrals.get_or_create_code(WALLET_A, "seeker_01")

        assert code == "SEEKER_01"
        assert referrals.resolve_code("seeker_01") == WALLET_A

    def test_custom_code_taken(self, referrals):
        """A custom code owned by another wallet is rejected."""
        referrals.get_or_create_code(WALLET_A, "ALPHA")

        with pytest.raises(ValueError, match="already taken"):
            referrals.get_or_create_code(WALLET_B, "alpha")

    def test_malformed_custom_code(self, referrals):
        """Custom codes must be 3-20 safe characters."""
        with pytest.raises(ValueError):
            referrals.get_or_create_code(WALLET_A, "x")
        with pytest.raises(ValueError):
            referrals.get_or_create_code(WALLET_A, "has spaces")

    def test_unknown_code_resolves_to_none(self, referrals):
        assert referrals.resolve_code("NOPE") is None


class TestReferralLinks:
    """Test referral linking."""

    def test_link_records_referrer(self, referrals):
        """A linked wallet reports its referrer."""
        code = referrals.get_or_create_code(WALLET_A)

        result = referrals.link(WALLET_A, WALLET_B, code)

        assert result.success is True
        assert referrals.referrer_of(WALLET_B) == WALLET_A
        assert referrals.referral_count(WALLET_A) == 1

    def test_self_referral_rejected(self, referrals):
        """A wallet cannot refer itself."""
        code = referrals.get_or_create_code(WALLET_A)

        result = referrals.link(WALLET_A, WALLET_A, code)

        assert result.success is False
        assert result.error == "Cannot refer yourself"
        assert referrals.referrer_of(WALLET_A) is None

    def test_link_is_immutable(self, referrals):
        """A second referrer never replaces the first."""
        code_a = referrals.get_or_create_code(WALLET_A)
        code_c = referrals.get_or_create_code(WALLET_C)
        referrals.link(WALLET_A, WALLET_B, code_a)

        result = referrals.link(WALLET_C, WALLET_B, code_c)

        assert result.success is False
        assert referrals.referrer_of(WALLET_B) == WALLET_A


class TestReferralEarnings:
    """Test revenue-share recording."""

    def test_spend_by_referred_wallet_earns_ten_percent(self, referrals, ledger):
        """B spends $0.01 in credit mode: A earns $0.001 and A's balance is untouched."""
        referrals.link(WALLET_A, WALLET_B, referrals.get_or_create_code(WALLET_A))
        ledger.credit_deposit(WALLET_B, TX_1, Decimal("1.00"))

        assert ledger.debit_spend(WALLET_B, "/api/chat", Decimal("0.01")).success
        earning = referrals.record_spend(WALLET_B, "/api/chat", Decimal("0.01"))

        assert earning.earned_amount == Decimal("0.001")
        assert earning.source_amount == Decimal("0.01")
        assert referrals.unpaid_earnings(WALLET_A) == {"USDC": Decimal("0.001")}
        assert ledger.get_account(WALLET_A) is None

    def test_spend_without_referrer_records_nothing(self, referrals):
        assert referrals.record_spend(WALLET_B, "/api/chat", Decimal("0.01")) is None
        assert referrals.total_earnings(WALLET_A) == {}

    def test_record_spend_swallows_failures(self, referrals):
        """A failing earnings write is logged, never raised."""
        with patch.object(referrals, "referrer_of", side_effect=RuntimeError("db down")):
            assert referrals.record_spend(WALLET_B, "/api/chat", Decimal("0.01")) is None

    def test_recent_earnings(self, referrals):
        """Recent earnings list the newest rows first."""
        referrals.link(WALLET_A, WALLET_B, referrals.get_or_create_code(WALLET_A))
        referrals.record_spend(WALLET_B, "/api/chat", Decimal("0.002"))
        referrals.record_spend(WALLET_B, "/api/briefing", Decimal("0.005"))

        recent = referrals.recent_earnings(WALLET_A)

        assert [e["endpoint"] for e in recent] == ["/api/briefing", "/api/chat"]
        assert recent[0]["earned_amount"] == Decimal("0.0005")
        assert recent[0]["paid"] is False

    def test_share_constant(self):
        assert REFERRAL_SHARE == Decimal("0.10")


class TestReferralClaim:
    """Test the claim flow."""

    def test_claim_below_minimum_fails(self, referrals):
        """Unpaid earnings below every minimum can't be claimed."""
        referrals.record_earning(WALLET_A, WALLET_B, "/api/chat", Decimal("1.00"))

        result = referrals.claim(WALLET_A)

        assert result.success is False
        assert result.claimed == {"USDC": Decimal("0.1")}
        assert "Minimum payout" in result.error
        assert referrals.unpaid_earnings(WALLET_A) == {"USDC": Decimal("0.1")}

    def test_claim_marks_all_unpaid_rows(self, referrals):
        """Reaching a minimum marks every unpaid row paid under one reference."""
        for _ in range(5):
            referrals.record_earning(WALLET_A, WALLET_B, "/api/chat", Decimal("1.00"))

        result = referrals.claim(WALLET_A)

        assert result.success is True
        assert result.claimed == {"USDC": MIN_PAYOUTS["USDC"]}
        assert result.marked == 5
        assert result.paid_ref.startswith("manual_")
        assert result.paid_ref.endswith(WALLET_A[:8])
        assert referrals.unpaid_earnings(WALLET_A) == {}
        assert referrals.total_earnings(WALLET_A) == {"USDC": Decimal("0.5")}

    def test_second_claim_finds_nothing(self, referrals):
        """Paid rows are never claimed twice."""
        for _ in range(5):
            referrals.record_earning(WALLET_A, WALLET_B, "/api/chat", Decimal("1.00"))
        referrals.claim(WALLET_A)

        result = referrals.claim(WALLET_A)

        assert result.success is False
        assert result.claimed == {}

    def test_sol_minimum_enables_claim_for_all_assets(self, referrals):
        """Any asset over its minimum marks all unpaid rows, whatever the asset."""
        referrals.record_earning(WALLET_A, WALLET_B, "/api/chat", Decimal("0.05"), asset="SOL")
        referrals.record_earning(WALLET_A, WALLET_B, "/api/chat", Decimal("0.01"))

        result = referrals.claim(WALLET_A)

        assert result.success is True
        assert result.marked == 2
        assert result.claimed == {"SOL": Decimal("0.005"), "USDC": Decimal("0.001")}
