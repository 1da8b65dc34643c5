"""
Tests for FeeCollector.

collect_fee() must never raise: every failure path returns None.
"""

import asyncio
from decimal import Decimal

import pytest

from mirrorbot.config import FeeConfig
from mirrorbot.errors import ConfigurationError, TransientNetworkError
from mirrorbot.execution.fees import FeeCollector
from mirrorbot.models import Chain
from tests.mocks.mock_chain import MockChainAdapter, MockSigner

TREASURY = "0x" + "7e" * 20
FOLLOWER = "0x" + "aa" * 20


def run_async(coro):
    return asyncio.run(coro)


@pytest.fixture
def adapter():
    return MockChainAdapter()


@pytest.fixture
def signer():
    return MockSigner(FOLLOWER)


@pytest.fixture
def collector(adapter):
    return FeeCollector(adapter, TREASURY, FeeConfig())


class TestConstruction:
    """Test treasury validation."""

    def test_invalid_treasury_fails_fast(self, adapter):
        with pytest.raises(ConfigurationError, match="treasury"):
            FeeCollector(adapter, "not-an-address", FeeConfig())

    def test_missing_treasury_disables(self, adapter):
        assert not FeeCollector(adapter, None, FeeConfig()).enabled
        assert not FeeCollector(adapter, "  ", FeeConfig()).enabled

    def test_zero_address_disables(self, adapter):
        """The zero address is treated as unset, never as a destination."""
        collector = FeeCollector(adapter, "0x" + "0" * 40, FeeConfig())
        assert not collector.enabled

    def test_solana_treasury_checked_with_solana_grammar(self):
        adapter = MockChainAdapter(chain=Chain.SOLANA)

        with pytest.raises(ConfigurationError):
            FeeCollector(adapter, TREASURY, FeeConfig())

        assert FeeCollector(adapter, "11111111111111111111111111111111", FeeConfig()).enabled


class TestFeeFor:
    def test_one_percent(self, collector):
        assert collector.fee_for(Decimal("0.5")) == Decimal("0.005")

    def test_custom_percentage(self, adapter):
        collector = FeeCollector(adapter, TREASURY, FeeConfig(fee_pct=Decimal("2.5")))
        assert collector.fee_for(Decimal("2")) == Decimal("0.05")


class TestCollectFee:
    """Test the best-effort transfer."""

    def test_success(self, collector, adapter, signer):
        outcome = run_async(collector.collect_fee(signer, Decimal("0.005")))

        assert outcome is not None
        assert outcome.reference == "tx-1"
        assert outcome.amount == Decimal("0.005")
        assert outcome.amount_smallest == 5 * 10**15
        assert outcome.treasury == TREASURY
        assert adapter.transfers[0].recipient == TREASURY
        assert adapter.submitted[0].value == 5 * 10**15

    def test_disabled_returns_none(self, adapter, signer):
        collector = FeeCollector(adapter, None, FeeConfig())

        assert run_async(collector.collect_fee(signer, Decimal("0.005"))) is None
        assert adapter.submitted == []

    @pytest.mark.parametrize("amount", ["abc", None, "NaN", "0", "-1", Decimal("1e-30")])
    def test_malformed_or_tiny_amount_skipped(self, collector, adapter, signer, amount):
        """Malformed, non-positive and dust amounts are skipped without raising."""
        assert run_async(collector.collect_fee(signer, amount)) is None
        assert adapter.transfers == []

    def test_below_minimum_skipped(self, adapter, signer):
        collector = FeeCollector(adapter, TREASURY, FeeConfig(min_fee=Decimal("0.01")))

        assert run_async(collector.collect_fee(signer, Decimal("0.005"))) is None
        assert adapter.transfers == []

    def test_insufficient_balance_skipped(self, signer):
        adapter = MockChainAdapter(balance=1_000)
        collector = FeeCollector(adapter, TREASURY, FeeConfig())

        assert run_async(collector.collect_fee(signer, Decimal("0.005"))) is None
        assert adapter.submitted == []

    def test_submit_failure_swallowed(self, collector, adapter, signer):
        adapter.submit_errors = [TransientNetworkError("503")]

        assert run_async(collector.collect_fee(signer, Decimal("0.005"))) is None

    def test_signer_rejection_swallowed(self, collector):
        signer = MockSigner(FOLLOWER, reject=True)

        assert run_async(collector.collect_fee(signer, Decimal("0.005"))) is None
