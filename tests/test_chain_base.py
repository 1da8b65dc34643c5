"""
Tests for the shared chain adapter behaviour.

Tests:
1. Unit conversion and price bumps
2. Endpoint rotation
3. Three-tier cost estimation fallback
4. Pre-flight balance check
"""

import asyncio
from decimal import Decimal

import pytest

from mirrorbot.chains.base import (
    EndpointRotator,
    bump_price,
    from_smallest_units,
    to_smallest_units,
)
from mirrorbot.config import CostTierConfig
from mirrorbot.errors import (
    ConfigurationError,
    CostEstimationFailed,
    InsufficientFunds,
    TransientNetworkError,
)
from mirrorbot.models import Chain, CostEstimate, CostTier, UnsignedTransaction
from tests.mocks.mock_chain import MockChainAdapter


def run_async(coro):
    return asyncio.run(coro)


def _tx(value=0):
    return UnsignedTransaction(chain=Chain.ETHEREUM, sender="0x" + "aa" * 20, payload={}, value=value)


class TestUnits:
    """Test amount conversion helpers."""

    def test_to_smallest_units(self):
        assert to_smallest_units(Decimal("1.5"), 18) == 1_500_000_000_000_000_000
        assert to_smallest_units(Decimal("0.000000001"), 9) == 1

    def test_rounds_down(self):
        """Fractions below one smallest unit are dropped."""
        assert to_smallest_units(Decimal("0.0000000019"), 9) == 1

    def test_from_smallest_units(self):
        assert from_smallest_units(2_500_000_000, 9) == Decimal("2.5")


class TestBumpPrice:
    def test_percentage(self):
        assert bump_price(1_000, 20) == 1_200

    def test_strictly_increases_for_small_prices(self):
        """Integer rounding never leaves the price unchanged."""
        assert bump_price(1, 10) == 2
        assert bump_price(3, 25) > 3

    def test_zero_pct_unchanged(self):
        assert bump_price(1_000, 0) == 1_000


class TestEndpointRotator:
    """Test endpoint rotation."""

    def test_round_robin(self):
        rotator = EndpointRotator(["a", "b", "c"])

        assert rotator.current == "a"
        assert rotator.rotate() == "b"
        assert rotator.rotate() == "c"
        assert rotator.rotate() == "a"
        assert len(rotator) == 3

    def test_single_endpoint(self):
        rotator = EndpointRotator(["only"])
        assert rotator.rotate() == "only"

    def test_empty_rejected(self):
        with pytest.raises(ConfigurationError):
            EndpointRotator([])

    def test_adapter_rotation(self):
        adapter = MockChainAdapter()

        assert adapter.current_endpoint == "rpc-a"
        assert adapter.rotate_endpoint() == "rpc-b"
        assert adapter.current_endpoint == "rpc-b"


class TestEstimateCost:
    """Test the precise -> conservative -> emergency ladder."""

    @pytest.fixture
    def adapter(self):
        return MockChainAdapter()

    def test_precise_tier_floors_limit(self, adapter):
        """Simulated 100k x 2 is floored at the 400k minimum, price +20%."""
        estimate = run_async(adapter.estimate_cost(_tx()))

        assert estimate.tier is CostTier.PRECISE
        assert estimate.resource_limit == 400_000
        assert estimate.unit_price == 1_200
        assert estimate.total_cost == 400_000 * 1_200

    def test_precise_tier_buffers_large_usage(self, adapter):
        adapter.simulated_usage = 250_000

        estimate = run_async(adapter.estimate_cost(_tx()))

        assert estimate.resource_limit == 500_000

    def test_precise_tier_respects_ceiling(self):
        tiers = CostTierConfig(max_resource_limit=900_000)
        adapter = MockChainAdapter(cost_tiers=tiers)
        adapter.simulated_usage = 1_000_000

        estimate = run_async(adapter.estimate_cost(_tx()))

        assert estimate.resource_limit == 900_000

    def test_conservative_when_simulation_fails(self, adapter):
        """A failing simulation falls back to the fixed conservative limit."""
        adapter.simulate_error = TransientNetworkError("execution reverted")

        estimate = run_async(adapter.estimate_cost(_tx()))

        assert estimate.tier is CostTier.CONSERVATIVE
        assert estimate.resource_limit == 600_000
        assert estimate.unit_price == 1_300

    def test_all_tiers_fail(self, adapter):
        adapter.simulate_error = TransientNetworkError("down")
        adapter.price_error = TransientNetworkError("down")

        with pytest.raises(CostEstimationFailed):
            run_async(adapter.estimate_cost(_tx()))

    def test_emergency_uses_fallback_price(self):
        """Emergency tier survives a dead price oracle when a fallback is set."""
        adapter = MockChainAdapter(cost_tiers=CostTierConfig(fallback_unit_price=2_000))
        adapter.price_error = TransientNetworkError("oracle down")

        estimate = run_async(adapter.estimate_cost(_tx()))

        assert estimate.tier is CostTier.EMERGENCY
        assert estimate.resource_limit == 800_000
        assert estimate.unit_price == 3_000

    def test_price_estimate_keeps_limit(self, adapter):
        base = CostEstimate(400_000, 1_200, 480_000_000, CostTier.PRECISE)

        repriced = adapter.price_estimate(base, 1_500)

        assert repriced.resource_limit == 400_000
        assert repriced.total_cost == 400_000 * 1_500
        assert repriced.tier is CostTier.PRECISE


class TestPreflight:
    """Test balance checks before submission."""

    def test_sufficient_balance(self):
        adapter = MockChainAdapter(balance=1_000)
        estimate = CostEstimate(10, 10, 100, CostTier.PRECISE)

        run_async(adapter.preflight(_tx(value=900), estimate))

    def test_value_plus_cost_exceeds_balance(self):
        """Value alone fits but value plus cost does not."""
        adapter = MockChainAdapter(balance=1_000)
        estimate = CostEstimate(10, 10, 101, CostTier.PRECISE)

        with pytest.raises(InsufficientFunds):
            run_async(adapter.preflight(_tx(value=900), estimate))
