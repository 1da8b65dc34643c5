"""
Tests for the in-memory rate limiter.
"""

from decimal import Decimal

import pytest

from mirrorbot.config import RateLimitConfig
from mirrorbot.errors import RateLimitExceeded
from mirrorbot.gateways.rate_limit import (
    ACTION_MIRROR_SUBSCRIBE,
    ACTION_MIRROR_TRADE,
    InMemoryRateLimiter,
)


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return InMemoryRateLimiter(
        RateLimitConfig(mirror_trades_per_hour=2, subscriptions_per_day=1),
        clock=clock,
    )


class TestSlidingWindow:
    """Test per-owner event windows."""

    def test_allows_up_to_limit(self, limiter):
        limiter.check_limit("alice", ACTION_MIRROR_TRADE)
        limiter.check_limit("alice", ACTION_MIRROR_TRADE)

        with pytest.raises(RateLimitExceeded) as exc_info:
            limiter.check_limit("alice", ACTION_MIRROR_TRADE)

        assert exc_info.value.action == ACTION_MIRROR_TRADE
        assert exc_info.value.retry_after == pytest.approx(3_600)

    def test_window_slides(self, limiter, clock):
        """Events older than the window no longer count."""
        limiter.check_limit("alice", ACTION_MIRROR_TRADE)
        limiter.check_limit("alice", ACTION_MIRROR_TRADE)

        clock.now += 3_600

        limiter.check_limit("alice", ACTION_MIRROR_TRADE)

    def test_owners_are_independent(self, limiter):
        limiter.check_limit("alice", ACTION_MIRROR_SUBSCRIBE)
        limiter.check_limit("bob", ACTION_MIRROR_SUBSCRIBE)

        with pytest.raises(RateLimitExceeded):
            limiter.check_limit("alice", ACTION_MIRROR_SUBSCRIBE)

    def test_unknown_action_allowed(self, limiter):
        for _ in range(10):
            limiter.check_limit("alice", "withdraw")

    def test_custom_rule(self, limiter):
        limiter.add_rule("withdraw", 1, 60)
        limiter.check_limit("alice", "withdraw")

        with pytest.raises(RateLimitExceeded):
            limiter.check_limit("alice", "withdraw")

    def test_refused_call_does_not_count(self, limiter, clock):
        limiter.check_limit("alice", ACTION_MIRROR_TRADE)
        clock.now += 1_800
        limiter.check_limit("alice", ACTION_MIRROR_TRADE)
        with pytest.raises(RateLimitExceeded):
            limiter.check_limit("alice", ACTION_MIRROR_TRADE)

        clock.now += 1_800

        limiter.check_limit("alice", ACTION_MIRROR_TRADE)

    def test_reset(self, limiter):
        limiter.check_limit("alice", ACTION_MIRROR_SUBSCRIBE)
        limiter.reset("alice")

        limiter.check_limit("alice", ACTION_MIRROR_SUBSCRIBE)


class TestVolumeCap:
    """Test the rolling daily volume cap."""

    @pytest.fixture
    def capped(self, clock):
        return InMemoryRateLimiter(
            RateLimitConfig(mirror_trades_per_hour=100, daily_volume_limit=Decimal("1.0")),
            clock=clock,
        )

    def test_cap_enforced(self, capped):
        capped.check_limit("alice", ACTION_MIRROR_TRADE, Decimal("0.6"))

        with pytest.raises(RateLimitExceeded, match="Daily volume"):
            capped.check_limit("alice", ACTION_MIRROR_TRADE, Decimal("0.5"))

        capped.check_limit("alice", ACTION_MIRROR_TRADE, Decimal("0.4"))

    def test_cap_rolls_over(self, capped, clock):
        capped.check_limit("alice", ACTION_MIRROR_TRADE, Decimal("1.0"))

        clock.now += 86_400

        capped.check_limit("alice", ACTION_MIRROR_TRADE, Decimal("1.0"))
