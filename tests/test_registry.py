"""
Tests for MirrorRegistry.

Tests:
1. Subscribe/unsubscribe keep both indices consistent
2. Watcher subscriptions follow the first/last follower of a target
3. Patch, restore and rate limiting
"""

from decimal import Decimal

import pytest

from mirrorbot.config import MirrorDefaults, RateLimitConfig
from mirrorbot.errors import (
    AlreadySubscribed,
    InvalidAddress,
    NotSubscribed,
    RateLimitExceeded,
)
from mirrorbot.gateways.rate_limit import InMemoryRateLimiter
from mirrorbot.mirror.registry import MirrorRegistry
from mirrorbot.models import ActivityNotice, Chain, MirrorConfig, MirrorPolicy
from tests.mocks.mock_gateways import MockStore, MockWatcher

EVM_TARGET = "0x6B175474E89094C44Da98b954EedeAC495271d0F"
SOL_TARGET = "So11111111111111111111111111111111111111112"


@pytest.fixture
def watcher():
    return MockWatcher()


@pytest.fixture
def store():
    return MockStore()


@pytest.fixture
def registry(watcher, store):
    return MirrorRegistry(watcher=watcher, store=store)


class TestSubscribe:
    """Test subscription creation."""

    def test_subscribe_evm(self, registry, store):
        config = registry.subscribe("alice", EVM_TARGET)

        assert config.chain is Chain.ETHEREUM
        assert config.target_wallet == EVM_TARGET.lower()
        assert config.active
        assert registry.get("alice") == config
        assert store.configs["alice"] == config

    def test_subscribe_solana(self, registry):
        config = registry.subscribe("alice", SOL_TARGET)

        assert config.chain is Chain.SOLANA
        assert config.target_wallet == SOL_TARGET

    def test_policy_applied(self, registry):
        policy = MirrorPolicy(copy_percentage=Decimal("25"), max_amount_per_trade=Decimal("0.2"))

        config = registry.subscribe("alice", EVM_TARGET, policy)

        assert config.copy_percentage == Decimal("25")
        assert config.max_amount_per_trade == Decimal("0.2")

    def test_defaults_used_without_policy(self, watcher):
        registry = MirrorRegistry(watcher=watcher, defaults=MirrorDefaults(copy_percentage=Decimal("10")))

        config = registry.subscribe("alice", EVM_TARGET)

        assert config.copy_percentage == Decimal("10")

    def test_invalid_address(self, registry, watcher):
        """Nothing is registered for an invalid address."""
        with pytest.raises(InvalidAddress):
            registry.subscribe("alice", "not-a-wallet")

        assert registry.get("alice") is None
        assert watcher.subscriptions == []

    def test_already_subscribed(self, registry):
        registry.subscribe("alice", EVM_TARGET)

        with pytest.raises(AlreadySubscribed):
            registry.subscribe("alice", SOL_TARGET)

        assert registry.get("alice").chain is Chain.ETHEREUM

    def test_rate_limited(self, watcher):
        limiter = InMemoryRateLimiter(RateLimitConfig(subscriptions_per_day=1))
        registry = MirrorRegistry(watcher=watcher, rate_gate=limiter)

        registry.subscribe("alice", EVM_TARGET)
        registry.unsubscribe("alice")

        with pytest.raises(RateLimitExceeded):
            registry.subscribe("alice", EVM_TARGET)

        assert len(registry) == 0

    def test_store_failure_leaves_no_trace(self, registry, store, watcher, monkeypatch):
        def fail(config):
            raise RuntimeError("disk full")

        monkeypatch.setattr(store, "save_mirror_config", fail)

        with pytest.raises(RuntimeError):
            registry.subscribe("alice", EVM_TARGET)

        assert registry.get("alice") is None
        assert watcher.active() == []
        assert registry.monitored_wallets() == {}


class TestWatcherLifecycle:
    """Test one watcher subscription per target wallet."""

    def test_first_follower_attaches(self, registry, watcher):
        registry.subscribe("alice", EVM_TARGET)
        registry.subscribe("bob", EVM_TARGET)

        assert len(watcher.subscriptions) == 1
        assert registry.is_watching(Chain.ETHEREUM, EVM_TARGET)
        assert registry.followers(Chain.ETHEREUM, EVM_TARGET) == {"alice", "bob"}

    def test_last_follower_detaches(self, registry, watcher):
        registry.subscribe("alice", EVM_TARGET)
        registry.subscribe("bob", EVM_TARGET)

        registry.unsubscribe("alice")
        assert len(watcher.active()) == 1

        registry.unsubscribe("bob")
        assert watcher.active() == []
        assert not registry.is_watching(Chain.ETHEREUM, EVM_TARGET)

    def test_unsubscribe_restores_index(self, registry, store):
        """Subscribe then unsubscribe returns the registry to its prior state."""
        registry.subscribe("alice", SOL_TARGET)
        before = registry.monitored_wallets()

        registry.subscribe("bob", EVM_TARGET)
        assert registry.unsubscribe("bob") is True

        assert registry.monitored_wallets() == before
        assert "bob" not in store.configs

    def test_unsubscribe_unknown(self, registry):
        assert registry.unsubscribe("nobody") is False

    def test_notices_routed_to_handler(self, registry, watcher):
        received = []
        registry.set_notice_handler(received.append)
        registry.subscribe("alice", EVM_TARGET)
        notice = ActivityNotice(
            chain=Chain.ETHEREUM,
            wallet=EVM_TARGET.lower(),
            kind="log",
            reference="0xabc",
            payload={},
        )

        watcher.emit(notice)

        assert received == [notice]

    def test_notice_without_handler_dropped(self, registry, watcher):
        registry.subscribe("alice", EVM_TARGET)

        watcher.emit(ActivityNotice(Chain.ETHEREUM, EVM_TARGET.lower(), "log", "0xabc", {}))

    def test_index_only_without_watcher(self):
        registry = MirrorRegistry()

        registry.subscribe("alice", EVM_TARGET)

        assert registry.followers(Chain.ETHEREUM, EVM_TARGET) == {"alice"}
        assert not registry.is_watching(Chain.ETHEREUM, EVM_TARGET)

    def test_configs_for_sorted(self, registry):
        registry.subscribe("carol", EVM_TARGET)
        registry.subscribe("alice", EVM_TARGET)

        configs = registry.configs_for(Chain.ETHEREUM, EVM_TARGET)

        assert [c.follower_id for c in configs] == ["alice", "carol"]

    def test_shutdown_cancels_all(self, registry, watcher):
        registry.subscribe("alice", EVM_TARGET)
        registry.subscribe("bob", SOL_TARGET)

        registry.shutdown()

        assert watcher.active() == []
        assert len(registry) == 2


class TestPatch:
    """Test in-place policy updates."""

    def test_patch_policy(self, registry, store):
        registry.subscribe("alice", EVM_TARGET)

        updated = registry.patch("alice", {"copy_percentage": Decimal("50"), "active": False})

        assert updated.copy_percentage == Decimal("50")
        assert not updated.active
        assert registry.get("alice") == updated
        assert store.configs["alice"] == updated

    def test_patch_target_rejected(self, registry):
        registry.subscribe("alice", EVM_TARGET)

        with pytest.raises(ValueError, match="cannot be patched"):
            registry.patch("alice", {"target_wallet": SOL_TARGET})

    def test_patch_unknown_field(self, registry):
        registry.subscribe("alice", EVM_TARGET)

        with pytest.raises(ValueError, match="Unknown fields"):
            registry.patch("alice", {"leverage": 5})

    def test_patch_invalid_value(self, registry):
        original = registry.subscribe("alice", EVM_TARGET)

        with pytest.raises(ValueError):
            registry.patch("alice", {"copy_percentage": Decimal("150")})

        assert registry.get("alice") == original

    def test_patch_not_subscribed(self, registry):
        with pytest.raises(NotSubscribed):
            registry.patch("nobody", {"active": False})


class TestRestore:
    """Test rebuilding indices from the store."""

    def _stored(self, follower_id, wallet, chain):
        return MirrorConfig(
            follower_id=follower_id,
            target_wallet=wallet,
            chain=chain,
            copy_percentage=Decimal("50"),
            max_amount_per_trade=Decimal("1"),
            slippage_bps=500,
        )

    def test_restore(self, watcher, store):
        store.save_mirror_config(self._stored("alice", EVM_TARGET.lower(), Chain.ETHEREUM))
        store.save_mirror_config(self._stored("bob", EVM_TARGET.lower(), Chain.ETHEREUM))
        registry = MirrorRegistry(watcher=watcher, store=store)

        assert registry.restore() == 2
        assert registry.followers(Chain.ETHEREUM, EVM_TARGET) == {"alice", "bob"}
        assert len(watcher.subscriptions) == 1

    def test_restore_skips_unwatchable_chain(self, store):
        """A stored config for a chain without an endpoint is skipped."""
        store.save_mirror_config(self._stored("alice", EVM_TARGET.lower(), Chain.ETHEREUM))
        store.save_mirror_config(self._stored("bob", SOL_TARGET, Chain.SOLANA))
        registry = MirrorRegistry(watcher=MockWatcher(supported=(Chain.ETHEREUM,)), store=store)

        assert registry.restore() == 1
        assert registry.get("bob") is None

    def test_restore_is_idempotent(self, watcher, store):
        store.save_mirror_config(self._stored("alice", EVM_TARGET.lower(), Chain.ETHEREUM))
        registry = MirrorRegistry(watcher=watcher, store=store)

        registry.restore()

        assert registry.restore() == 0
        assert len(registry) == 1

    def test_restore_without_store(self):
        assert MirrorRegistry().restore() == 0
