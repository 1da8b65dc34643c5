"""
Tests for engine configuration.

Tests:
1. Defaults are sane and frozen
2. Validation rejects inconsistent values
3. from_env reads environment overrides
"""

from dataclasses import FrozenInstanceError
from decimal import Decimal

import pytest

from mirrorbot.config import (
    ConfirmationConfig,
    CostTierConfig,
    EngineConfig,
    EvmConfig,
    FeeConfig,
    MirrorDefaults,
    RateLimitConfig,
    RetryConfig,
    SolanaConfig,
    get_default_config,
)


class TestCostTierConfig:
    """Test cost tier ladder validation."""

    def test_defaults(self):
        """Default ladder matches the EVM gas tiers."""
        tiers = CostTierConfig()

        assert tiers.buffer_multiplier == 2
        assert tiers.min_resource_limit == 400_000
        assert tiers.conservative_limit == 600_000
        assert tiers.emergency_limit == 800_000
        assert (tiers.precise_bump_pct, tiers.conservative_bump_pct, tiers.emergency_bump_pct) == (20, 30, 50)
        assert tiers.fallback_unit_price is None

    def test_limits_must_be_ordered(self):
        """Conservative limit below the floor is rejected."""
        with pytest.raises(ValueError, match="min <= conservative <= emergency"):
            CostTierConfig(min_resource_limit=700_000)

    def test_ceiling_below_emergency_rejected(self):
        with pytest.raises(ValueError, match="max_resource_limit"):
            CostTierConfig(max_resource_limit=500_000)

    def test_negative_bump_rejected(self):
        with pytest.raises(ValueError, match="emergency_bump_pct"):
            CostTierConfig(emergency_bump_pct=-1)

    def test_fallback_price_must_be_positive(self):
        with pytest.raises(ValueError, match="fallback_unit_price"):
            CostTierConfig(fallback_unit_price=0)

    def test_frozen(self):
        """Config cannot be mutated after creation."""
        tiers = CostTierConfig()
        with pytest.raises(FrozenInstanceError):
            tiers.buffer_multiplier = 3


class TestRetryAndConfirmation:
    """Test retry and confirmation bounds."""

    def test_retry_defaults(self):
        retry = RetryConfig()
        assert retry.max_attempts == 3
        assert retry.price_bump_pct > 0

    def test_zero_attempts_rejected(self):
        with pytest.raises(ValueError, match="max_attempts"):
            RetryConfig(max_attempts=0)

    def test_max_delay_below_base_rejected(self):
        with pytest.raises(ValueError, match="max_delay_ms"):
            RetryConfig(base_delay_ms=1_000, max_delay_ms=500)

    def test_price_bump_must_be_positive(self):
        """Retries must strictly raise the unit price."""
        with pytest.raises(ValueError, match="price_bump_pct"):
            RetryConfig(price_bump_pct=0)

    def test_confirmation_timeout_positive(self):
        with pytest.raises(ValueError, match="timeout_seconds"):
            ConfirmationConfig(timeout_seconds=0)


class TestFeeConfig:
    """Test protocol fee settings."""

    def test_default_fee_is_one_percent(self):
        fees = FeeConfig()
        assert fees.fee_pct == Decimal("1.0")
        assert fees.min_fee is None

    def test_fee_pct_range(self):
        with pytest.raises(ValueError, match="fee_pct"):
            FeeConfig(fee_pct=Decimal("101"))

    def test_negative_min_fee_rejected(self):
        with pytest.raises(ValueError, match="min_fee"):
            FeeConfig(min_fee=Decimal("-0.1"))


class TestMirrorDefaults:
    """Test mirror subscription defaults."""

    def test_defaults(self):
        defaults = MirrorDefaults()

        assert defaults.copy_percentage == Decimal("100")
        assert defaults.max_amount_per_trade == Decimal("1.0")
        assert defaults.overlap_policy == "queue"
        assert defaults.min_confidence == Decimal("0.5")

    def test_unknown_overlap_policy_rejected(self):
        with pytest.raises(ValueError, match="overlap_policy"):
            MirrorDefaults(overlap_policy="parallel")

    def test_copy_percentage_bounds(self):
        with pytest.raises(ValueError, match="copy_percentage"):
            MirrorDefaults(copy_percentage=Decimal("0"))
        with pytest.raises(ValueError, match="copy_percentage"):
            MirrorDefaults(copy_percentage=Decimal("150"))

    def test_confidence_bounds(self):
        with pytest.raises(ValueError, match="min_confidence"):
            MirrorDefaults(min_confidence=Decimal("1.5"))


class TestChainConfigs:
    """Test chain adapter settings."""

    def test_evm_requires_endpoint(self):
        with pytest.raises(ValueError, match="rpc_urls"):
            EvmConfig(rpc_urls=())

    def test_solana_commitment_validated(self):
        with pytest.raises(ValueError, match="commitment"):
            SolanaConfig(commitment="instant")

    def test_solana_tiers_are_compute_units(self):
        """Solana ladder uses compute-unit limits with a hard ceiling."""
        tiers = SolanaConfig().cost_tiers

        assert tiers.min_resource_limit == 200_000
        assert tiers.emergency_limit == 1_400_000
        assert tiers.max_resource_limit == 1_400_000
        assert tiers.fallback_unit_price is not None

    def test_rate_limits_positive(self):
        with pytest.raises(ValueError, match="mirror_trades_per_hour"):
            RateLimitConfig(mirror_trades_per_hour=0)


class TestEngineConfig:
    """Test master configuration."""

    def test_default_config(self):
        config = get_default_config()

        assert isinstance(config.evm, EvmConfig)
        assert isinstance(config.solana, SolanaConfig)
        assert config.fees.evm_treasury is None
        assert config.telegram_bot_token is None

    def test_from_env(self, monkeypatch, tmp_path):
        """Environment variables override defaults."""
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("ETH_RPC_URLS", "https://a.example, https://b.example")
        monkeypatch.setenv("SOLANA_RPC_URL", "https://sol.example")
        monkeypatch.setenv("FEE_PERCENTAGE", "0.5")
        monkeypatch.setenv("MIN_FEE", "0.0001")
        monkeypatch.setenv("MIRROR_OVERLAP_POLICY", "drop")
        monkeypatch.setenv("MAX_RETRIES", "5")
        monkeypatch.setenv("MIRRORBOT_DB_PATH", str(tmp_path / "bot.db"))
        monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "")

        config = EngineConfig.from_env()

        assert config.evm.rpc_urls == ("https://a.example", "https://b.example")
        assert config.solana.rpc_urls == ("https://sol.example",)
        assert config.fees.fee_pct == Decimal("0.5")
        assert config.fees.min_fee == Decimal("0.0001")
        assert config.mirror.overlap_policy == "drop"
        assert config.retry.max_attempts == 5
        assert config.db_path == str(tmp_path / "bot.db")
        assert config.telegram_bot_token is None

    def test_from_env_invalid_value_fails_fast(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("FEE_PERCENTAGE", "250")

        with pytest.raises(ValueError, match="fee_pct"):
            EngineConfig.from_env()
