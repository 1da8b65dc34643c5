"""
Engine Configuration

Validated, frozen dataclass configuration for chain adapters, the
resilient executor, fee collection, mirroring defaults and the
rate-limit gate.

All monetary values use Decimal for precision.
All configs are frozen (immutable) for thread safety.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Tuple
import os

from dotenv import load_dotenv


UNISWAP_V2_ROUTER = "0x7a250d5630B4cF539739dF2C5dAcb4c659F2488D"
UNISWAP_V3_ROUTER = "0xE592427A0AEce92De3Edee1F18E0157C05861564"
UNISWAP_UNIVERSAL_ROUTER = "0x68b3465833fb72A70ecDF485E0e4C7bD8665Fc45"
WETH_ADDRESS = "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"

WSOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
JUPITER_V6_PROGRAM = "JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4"


def _split(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(part.strip() for part in value.split(",") if part.strip())


@dataclass(frozen=True, slots=True)
class CostTierConfig:
    """
    Three-tier cost estimation ladder.

    precise:      simulated usage x buffer, floored at min_resource_limit
    conservative: fixed conservative_limit
    emergency:    fixed emergency_limit

    Each tier raises the network unit price by its bump percentage.
    """
    buffer_multiplier: int = 2
    min_resource_limit: int = 400_000
    conservative_limit: int = 600_000
    emergency_limit: int = 800_000
    precise_bump_pct: int = 20
    conservative_bump_pct: int = 30
    emergency_bump_pct: int = 50
    fallback_unit_price: Optional[int] = None     # Used when the price oracle fails
    max_resource_limit: Optional[int] = None      # Hard per-transaction ceiling

    def __post_init__(self) -> None:
        """Validate tier ordering."""
        if self.max_resource_limit is not None and self.max_resource_limit < self.emergency_limit:
            raise ValueError(f"max_resource_limit must be >= emergency_limit: {self.max_resource_limit}")
        if self.buffer_multiplier < 1:
            raise ValueError(f"buffer_multiplier must be >= 1: {self.buffer_multiplier}")
        if self.min_resource_limit <= 0:
            raise ValueError(f"min_resource_limit must be positive: {self.min_resource_limit}")
        if not (self.min_resource_limit <= self.conservative_limit <= self.emergency_limit):
            raise ValueError(
                "resource limits must satisfy min <= conservative <= emergency: "
                f"{self.min_resource_limit}, {self.conservative_limit}, {self.emergency_limit}"
            )
        for name in ("precise_bump_pct", "conservative_bump_pct", "emergency_bump_pct"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative: {getattr(self, name)}")
        if self.fallback_unit_price is not None and self.fallback_unit_price <= 0:
            raise ValueError(f"fallback_unit_price must be positive: {self.fallback_unit_price}")


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """
    Retry policy for swap submission.
    """
    max_attempts: int = 3
    base_delay_ms: int = 500
    max_delay_ms: int = 8_000
    price_bump_pct: int = 25                  # Unit price increase per retry

    def __post_init__(self) -> None:
        """Validate retry parameters."""
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1: {self.max_attempts}")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be non-negative: {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(f"max_delay_ms must be >= base_delay_ms: {self.max_delay_ms}")
        if self.price_bump_pct <= 0:
            raise ValueError(f"price_bump_pct must be positive: {self.price_bump_pct}")


@dataclass(frozen=True, slots=True)
class ConfirmationConfig:
    confirmations: int = 1
    timeout_seconds: float = 300.0
    poll_interval_seconds: float = 2.0

    def __post_init__(self) -> None:
        if self.confirmations < 1:
            raise ValueError(f"confirmations must be >= 1: {self.confirmations}")
        if self.timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be positive: {self.timeout_seconds}")
        if self.poll_interval_seconds <= 0:
            raise ValueError(f"poll_interval_seconds must be positive: {self.poll_interval_seconds}")


@dataclass(frozen=True, slots=True)
class FeeConfig:
    """
    Protocol fee collected after a successful mirrored swap.

    Treasury addresses are validated by the FeeCollector at construction.
    """
    fee_pct: Decimal = Decimal("1.0")         # Percent of native swap volume
    min_fee: Optional[Decimal] = None         # Skip collection below this amount
    evm_treasury: Optional[str] = None
    solana_treasury: Optional[str] = None

    def __post_init__(self) -> None:
        """Validate fee parameters."""
        if not (Decimal("0") <= self.fee_pct <= Decimal("100")):
            raise ValueError(f"fee_pct must be 0-100: {self.fee_pct}")
        if self.min_fee is not None and self.min_fee < Decimal("0"):
            raise ValueError(f"min_fee must be non-negative: {self.min_fee}")


@dataclass(frozen=True, slots=True)
class MirrorDefaults:
    """
    Defaults applied to new mirror subscriptions and dispatch policy.
    """
    copy_percentage: Decimal = Decimal("100")
    max_amount_per_trade: Decimal = Decimal("1.0")
    slippage_bps: int = 500
    dust_floor: Decimal = Decimal("0.001")
    overlap_policy: str = "queue"             # "queue" or "drop"
    max_queued_per_follower: int = 5
    min_confidence: Decimal = Decimal("0.5")
    dedup_window_seconds: int = 600

    def __post_init__(self) -> None:
        """Validate mirror defaults."""
        if not (Decimal("0") < self.copy_percentage <= Decimal("100")):
            raise ValueError(f"copy_percentage must be in (0, 100]: {self.copy_percentage}")
        if self.max_amount_per_trade <= Decimal("0"):
            raise ValueError(f"max_amount_per_trade must be positive: {self.max_amount_per_trade}")
        if not (0 <= self.slippage_bps < 10_000):
            raise ValueError(f"slippage_bps must be in [0, 10000): {self.slippage_bps}")
        if self.dust_floor < Decimal("0"):
            raise ValueError(f"dust_floor must be non-negative: {self.dust_floor}")
        if self.overlap_policy not in ("queue", "drop"):
            raise ValueError(f"overlap_policy must be 'queue' or 'drop': {self.overlap_policy}")
        if self.max_queued_per_follower < 0:
            raise ValueError(f"max_queued_per_follower must be non-negative: {self.max_queued_per_follower}")
        if not (Decimal("0") <= self.min_confidence <= Decimal("1")):
            raise ValueError(f"min_confidence must be 0-1: {self.min_confidence}")


@dataclass(frozen=True, slots=True)
class EvmConfig:
    """
    Ethereum mainnet adapter settings.
    """
    rpc_urls: Tuple[str, ...] = ("https://eth.llamarpc.com",)
    ws_url: Optional[str] = None
    chain_id: int = 1
    router_address: str = UNISWAP_V2_ROUTER
    weth_address: str = WETH_ADDRESS
    known_routers: Tuple[str, ...] = (
        UNISWAP_V2_ROUTER,
        UNISWAP_V3_ROUTER,
        UNISWAP_UNIVERSAL_ROUTER,
    )
    deadline_seconds: int = 1200              # Swap freshness deadline (+20 min)
    request_timeout: int = 30
    transfer_gas: int = 21_000
    transfer_price_bump_pct: int = 10
    cost_tiers: CostTierConfig = field(default_factory=CostTierConfig)

    def __post_init__(self) -> None:
        if not self.rpc_urls:
            raise ValueError("EVM rpc_urls must not be empty")
        if self.deadline_seconds <= 0:
            raise ValueError(f"deadline_seconds must be positive: {self.deadline_seconds}")


@dataclass(frozen=True, slots=True)
class SolanaConfig:
    """
    Solana mainnet adapter settings.

    Resource limits are compute units; unit price is micro-lamports per CU.
    """
    rpc_urls: Tuple[str, ...] = ("https://api.mainnet-beta.solana.com",)
    ws_url: Optional[str] = None
    jupiter_url: str = "https://lite-api.jup.ag/swap/v1"
    commitment: str = "confirmed"
    base_fee_lamports: int = 5_000
    min_priority_fee: int = 1_000
    request_timeout: float = 30.0
    cost_tiers: CostTierConfig = field(default_factory=lambda: CostTierConfig(
        min_resource_limit=200_000,
        conservative_limit=800_000,
        emergency_limit=1_400_000,
        fallback_unit_price=1_000,
        max_resource_limit=1_400_000,
    ))

    def __post_init__(self) -> None:
        if not self.rpc_urls:
            raise ValueError("Solana rpc_urls must not be empty")
        if self.commitment not in ("processed", "confirmed", "finalized"):
            raise ValueError(f"Invalid commitment: {self.commitment}")


@dataclass(frozen=True, slots=True)
class RateLimitConfig:
    """
    Per-owner limits enforced by the in-memory rate-limit gate.
    """
    mirror_trades_per_hour: int = 10
    subscriptions_per_day: int = 5
    daily_volume_limit: Optional[Decimal] = None

    def __post_init__(self) -> None:
        if self.mirror_trades_per_hour <= 0:
            raise ValueError(f"mirror_trades_per_hour must be positive: {self.mirror_trades_per_hour}")
        if self.subscriptions_per_day <= 0:
            raise ValueError(f"subscriptions_per_day must be positive: {self.subscriptions_per_day}")
        if self.daily_volume_limit is not None and self.daily_volume_limit <= Decimal("0"):
            raise ValueError(f"daily_volume_limit must be positive: {self.daily_volume_limit}")


@dataclass(frozen=True, slots=True)
class EngineConfig:
    """
    Master configuration for the mirror trading engine.
    """
    db_path: str = field(default_factory=lambda: os.path.expanduser("~/.mirrorbot/mirrorbot.db"))
    evm: EvmConfig = field(default_factory=EvmConfig)
    solana: SolanaConfig = field(default_factory=SolanaConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    confirmation: ConfirmationConfig = field(default_factory=ConfirmationConfig)
    fees: FeeConfig = field(default_factory=FeeConfig)
    mirror: MirrorDefaults = field(default_factory=MirrorDefaults)
    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Create config from environment variables (and .env if present)."""
        load_dotenv()

        evm_urls = _split(os.getenv("ETH_RPC_URLS") or os.getenv("ETH_RPC_URL"))
        sol_urls = _split(os.getenv("SOLANA_RPC_URLS") or os.getenv("SOLANA_RPC_URL"))
        min_fee = os.getenv("MIN_FEE")
        volume_limit = os.getenv("DAILY_VOLUME_LIMIT")

        return cls(
            db_path=os.getenv("MIRRORBOT_DB_PATH", os.path.expanduser("~/.mirrorbot/mirrorbot.db")),
            evm=EvmConfig(
                rpc_urls=evm_urls or EvmConfig().rpc_urls,
                ws_url=os.getenv("ETH_WS_URL"),
                chain_id=int(os.getenv("ETH_CHAIN_ID", "1")),
            ),
            solana=SolanaConfig(
                rpc_urls=sol_urls or SolanaConfig().rpc_urls,
                ws_url=os.getenv("SOLANA_WS_URL"),
                jupiter_url=os.getenv("JUPITER_API_URL", SolanaConfig().jupiter_url),
            ),
            retry=RetryConfig(
                max_attempts=int(os.getenv("MAX_RETRIES", "3")),
            ),
            confirmation=ConfirmationConfig(
                timeout_seconds=float(os.getenv("CONFIRMATION_TIMEOUT", "300")),
            ),
            fees=FeeConfig(
                fee_pct=Decimal(os.getenv("FEE_PERCENTAGE", "1.0")),
                min_fee=Decimal(min_fee) if min_fee else None,
                evm_treasury=os.getenv("TREASURY_WALLET") or None,
                solana_treasury=os.getenv("TREASURY_WALLET_SOL") or None,
            ),
            mirror=MirrorDefaults(
                overlap_policy=os.getenv("MIRROR_OVERLAP_POLICY", "queue"),
                dust_floor=Decimal(os.getenv("MIRROR_DUST_FLOOR", "0.001")),
            ),
            rate_limits=RateLimitConfig(
                daily_volume_limit=Decimal(volume_limit) if volume_limit else None,
            ),
            telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN") or None,
            telegram_chat_id=os.getenv("TELEGRAM_CHAT_ID") or None,
        )


def get_default_config() -> EngineConfig:
    """Get default engine configuration."""
    return EngineConfig()
