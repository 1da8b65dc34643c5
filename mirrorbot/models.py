"""
Core data model for execution and mirroring.

Plain frozen dataclasses for internal pipeline values, pydantic models
for user-facing configuration and parsed trade intents.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from mirrorbot.config import MirrorDefaults


NATIVE_ASSET = "native"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Chain(str, Enum):
    """Supported chain families."""

    ETHEREUM = "ethereum"
    SOLANA = "solana"

    @property
    def native_symbol(self) -> str:
        return "ETH" if self is Chain.ETHEREUM else "SOL"

    @property
    def native_decimals(self) -> int:
        return 18 if self is Chain.ETHEREUM else 9


class TradeKind(str, Enum):
    BUY = "buy"
    SELL = "sell"
    TRANSFER = "transfer"


class CostTier(str, Enum):
    PRECISE = "precise"
    CONSERVATIVE = "conservative"
    EMERGENCY = "emergency"


class OutcomeStatus(str, Enum):
    """Terminal status of an execution or mirrored trade."""

    CONFIRMED = "confirmed"
    PENDING = "pending"         # Submitted, confirmation not observed in time
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class Quote:
    """
    Priced, time-bounded routing result.

    Amounts are integers in the smallest unit of each asset. ``route`` is
    opaque and replayed as-is when building the executable transaction.
    """
    chain: Chain
    input_asset: str
    output_asset: str
    input_amount: int
    output_amount: int
    route: Any
    price_impact: Optional[Decimal]
    expiry: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expiry


@dataclass(frozen=True, slots=True)
class SwapIntent:
    """
    Request to swap ``input_amount`` (human units) of one asset for another.
    """
    chain: Chain
    input_asset: str
    output_asset: str
    input_amount: Decimal
    max_slippage_bps: int
    owner_identity: str

    def __post_init__(self) -> None:
        """Validate swap request."""
        if self.input_amount <= Decimal("0"):
            raise ValueError(f"input_amount must be positive: {self.input_amount}")
        if not (0 <= self.max_slippage_bps < 10_000):
            raise ValueError(f"max_slippage_bps must be in [0, 10000): {self.max_slippage_bps}")
        if self.input_asset == self.output_asset:
            raise ValueError(f"input and output asset must differ: {self.input_asset}")


@dataclass(frozen=True, slots=True)
class CostEstimate:
    """
    Network cost for one transaction.

    EVM: resource_limit is gas, unit_price is wei per gas.
    Solana: resource_limit is compute units, unit_price is micro-lamports per CU.
    total_cost is in the native smallest unit (wei / lamports).
    """
    resource_limit: int
    unit_price: int
    total_cost: int
    tier: CostTier


@dataclass(frozen=True, slots=True)
class UnsignedTransaction:
    """
    Chain-specific transaction body ready for cost finalisation and signing.

    ``value`` is the native amount leaving the sender besides network cost.
    ``spend_token``/``spend_amount`` describe a non-native input, if any.
    """
    chain: Chain
    sender: str
    payload: Dict[str, Any]
    value: int = 0
    min_output: Optional[int] = None
    recipient: Optional[str] = None
    spend_token: Optional[str] = None
    spend_amount: int = 0
    cost: Optional[CostEstimate] = None


@dataclass(frozen=True, slots=True)
class SignedTransaction:
    chain: Chain
    sender: str
    raw: bytes
    reference: str
    value: int
    cost: CostEstimate


@dataclass(frozen=True, slots=True)
class ConfirmationOutcome:
    reference: str
    confirmed: bool
    block: Optional[int] = None
    confirmations: int = 0
    fee_paid: Optional[int] = None


@dataclass
class ExecutionAttempt:
    """One submission attempt inside a ResilientExecutor run."""
    attempt_number: int
    cost_tier: Optional[CostTier] = None
    fee_params: Optional[CostEstimate] = None
    submitted_at: Optional[datetime] = None
    outcome: str = "building"
    reference: Optional[str] = None
    endpoint: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """
    Result of a completed ResilientExecutor run.

    PENDING means the transaction was submitted but confirmation was not
    observed within the configured bound.
    """
    reference: str
    status: OutcomeStatus
    quote: Quote
    min_output: int
    attempts: List[ExecutionAttempt] = field(default_factory=list)
    confirmation: Optional[ConfirmationOutcome] = None

    @property
    def success(self) -> bool:
        return self.status is OutcomeStatus.CONFIRMED

    def __repr__(self) -> str:
        return f"ExecutionResult({self.status.value}: {self.reference}, attempts={len(self.attempts)})"


@dataclass(frozen=True, slots=True)
class ActivityNotice:
    """
    Raw activity pushed by an ActivityWatcher subscription.

    kind is one of "transaction", "log", "account".
    """
    chain: Chain
    wallet: str
    kind: str
    reference: Optional[str]
    payload: Dict[str, Any]
    observed_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True, slots=True)
class FeeOutcome:
    chain: Chain
    reference: str
    amount: Decimal
    amount_smallest: int
    treasury: str


class TradeIntent(BaseModel):
    """
    Normalized trade observed on a target wallet.

    ``amount`` is denominated in ``asset_in`` human units. Low confidence
    means the classification is a guess.
    """

    model_config = ConfigDict(frozen=True)

    source_chain: Chain
    wallet: str = Field(..., description="Target wallet the trade was observed on")
    kind: TradeKind
    amount: Decimal = Field(..., ge=0)
    asset_in: str
    asset_out: str
    origin_reference: str
    observed_at: datetime = Field(default_factory=utcnow)
    confidence: float = Field(..., ge=0, le=1)


def _normalize_assets(assets):
    if assets is None:
        return None
    normalized = set()
    for asset in assets:
        asset = asset.strip()
        if asset.startswith("0x"):
            asset = asset.lower()
        if asset:
            normalized.add(asset)
    return frozenset(normalized) or None


class MirrorPolicy(BaseModel):
    """
    Follower-chosen mirroring parameters.
    """

    model_config = ConfigDict(frozen=True)

    copy_percentage: Decimal = Field(Decimal("100"), gt=0, le=100)
    max_amount_per_trade: Decimal = Field(Decimal("1.0"), gt=0)
    enabled_assets: Optional[FrozenSet[str]] = Field(None, description="None mirrors every asset")
    slippage_bps: int = Field(500, ge=0, lt=10_000)

    @field_validator("enabled_assets", mode="before")
    @classmethod
    def normalize_assets(cls, v):
        return _normalize_assets(v)

    @classmethod
    def from_defaults(cls, defaults: MirrorDefaults) -> "MirrorPolicy":
        return cls(
            copy_percentage=defaults.copy_percentage,
            max_amount_per_trade=defaults.max_amount_per_trade,
            slippage_bps=defaults.slippage_bps,
        )


class MirrorConfig(BaseModel):
    """
    Active mirror subscription: follower -> target wallet.

    One config per follower; a target may have many followers.
    """

    model_config = ConfigDict(frozen=True)

    follower_id: str
    target_wallet: str
    chain: Chain
    copy_percentage: Decimal = Field(..., gt=0, le=100)
    max_amount_per_trade: Decimal = Field(..., gt=0)
    enabled_assets: Optional[FrozenSet[str]] = None
    slippage_bps: int = Field(..., ge=0, lt=10_000)
    active: bool = True
    started_at: datetime = Field(default_factory=utcnow)

    @field_validator("enabled_assets", mode="before")
    @classmethod
    def normalize_assets(cls, v):
        return _normalize_assets(v)

    def allows_asset(self, asset: str) -> bool:
        if self.enabled_assets is None:
            return True
        if asset.startswith("0x"):
            asset = asset.lower()
        return asset in self.enabled_assets


@dataclass
class MirrorOutcome:
    """
    Result of mirroring one intent for one follower.

    failure_reason is a human-readable category, never a raw upstream error.
    """
    follower_id: str
    origin_reference: str
    copied_amount: Decimal
    original_amount: Decimal
    result_reference: Optional[str]
    success: bool
    status: OutcomeStatus
    chain: Chain
    target_wallet: str
    asset_in: str = NATIVE_ASSET
    asset_out: str = NATIVE_ASSET
    failure_reason: Optional[str] = None
    fee_reference: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_record(self) -> Dict[str, Any]:
        return {
            "follower_id": self.follower_id,
            "origin_reference": self.origin_reference,
            "copied_amount": str(self.copied_amount),
            "original_amount": str(self.original_amount),
            "result_reference": self.result_reference,
            "success": self.success,
            "status": self.status.value,
            "chain": self.chain.value,
            "target_wallet": self.target_wallet,
            "asset_in": self.asset_in,
            "asset_out": self.asset_out,
            "failure_reason": self.failure_reason,
            "fee_reference": self.fee_reference,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class FollowerProfile:
    """Follower wallet references. Keys are opaque custody references."""
    owner_identity: str
    evm_address: Optional[str] = None
    evm_key_ref: Optional[str] = None
    solana_address: Optional[str] = None
    solana_key_ref: Optional[str] = None

    def key_ref(self, chain: Chain) -> Optional[str]:
        return self.evm_key_ref if chain is Chain.ETHEREUM else self.solana_key_ref

    def address(self, chain: Chain) -> Optional[str]:
        return self.evm_address if chain is Chain.ETHEREUM else self.solana_address
