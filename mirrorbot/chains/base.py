"""
Chain Adapter - Isolation Boundary per Chain Family

Defines the capability set the executor and dispatcher are written against:
quote, build, estimate, finalize, pre-flight, submit, confirm. Concrete
adapters exist for EVM (Ethereum) and Solana.

Cost estimation is a template method: a three-tier fallback ladder
(precise -> conservative -> emergency) driven by CostTierConfig, with the
chain-specific pieces (simulation, network unit price, total cost formula)
supplied by subclasses.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from decimal import ROUND_DOWN, Decimal
from typing import Optional, Sequence

from mirrorbot.config import CostTierConfig
from mirrorbot.errors import (
    ConfigurationError,
    CostEstimationFailed,
    InsufficientFunds,
)
from mirrorbot.models import (
    ActivityNotice,
    Chain,
    ConfirmationOutcome,
    CostEstimate,
    CostTier,
    Quote,
    SignedTransaction,
    UnsignedTransaction,
)

logger = logging.getLogger(__name__)


def to_smallest_units(amount: Decimal, decimals: int) -> int:
    """Convert a human amount to integer smallest units, rounding down."""
    scaled = Decimal(amount) * (Decimal(10) ** decimals)
    return int(scaled.to_integral_value(rounding=ROUND_DOWN))


def from_smallest_units(amount: int, decimals: int) -> Decimal:
    return Decimal(amount) / (Decimal(10) ** decimals)


def bump_price(price: int, pct: int) -> int:
    """Raise price by pct percent. Strictly increases for any pct > 0."""
    bumped = price * (100 + pct) // 100
    if pct > 0 and bumped <= price:
        bumped = price + 1
    return bumped


class EndpointRotator:
    """
    Round-robin cursor over static upstream endpoints.

    Best-effort and not linearizable: two concurrent rotations may skip
    an endpoint, which costs at most one retry.
    """

    def __init__(self, endpoints: Sequence[str]):
        if not endpoints:
            raise ConfigurationError("At least one endpoint is required")
        self._endpoints = tuple(endpoints)
        self._index = 0

    @property
    def current(self) -> str:
        return self._endpoints[self._index]

    def rotate(self) -> str:
        self._index = (self._index + 1) % len(self._endpoints)
        return self._endpoints[self._index]

    def __len__(self) -> int:
        return len(self._endpoints)


class Signer(ABC):
    """
    Signing handle returned by wallet custody.

    The engine never sees key material, only this handle.
    """

    chain: Chain

    @property
    @abstractmethod
    def address(self) -> str:
        pass

    @abstractmethod
    async def sign(self, tx: UnsignedTransaction) -> SignedTransaction:
        """
        Sign a finalized transaction.

        Raises:
            UserRejected: If the handle refuses to sign
        """
        pass


class ChainAdapter(ABC):
    """
    Abstract chain adapter.

    Implementations translate chain-specific failures into the typed
    errors of mirrorbot.errors so the executor can classify them.
    """

    chain: Chain

    def __init__(self, endpoints: Sequence[str], cost_tiers: CostTierConfig):
        self.endpoints = EndpointRotator(endpoints)
        self.cost_tiers = cost_tiers

    @property
    def current_endpoint(self) -> str:
        return self.endpoints.current

    def rotate_endpoint(self) -> str:
        """Switch to the next upstream endpoint."""
        previous = self.endpoints.current
        endpoint = self.endpoints.rotate()
        if endpoint != previous:
            logger.info(f"[{self.chain.value}] Rotated endpoint {previous} -> {endpoint}")
        self._on_endpoint_changed()
        return endpoint

    def _on_endpoint_changed(self) -> None:
        """Hook for adapters holding per-endpoint clients."""

    async def close(self) -> None:
        """Release network clients."""

    # ------------------------------------------------------------------
    # Assets and quoting
    # ------------------------------------------------------------------

    @abstractmethod
    def is_native(self, asset: str) -> bool:
        """Whether asset names the chain's native coin."""
        pass

    @abstractmethod
    def is_valid_address(self, address: str) -> bool:
        pass

    @abstractmethod
    async def get_decimals(self, asset: str) -> int:
        """
        Raises:
            InvalidAsset: If asset metadata cannot be resolved
        """
        pass

    @abstractmethod
    async def get_quote(
        self,
        input_asset: str,
        output_asset: str,
        amount: Decimal,
        max_slippage_bps: int,
    ) -> Quote:
        """
        Quote a swap of ``amount`` (human units) of input_asset.

        Raises:
            NoRouteFound: No viable path
            InvalidAsset: Asset metadata unresolvable
            TransientNetworkError: Upstream failure
        """
        pass

    @abstractmethod
    async def build_swap(
        self, quote: Quote, min_output: int, recipient: str
    ) -> UnsignedTransaction:
        """
        Build the unsigned swap transaction for a quote.

        Deterministic for a given quote, min_output and recipient apart from
        the freshness deadline.
        """
        pass

    # ------------------------------------------------------------------
    # Cost estimation
    # ------------------------------------------------------------------

    @abstractmethod
    async def _simulate_usage(self, tx: UnsignedTransaction) -> int:
        """Simulated resource usage (gas / compute units)."""
        pass

    @abstractmethod
    async def _network_unit_price(self) -> int:
        """Current network unit price (wei per gas / micro-lamports per CU)."""
        pass

    @abstractmethod
    def _total_cost(self, resource_limit: int, unit_price: int) -> int:
        """Worst-case native cost for a limit and unit price."""
        pass

    def price_estimate(self, estimate: CostEstimate, unit_price: int) -> CostEstimate:
        """Same limit and tier at a different unit price."""
        return CostEstimate(
            resource_limit=estimate.resource_limit,
            unit_price=unit_price,
            total_cost=self._total_cost(estimate.resource_limit, unit_price),
            tier=estimate.tier,
        )

    async def _emergency_unit_price(self) -> int:
        try:
            return await self._network_unit_price()
        except Exception as e:
            if self.cost_tiers.fallback_unit_price is None:
                raise
            logger.warning(
                f"[{self.chain.value}] Unit price unavailable ({e}), "
                f"using fallback {self.cost_tiers.fallback_unit_price}"
            )
            return self.cost_tiers.fallback_unit_price

    async def _precise_tier(self, tx: UnsignedTransaction) -> CostEstimate:
        tiers = self.cost_tiers
        usage = await self._simulate_usage(tx)
        limit = max(usage * tiers.buffer_multiplier, tiers.min_resource_limit)
        if tiers.max_resource_limit is not None:
            limit = min(limit, tiers.max_resource_limit)
        price = bump_price(await self._network_unit_price(), tiers.precise_bump_pct)
        return CostEstimate(limit, price, self._total_cost(limit, price), CostTier.PRECISE)

    async def _conservative_tier(self, tx: UnsignedTransaction) -> CostEstimate:
        tiers = self.cost_tiers
        limit = tiers.conservative_limit
        price = bump_price(await self._network_unit_price(), tiers.conservative_bump_pct)
        return CostEstimate(limit, price, self._total_cost(limit, price), CostTier.CONSERVATIVE)

    async def _emergency_tier(self, tx: UnsignedTransaction) -> CostEstimate:
        tiers = self.cost_tiers
        limit = tiers.emergency_limit
        price = bump_price(await self._emergency_unit_price(), tiers.emergency_bump_pct)
        return CostEstimate(limit, price, self._total_cost(limit, price), CostTier.EMERGENCY)

    async def estimate_cost(self, tx: UnsignedTransaction) -> CostEstimate:
        """
        Estimate network cost with a three-tier fallback. First success wins.

        Raises:
            CostEstimationFailed: If all three tiers fail
        """
        ladder = (
            (CostTier.PRECISE, self._precise_tier),
            (CostTier.CONSERVATIVE, self._conservative_tier),
            (CostTier.EMERGENCY, self._emergency_tier),
        )
        last_error: Optional[Exception] = None
        for tier, estimate in ladder:
            try:
                result = await estimate(tx)
            except Exception as e:
                logger.warning(f"[{self.chain.value}] {tier.value} cost estimate failed: {e}")
                last_error = e
                continue
            logger.debug(
                f"[{self.chain.value}] {tier.value} estimate: limit={result.resource_limit} "
                f"price={result.unit_price} total={result.total_cost}"
            )
            return result

        raise CostEstimationFailed(
            f"All cost tiers failed on {self.chain.value}: {last_error}"
        ) from last_error

    @abstractmethod
    async def finalize(self, tx: UnsignedTransaction, estimate: CostEstimate) -> UnsignedTransaction:
        """Apply cost parameters (and any per-attempt fields) to a transaction."""
        pass

    def pin_sequence(self, tx: UnsignedTransaction, finalized: UnsignedTransaction) -> UnsignedTransaction:
        """
        Carry the sender sequence chosen by ``finalized`` onto ``tx``.

        Retries of one execution finalize the returned transaction, so a
        higher-priced retry replaces the earlier broadcast instead of
        queueing behind it. Chains without account sequences return ``tx``.
        """
        return tx

    # ------------------------------------------------------------------
    # Balance, submission, confirmation
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_native_balance(self, address: str) -> int:
        pass

    async def preflight(self, tx: UnsignedTransaction, estimate: CostEstimate) -> None:
        """
        Check the sender can pay value plus network cost.

        Raises:
            InsufficientFunds: Without anything being submitted
        """
        balance = await self.get_native_balance(tx.sender)
        required = tx.value + estimate.total_cost
        if balance < required:
            raise InsufficientFunds(
                f"{tx.sender} has {balance}, needs {required} "
                f"(value {tx.value} + cost {estimate.total_cost})"
            )

    @abstractmethod
    async def submit(self, signed: SignedTransaction) -> str:
        """
        Broadcast a signed transaction and return its reference.

        Raises:
            InsufficientFunds: Rejected for funds
            TransientNetworkError: Any retryable upstream failure
        """
        pass

    @abstractmethod
    async def await_confirmation(
        self, reference: str, confirmations: int, timeout: float
    ) -> ConfirmationOutcome:
        """
        Wait (bounded) for the transaction to reach the requested depth.

        Raises:
            ConfirmationTimeout: Not observed within timeout
            TransactionReverted: Included but failed
        """
        pass

    # ------------------------------------------------------------------
    # Native transfers (fee collection)
    # ------------------------------------------------------------------

    @abstractmethod
    async def build_transfer(self, sender: str, recipient: str, amount: int) -> UnsignedTransaction:
        pass

    @abstractmethod
    async def estimate_transfer_cost(self, tx: UnsignedTransaction) -> CostEstimate:
        pass

    # ------------------------------------------------------------------
    # Activity
    # ------------------------------------------------------------------

    @abstractmethod
    async def fetch_activity(self, notice: ActivityNotice) -> ActivityNotice:
        """
        Enrich a raw pushed notice with the full transaction it refers to.

        Notices that need no enrichment are returned unchanged.
        """
        pass

    def with_cost(self, tx: UnsignedTransaction, estimate: CostEstimate, **payload_updates) -> UnsignedTransaction:
        payload = dict(tx.payload)
        payload.update(payload_updates)
        return replace(tx, payload=payload, cost=estimate)
