"""
Resilient Swap Executor

Turns a SwapIntent into a confirmed (or terminally failed) transaction.

Pipeline:
1. Quote, derive slippage-bounded min_output (integer, rounds down)
2. Build unsigned swap transaction
3. Tiered cost estimate (precise -> conservative -> emergency)
4. Pre-flight balance check
5. Finalize, sign, submit, await confirmation
6. Retry with capped exponential backoff, escalating unit price and
   rotating the upstream endpoint on every retry. Quote and build are
   retried too until they succeed once; the nonce chosen by the first
   finalize is reused by later attempts unless the chain reverted it

Attempts for one (owner, chain) never run concurrently.
"""

import asyncio
import logging
from typing import Dict, Mapping, Optional, Tuple

from mirrorbot.chains.base import ChainAdapter, Signer
from mirrorbot.config import ConfirmationConfig, RetryConfig
from mirrorbot.errors import (
    ConfigurationError,
    ConfirmationTimeout,
    InsufficientFunds,
    InvalidAsset,
    NoRouteFound,
    SwapExecutionFailed,
    TransactionReverted,
    UserRejected,
    describe_failure,
)
from mirrorbot.models import (
    Chain,
    CostEstimate,
    ExecutionAttempt,
    ExecutionResult,
    OutcomeStatus,
    Quote,
    SwapIntent,
    UnsignedTransaction,
    utcnow,
)

logger = logging.getLogger(__name__)


def calculate_min_output(output_amount: int, slippage_bps: int) -> int:
    """
    Minimum acceptable output for a quote.

    floor(output_amount * (1 - slippage_bps / 10000)) in integer arithmetic,
    so rounding always favours the trader.
    """
    if not (0 <= slippage_bps < 10_000):
        raise ValueError(f"slippage_bps must be in [0, 10000): {slippage_bps}")
    return output_amount * (10_000 - slippage_bps) // 10_000


def escalate_unit_price(base_price: int, attempt_number: int, bump_pct: int) -> int:
    """Unit price for an attempt: +bump_pct of the base per retry."""
    if attempt_number <= 1:
        return base_price
    return base_price * (100 + bump_pct * (attempt_number - 1)) // 100


def backoff_delay_ms(failed_attempt: int, config: RetryConfig) -> int:
    """Capped exponential delay after a failed attempt (1-based)."""
    return min(config.base_delay_ms * 2 ** (failed_attempt - 1), config.max_delay_ms)


class ResilientExecutor:
    """
    Swap executor with tiered cost estimation, retry and endpoint failover.

    Terminal failures (InsufficientFunds, UserRejected) and quoting failures
    (NoRouteFound, InvalidAsset) propagate immediately. Everything else is
    retried up to RetryConfig.max_attempts before SwapExecutionFailed.
    """

    def __init__(
        self,
        adapters: Mapping[Chain, ChainAdapter],
        retry: Optional[RetryConfig] = None,
        confirmation: Optional[ConfirmationConfig] = None,
    ):
        """
        Initialize executor.

        Args:
            adapters: One ChainAdapter per supported chain
            retry: Retry policy
            confirmation: Confirmation depth and wall-clock bound
        """
        self._adapters: Dict[Chain, ChainAdapter] = dict(adapters)
        self._retry = retry or RetryConfig()
        self._confirmation = confirmation or ConfirmationConfig()
        self._locks: Dict[Tuple[str, Chain], asyncio.Lock] = {}

        logger.info(
            f"ResilientExecutor initialized for {[c.value for c in self._adapters]} "
            f"(max_attempts={self._retry.max_attempts})"
        )

    def adapter(self, chain: Chain) -> ChainAdapter:
        try:
            return self._adapters[chain]
        except KeyError:
            raise ConfigurationError(f"No adapter configured for {chain.value}") from None

    def _lock_for(self, owner_identity: str, chain: Chain) -> asyncio.Lock:
        key = (owner_identity, chain)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def is_busy(self, owner_identity: str, chain: Chain) -> bool:
        lock = self._locks.get((owner_identity, chain))
        return lock is not None and lock.locked()

    async def _sleep(self, seconds: float) -> None:
        """Sleep helper (overridable for testing)."""
        await asyncio.sleep(seconds)

    async def execute(self, intent: SwapIntent, signer: Signer) -> ExecutionResult:
        """
        Execute a swap for the signer's wallet.

        Waits for any in-flight execution of the same owner on the same chain.

        Returns:
            ExecutionResult with status CONFIRMED, or PENDING when the
            confirmation wait timed out after submission

        Raises:
            NoRouteFound, InvalidAsset: From quoting
            InsufficientFunds, UserRejected: Terminal, not retried
            SwapExecutionFailed: Attempts exhausted
        """
        async with self._lock_for(intent.owner_identity, intent.chain):
            return await self._execute(intent, signer)

    async def _execute(self, intent: SwapIntent, signer: Signer) -> ExecutionResult:
        adapter = self.adapter(intent.chain)

        quote: Optional[Quote] = None
        min_output = 0
        tx: Optional[UnsignedTransaction] = None
        pinned: Optional[UnsignedTransaction] = None
        estimate: Optional[CostEstimate] = None
        attempts = []
        last_error: Optional[Exception] = None
        previous_price = 0

        for attempt_number in range(1, self._retry.max_attempts + 1):
            attempt = ExecutionAttempt(attempt_number=attempt_number, endpoint=adapter.current_endpoint)
            attempts.append(attempt)

            try:
                if tx is None:
                    quote = await adapter.get_quote(
                        intent.input_asset,
                        intent.output_asset,
                        intent.input_amount,
                        intent.max_slippage_bps,
                    )
                    min_output = calculate_min_output(quote.output_amount, intent.max_slippage_bps)
                    tx = await adapter.build_swap(quote, min_output, signer.address)
                    logger.info(
                        f"[{intent.chain.value}] {intent.owner_identity}: swap {intent.input_amount} "
                        f"{intent.input_asset} -> {intent.output_asset}, "
                        f"quoted {quote.output_amount}, min {min_output}"
                    )

                if estimate is None:
                    estimate = await adapter.estimate_cost(tx)

                price = escalate_unit_price(estimate.unit_price, attempt_number, self._retry.price_bump_pct)
                if attempt_number > 1:
                    price = max(price, previous_price + 1)
                previous_price = price
                fee_params = adapter.price_estimate(estimate, price)
                attempt.cost_tier = fee_params.tier
                attempt.fee_params = fee_params

                await adapter.preflight(tx, fee_params)
                finalized = await adapter.finalize(pinned or tx, fee_params)
                pinned = adapter.pin_sequence(tx, finalized)
                signed = await signer.sign(finalized)

                attempt.submitted_at = utcnow()
                reference = await adapter.submit(signed)
                attempt.reference = reference
                attempt.outcome = "submitted"
                logger.info(
                    f"[{intent.chain.value}] Attempt {attempt_number} submitted {reference} "
                    f"({fee_params.tier.value}, price={fee_params.unit_price})"
                )

                confirmation = await adapter.await_confirmation(
                    reference,
                    self._confirmation.confirmations,
                    self._confirmation.timeout_seconds,
                )

            except ConfirmationTimeout as e:
                attempt.outcome = "pending"
                attempt.error = e.category
                logger.warning(f"[{intent.chain.value}] {e}; recording as pending")
                return ExecutionResult(
                    reference=e.reference or attempt.reference,
                    status=OutcomeStatus.PENDING,
                    quote=quote,
                    min_output=min_output,
                    attempts=attempts,
                )

            except (InsufficientFunds, UserRejected, NoRouteFound, InvalidAsset, ConfigurationError) as e:
                attempt.outcome = "rejected"
                attempt.error = e.category
                logger.warning(f"[{intent.chain.value}] Terminal failure on attempt {attempt_number}: {e}")
                raise

            except Exception as e:
                attempt.outcome = "failed"
                attempt.error = describe_failure(e)
                last_error = e
                if isinstance(e, TransactionReverted):
                    # the reverted transaction consumed its sequence
                    pinned = None
                logger.error(f"[{intent.chain.value}] Attempt {attempt_number} failed: {e}")

            else:
                attempt.outcome = "confirmed"
                logger.info(f"[{intent.chain.value}] Confirmed {reference} on attempt {attempt_number}")
                return ExecutionResult(
                    reference=reference,
                    status=OutcomeStatus.CONFIRMED,
                    quote=quote,
                    min_output=min_output,
                    attempts=attempts,
                    confirmation=confirmation,
                )

            if attempt_number < self._retry.max_attempts:
                adapter.rotate_endpoint()
                await self._sleep(backoff_delay_ms(attempt_number, self._retry) / 1000)

        raise SwapExecutionFailed(
            f"Swap failed after {self._retry.max_attempts} attempts: {last_error}",
            attempts=attempts,
            last_error=last_error,
        )
