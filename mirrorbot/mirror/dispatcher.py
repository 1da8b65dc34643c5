"""
Mirror Dispatcher - Per-Follower Fan-Out

Turns a target wallet's TradeIntent into one independent mirror execution
per follower.

Per follower (failure-isolated):
1. Skip inactive configs and assets outside enabled_assets
2. copy_amount = min(amount x copy_percentage / 100, max_amount_per_trade),
   skipped below the dust floor
3. Overlap gate: one execution per follower at a time (queue or drop)
4. Rate limit, resolve signer through custody, execute the swap
5. Record a MirrorOutcome whatever happened
6. Best-effort protocol fee on confirmed swaps
7. Alert once the follower's gate is released

Enrichment of a notice is retried with backoff and endpoint rotation on
retryable errors.

Watcher threads hand notices over with submit_notice(); everything else
runs on the asyncio loop.
"""

import asyncio
import logging
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from mirrorbot.alerts import AlertService
from mirrorbot.chains.base import ChainAdapter, Signer, from_smallest_units
from mirrorbot.config import MirrorDefaults, RetryConfig
from mirrorbot.errors import ConfigurationError, MirrorBotError, describe_failure
from mirrorbot.execution.executor import ResilientExecutor, backoff_delay_ms
from mirrorbot.execution.fees import FeeCollector
from mirrorbot.gateways.interfaces import OutcomeStore, RateLimitGate, SignerResolver
from mirrorbot.gateways.rate_limit import ACTION_MIRROR_TRADE
from mirrorbot.mirror.parser import TradeIntentParser
from mirrorbot.mirror.registry import MirrorRegistry
from mirrorbot.models import (
    ActivityNotice,
    Chain,
    ExecutionResult,
    MirrorConfig,
    MirrorOutcome,
    OutcomeStatus,
    SwapIntent,
    TradeIntent,
    TradeKind,
)

logger = logging.getLogger(__name__)


def compute_copy_amount(amount: Decimal, copy_percentage: Decimal, max_amount: Decimal) -> Decimal:
    """Proportional copy size, clamped to the per-trade maximum."""
    return min(amount * copy_percentage / Decimal("100"), max_amount)


@dataclass
class DispatcherStats:
    """Statistics for the dispatcher session."""
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    notices: int = 0
    intents: int = 0
    duplicates: int = 0
    low_confidence: int = 0
    mirrors_confirmed: int = 0
    mirrors_pending: int = 0
    mirrors_failed: int = 0
    skipped: int = 0
    dropped: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "runtime_seconds": (datetime.now(timezone.utc) - self.started_at).total_seconds(),
            "notices": self.notices,
            "intents": self.intents,
            "duplicates": self.duplicates,
            "low_confidence": self.low_confidence,
            "mirrors_confirmed": self.mirrors_confirmed,
            "mirrors_pending": self.mirrors_pending,
            "mirrors_failed": self.mirrors_failed,
            "skipped": self.skipped,
            "dropped": self.dropped,
            "errors": self.errors,
        }


class FollowerGate:
    """
    Serializes mirror executions of one follower.

    ``pending`` counts the running execution plus queued ones.
    """

    def __init__(self):
        self.lock = asyncio.Lock()
        self.pending = 0

    def try_enter(self, policy: str, max_queued: int) -> bool:
        if policy == "drop":
            allowed = self.pending == 0
        else:
            allowed = self.pending <= max_queued
        if allowed:
            self.pending += 1
        return allowed

    def leave(self):
        self.pending -= 1


class MirrorDispatcher:
    """
    Fans trade intents out to followers.

    Usage:
        dispatcher = MirrorDispatcher(registry, executor, custody, store, adapters, parsers)
        dispatcher.attach_loop(asyncio.get_running_loop())
        registry.set_notice_handler(dispatcher.submit_notice)
    """

    def __init__(
        self,
        registry: MirrorRegistry,
        executor: ResilientExecutor,
        custody: SignerResolver,
        store: OutcomeStore,
        adapters: Mapping[Chain, ChainAdapter],
        parsers: Mapping[Chain, TradeIntentParser],
        fee_collectors: Optional[Mapping[Chain, FeeCollector]] = None,
        rate_gate: Optional[RateLimitGate] = None,
        alerts: Optional[AlertService] = None,
        defaults: Optional[MirrorDefaults] = None,
        retry: Optional[RetryConfig] = None,
        clock=time.monotonic,
    ):
        self._registry = registry
        self._executor = executor
        self._custody = custody
        self._store = store
        self._adapters = dict(adapters)
        self._parsers = dict(parsers)
        self._fee_collectors = dict(fee_collectors or {})
        self._rate_gate = rate_gate
        self._alerts = alerts
        self._defaults = defaults or MirrorDefaults()
        self._retry = retry or RetryConfig()
        self._clock = clock

        self._gates: Dict[str, FollowerGate] = {}
        self._recent: Dict[str, float] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.stats = DispatcherStats()

    # ------------------------------------------------------------------
    # Notice intake
    # ------------------------------------------------------------------

    def attach_loop(self, loop: asyncio.AbstractEventLoop):
        self._loop = loop

    def submit_notice(self, notice: ActivityNotice) -> Optional[Future]:
        """
        Schedule handling of a notice on the dispatcher loop.

        Safe to call from watcher threads; returns immediately.

        Returns:
            Future resolving to the notice's outcomes, None if dropped
        """
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.warning(f"Dispatcher loop not running, dropping notice {notice.reference}")
            return None
        return asyncio.run_coroutine_threadsafe(self.handle_notice(notice), loop)

    async def _sleep(self, seconds: float) -> None:
        """Sleep helper (overridable for testing)."""
        await asyncio.sleep(seconds)

    async def handle_notice(self, notice: ActivityNotice) -> List[MirrorOutcome]:
        """Enrich, parse and dispatch one notice. Never raises."""
        self.stats.notices += 1
        adapter = self._adapters.get(notice.chain)
        parser = self._parsers.get(notice.chain)
        if adapter is None or parser is None:
            logger.warning(f"No adapter/parser for {notice.chain.value}, ignoring notice")
            return []

        intent = None
        for attempt in range(1, self._retry.max_attempts + 1):
            try:
                enriched = await adapter.fetch_activity(notice)
                intent = await parser.parse(enriched)
                break
            except Exception as e:
                if getattr(e, "retryable", False) and attempt < self._retry.max_attempts:
                    logger.warning(
                        f"Enriching {notice.chain.value} notice {notice.reference} failed "
                        f"(attempt {attempt}): {e}; retrying"
                    )
                    adapter.rotate_endpoint()
                    await self._sleep(backoff_delay_ms(attempt, self._retry) / 1000)
                    continue
                self.stats.errors += 1
                logger.warning(f"Could not process {notice.chain.value} notice {notice.reference}: {e}")
                return []

        if intent is None:
            return []
        return await self.dispatch(intent)

    def _is_duplicate(self, reference: str) -> bool:
        now = self._clock()
        window = self._defaults.dedup_window_seconds
        for ref, seen_at in list(self._recent.items()):
            if now - seen_at > window:
                del self._recent[ref]
        if reference in self._recent:
            return True
        self._recent[reference] = now
        return False

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def dispatch(self, intent: TradeIntent) -> List[MirrorOutcome]:
        """
        Mirror an intent for every follower of its wallet.

        Followers run as independent tasks; one follower's failure never
        affects another's.
        """
        if intent.kind is TradeKind.TRANSFER:
            logger.debug(f"Ignoring transfer {intent.origin_reference}")
            return []
        if intent.confidence < float(self._defaults.min_confidence):
            self.stats.low_confidence += 1
            logger.info(
                f"Ignoring low-confidence {intent.kind.value} {intent.origin_reference} "
                f"({intent.confidence:.2f})"
            )
            return []
        if self._is_duplicate(intent.origin_reference):
            self.stats.duplicates += 1
            return []

        self.stats.intents += 1
        configs = self._registry.configs_for(intent.source_chain, intent.wallet)
        if not configs:
            return []

        logger.info(
            f"Target {intent.wallet} {intent.kind.value} {intent.amount} "
            f"{intent.asset_in} -> {intent.asset_out}; mirroring for {len(configs)} follower(s)"
        )
        tasks = [asyncio.create_task(self.mirror_for_follower(config, intent)) for config in configs]
        results = await asyncio.gather(*tasks)
        return [outcome for outcome in results if outcome is not None]

    async def mirror_for_follower(self, config: MirrorConfig, intent: TradeIntent) -> Optional[MirrorOutcome]:
        """
        Mirror one intent for one follower.

        Returns:
            MirrorOutcome, or None when the copy was skipped or dropped
        """
        follower = config.follower_id
        if not config.active:
            self.stats.skipped += 1
            logger.debug(f"{follower}: mirroring paused, skipping")
            return None

        traded = intent.asset_out if intent.kind is TradeKind.BUY else intent.asset_in
        if not config.allows_asset(traded):
            self.stats.skipped += 1
            logger.info(f"{follower}: {traded} not in enabled assets, skipping")
            return None

        copy_amount = compute_copy_amount(
            intent.amount, config.copy_percentage, config.max_amount_per_trade
        )
        if copy_amount < self._defaults.dust_floor:
            self.stats.skipped += 1
            logger.info(f"{follower}: copy amount {copy_amount} below dust floor, skipping")
            return None

        gate = self._gates.setdefault(follower, FollowerGate())
        if not gate.try_enter(self._defaults.overlap_policy, self._defaults.max_queued_per_follower):
            self.stats.dropped += 1
            logger.warning(
                f"{follower}: mirror already in flight, dropping {intent.origin_reference} "
                f"(policy={self._defaults.overlap_policy})"
            )
            return None

        try:
            async with gate.lock:
                outcome = await self._mirror(config, intent, copy_amount)
        finally:
            gate.leave()

        if self._alerts is not None:
            await self._alerts.notify_outcome(outcome)
        return outcome

    def is_busy(self, follower_id: str) -> bool:
        gate = self._gates.get(follower_id)
        return gate is not None and gate.pending > 0

    async def _mirror(self, config: MirrorConfig, intent: TradeIntent, copy_amount: Decimal) -> MirrorOutcome:
        follower = config.follower_id
        outcome = MirrorOutcome(
            follower_id=follower,
            origin_reference=intent.origin_reference,
            copied_amount=copy_amount,
            original_amount=intent.amount,
            result_reference=None,
            success=False,
            status=OutcomeStatus.FAILED,
            chain=intent.source_chain,
            target_wallet=config.target_wallet,
            asset_in=intent.asset_in,
            asset_out=intent.asset_out,
        )

        signer = None
        try:
            if self._rate_gate is not None:
                self._rate_gate.check_limit(follower, ACTION_MIRROR_TRADE, copy_amount)
            signer = await self._resolve_signer(follower, intent.source_chain)
            swap = SwapIntent(
                chain=intent.source_chain,
                input_asset=intent.asset_in,
                output_asset=intent.asset_out,
                input_amount=copy_amount,
                max_slippage_bps=config.slippage_bps,
                owner_identity=follower,
            )
            result = await self._executor.execute(swap, signer)
        except MirrorBotError as e:
            outcome.failure_reason = describe_failure(e)
            logger.warning(f"{follower}: mirror of {intent.origin_reference} failed: {e}")
        except Exception as e:
            self.stats.errors += 1
            outcome.failure_reason = describe_failure(e)
            logger.exception(f"{follower}: unexpected error mirroring {intent.origin_reference}: {e}")
        else:
            outcome.result_reference = result.reference
            outcome.status = result.status
            outcome.success = result.success
            if result.success:
                outcome.fee_reference = await self._collect_fee(signer, intent, copy_amount, result)

        if outcome.success:
            self.stats.mirrors_confirmed += 1
        elif outcome.status is OutcomeStatus.PENDING:
            self.stats.mirrors_pending += 1
        else:
            self.stats.mirrors_failed += 1

        self._record(outcome)
        return outcome

    async def _resolve_signer(self, follower: str, chain: Chain) -> Signer:
        profile = self._store.get_profile(follower)
        key_ref = profile.key_ref(chain) if profile else None
        if not key_ref:
            raise ConfigurationError(f"{follower} has no {chain.value} wallet")
        return await self._custody.resolve_signer(key_ref, follower, chain)

    def native_volume(self, intent: TradeIntent, copy_amount: Decimal, result: ExecutionResult) -> Decimal:
        """Native-asset side of a mirrored swap (zero for token-to-token)."""
        adapter = self._adapters[intent.source_chain]
        if adapter.is_native(intent.asset_in):
            return copy_amount
        if adapter.is_native(intent.asset_out):
            return from_smallest_units(result.quote.output_amount, intent.source_chain.native_decimals)
        return Decimal("0")

    async def _collect_fee(
        self, signer: Signer, intent: TradeIntent, copy_amount: Decimal, result: ExecutionResult
    ) -> Optional[str]:
        collector = self._fee_collectors.get(intent.source_chain)
        if collector is None or not collector.enabled:
            return None
        volume = self.native_volume(intent, copy_amount, result)
        if volume <= 0:
            return None
        fee = await collector.collect_fee(signer, collector.fee_for(volume))
        return fee.reference if fee else None

    def _record(self, outcome: MirrorOutcome):
        try:
            self._store.record_outcome(outcome.follower_id, outcome.to_record())
        except Exception as e:
            self.stats.errors += 1
            logger.error(f"Failed to record outcome for {outcome.follower_id}: {e}")
