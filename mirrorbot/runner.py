"""
Mirror Bot Runner

The orchestrator that wires the engine together:
- Chain adapters (Ethereum via Uniswap V2, Solana via Jupiter)
- ResilientExecutor and per-chain FeeCollectors
- ActivityWatcher, MirrorRegistry, MirrorDispatcher
- SQLite store, rate limiter, wallet custody, alerts

Watcher threads push notices into the asyncio loop owned by run().
"""

import asyncio
import logging
from typing import Any, Dict, Mapping, Optional

from mirrorbot.alerts import AlertConfig, AlertService
from mirrorbot.chains.base import ChainAdapter
from mirrorbot.chains.evm import EvmChainAdapter
from mirrorbot.chains.solana import SolanaChainAdapter
from mirrorbot.config import EngineConfig, get_default_config
from mirrorbot.execution.executor import ResilientExecutor
from mirrorbot.execution.fees import FeeCollector
from mirrorbot.gateways.custody import EnvSignerResolver
from mirrorbot.gateways.interfaces import SignerResolver
from mirrorbot.gateways.rate_limit import InMemoryRateLimiter
from mirrorbot.gateways.storage import MirrorStore
from mirrorbot.mirror.dispatcher import MirrorDispatcher
from mirrorbot.mirror.parser import (
    EvmTradeIntentParser,
    SolanaTradeIntentParser,
    TradeIntentParser,
)
from mirrorbot.mirror.registry import MirrorRegistry
from mirrorbot.mirror.watcher import ActivityWatcher
from mirrorbot.models import Chain, MirrorConfig, MirrorPolicy

logger = logging.getLogger(__name__)


class MirrorRunner:
    """
    Main runner for the mirror trading engine.

    Usage:
        runner = MirrorRunner(EngineConfig.from_env())
        await runner.run()          # until stop()
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        store: Optional[MirrorStore] = None,
        custody: Optional[SignerResolver] = None,
        adapters: Optional[Mapping[Chain, ChainAdapter]] = None,
        watcher: Optional[ActivityWatcher] = None,
        alerts: Optional[AlertService] = None,
        watch: bool = True,
    ):
        """
        Initialize runner.

        Args:
            config: Engine configuration (defaults when None)
            store: Persistence (SQLite at config.db_path when None)
            custody: Wallet custody (environment keys when None)
            adapters: Chain adapters (built from config when None)
            watcher: Activity watcher (built from config WebSocket URLs when None)
            alerts: Alert service (Telegram settings from config when None)
            watch: Attach wallet watchers (False for one-off commands)

        Raises:
            ConfigurationError: Misconfigured treasury or endpoints
        """
        self._config = config or get_default_config()
        self.store = store or MirrorStore(self._config.db_path)
        self._custody = custody or EnvSignerResolver()
        self.adapters: Dict[Chain, ChainAdapter] = dict(adapters or self._build_adapters())
        self._watcher = watcher or ActivityWatcher(
            {
                Chain.ETHEREUM: self._config.evm.ws_url,
                Chain.SOLANA: self._config.solana.ws_url,
            },
            solana_commitment=self._config.solana.commitment,
        )
        self._alerts = alerts or AlertService(
            AlertConfig(
                enabled=bool(self._config.telegram_bot_token),
                bot_token=self._config.telegram_bot_token,
                chat_id=self._config.telegram_chat_id,
            )
        )
        self._rate_limiter = InMemoryRateLimiter(self._config.rate_limits)

        self.executor = ResilientExecutor(
            self.adapters,
            retry=self._config.retry,
            confirmation=self._config.confirmation,
        )
        self._fee_collectors = self._build_fee_collectors()

        self.registry = MirrorRegistry(
            watcher=self._watcher if watch else None,
            rate_gate=self._rate_limiter,
            store=self.store,
            defaults=self._config.mirror,
        )
        self.dispatcher = MirrorDispatcher(
            registry=self.registry,
            executor=self.executor,
            custody=self._custody,
            store=self.store,
            adapters=self.adapters,
            parsers=self._build_parsers(),
            fee_collectors=self._fee_collectors,
            rate_gate=self._rate_limiter,
            alerts=self._alerts,
            defaults=self._config.mirror,
            retry=self._config.retry,
        )
        self.registry.set_notice_handler(self.dispatcher.submit_notice)

        self._stop_event: Optional[asyncio.Event] = None
        self._running = False

        logger.info(f"MirrorRunner initialized for {[c.value for c in self.adapters]}")

    def _build_adapters(self) -> Dict[Chain, ChainAdapter]:
        poll_interval = self._config.confirmation.poll_interval_seconds
        return {
            Chain.ETHEREUM: EvmChainAdapter(self._config.evm, poll_interval=poll_interval),
            Chain.SOLANA: SolanaChainAdapter(self._config.solana, poll_interval=poll_interval),
        }

    def _build_parsers(self) -> Dict[Chain, TradeIntentParser]:
        parsers: Dict[Chain, TradeIntentParser] = {}
        evm = self.adapters.get(Chain.ETHEREUM)
        if evm is not None:
            parsers[Chain.ETHEREUM] = EvmTradeIntentParser(
                routers=self._config.evm.known_routers,
                weth_address=self._config.evm.weth_address,
                decimals=evm.get_decimals,
            )
        if Chain.SOLANA in self.adapters:
            parsers[Chain.SOLANA] = SolanaTradeIntentParser()
        return parsers

    def _build_fee_collectors(self) -> Dict[Chain, FeeCollector]:
        fees = self._config.fees
        treasuries = {
            Chain.ETHEREUM: fees.evm_treasury,
            Chain.SOLANA: fees.solana_treasury,
        }
        return {
            chain: FeeCollector(adapter, treasuries.get(chain), fees)
            for chain, adapter in self.adapters.items()
        }

    # ------------------------------------------------------------------
    # Command surface
    # ------------------------------------------------------------------

    def subscribe(
        self, follower_id: str, target_wallet: str, policy: Optional[MirrorPolicy] = None
    ) -> MirrorConfig:
        return self.registry.subscribe(follower_id, target_wallet, policy)

    def unsubscribe(self, follower_id: str) -> bool:
        return self.registry.unsubscribe(follower_id)

    def get_mirror_stats(self, follower_id: str) -> Dict[str, Any]:
        return self.store.get_mirror_stats(follower_id)

    @property
    def stats(self) -> Dict[str, Any]:
        return self.dispatcher.stats.to_dict()

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> int:
        """
        Bind the dispatcher to the running loop and restore subscriptions.

        Returns:
            Number of restored mirror subscriptions
        """
        self.dispatcher.attach_loop(asyncio.get_running_loop())
        restored = self.registry.restore()
        self._running = True

        logger.info("=" * 60)
        logger.info("MIRROR BOT STARTING")
        logger.info("=" * 60)
        logger.info(f"Chains: {[c.value for c in self.adapters]}")
        logger.info(f"Restored subscriptions: {restored}")
        logger.info(f"Overlap policy: {self._config.mirror.overlap_policy}")
        logger.info(f"Fee: {self._config.fees.fee_pct}%")
        logger.info("=" * 60)
        return restored

    async def run(self):
        """Run until stop() is called or the task is cancelled."""
        self._stop_event = asyncio.Event()
        await self.start()
        try:
            await self._stop_event.wait()
        except asyncio.CancelledError:
            logger.info("Runner cancelled")
        finally:
            await self.shutdown()

    def stop(self):
        if self._stop_event is not None:
            self._stop_event.set()

    async def shutdown(self):
        self._running = False
        self.registry.shutdown()
        self._watcher.stop_all()
        for adapter in self.adapters.values():
            await adapter.close()

        logger.info("Mirror bot stopped")
        logger.info(f"Final stats: {self.stats}")
