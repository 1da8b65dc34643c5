"""
Mirror Registry - Follower/Target Subscription Index

Two indices kept in lockstep under one lock:
- follower_id -> MirrorConfig (one config per follower)
- (chain, target wallet) -> set of follower ids

The first follower of a target attaches an ActivityWatcher subscription;
the last one to leave detaches it. Configs are written through to the
ConfigStore so restore() can rebuild both indices after a restart.
"""

import logging
import threading
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Set, Tuple

from mirrorbot.chains.addresses import detect_chain, normalize_address
from mirrorbot.config import MirrorDefaults
from mirrorbot.errors import AlreadySubscribed, ConfigurationError, NotSubscribed
from mirrorbot.gateways.interfaces import ConfigStore, RateLimitGate
from mirrorbot.gateways.rate_limit import ACTION_MIRROR_SUBSCRIBE
from mirrorbot.mirror.watcher import ActivityWatcher, WatchSubscription
from mirrorbot.models import ActivityNotice, Chain, MirrorConfig, MirrorPolicy

logger = logging.getLogger(__name__)

WalletKey = Tuple[Chain, str]

IMMUTABLE_FIELDS = frozenset({"follower_id", "target_wallet", "chain", "started_at"})


class MirrorRegistry:
    """
    Subscription registry.

    Thread-safe: subscribe/unsubscribe may be called from any thread while
    the dispatcher reads follower sets from the event loop.
    """

    def __init__(
        self,
        watcher: Optional[ActivityWatcher] = None,
        rate_gate: Optional[RateLimitGate] = None,
        store: Optional[ConfigStore] = None,
        defaults: Optional[MirrorDefaults] = None,
    ):
        """
        Initialize registry.

        Args:
            watcher: Attaches push subscriptions to target wallets (None = index only)
            rate_gate: Consulted before accepting a subscription
            store: Write-through persistence for configs
            defaults: Policy used when subscribe() is called without one
        """
        self._watcher = watcher
        self._rate_gate = rate_gate
        self._store = store
        self._defaults = defaults or MirrorDefaults()

        self._configs: Dict[str, MirrorConfig] = {}
        self._followers: Dict[WalletKey, Set[str]] = {}
        self._subscriptions: Dict[WalletKey, WatchSubscription] = {}
        self._notice_handler: Optional[Callable[[ActivityNotice], None]] = None
        self._lock = threading.Lock()

    def set_notice_handler(self, handler: Callable[[ActivityNotice], None]):
        """Route notices from every watched wallet to handler."""
        self._notice_handler = handler

    def _deliver(self, notice: ActivityNotice):
        handler = self._notice_handler
        if handler is None:
            logger.debug(f"No notice handler, dropping {notice.reference}")
            return
        handler(notice)

    # ------------------------------------------------------------------
    # Subscription lifecycle
    # ------------------------------------------------------------------

    def subscribe(
        self,
        follower_id: str,
        target_wallet: str,
        policy: Optional[MirrorPolicy] = None,
    ) -> MirrorConfig:
        """
        Start mirroring target_wallet for follower_id.

        Raises:
            InvalidAddress: Address matches neither chain grammar
            AlreadySubscribed: Follower already mirrors a wallet
            RateLimitExceeded: Too many new subscriptions
            ConfigurationError: No watcher endpoint for the target's chain
        """
        wallet = (target_wallet or "").strip()
        chain = detect_chain(wallet)
        wallet = normalize_address(wallet, chain)
        policy = policy or MirrorPolicy.from_defaults(self._defaults)

        with self._lock:
            existing = self._configs.get(follower_id)
            if existing is not None:
                raise AlreadySubscribed(
                    f"{follower_id} already mirrors {existing.target_wallet}"
                )
            if self._rate_gate is not None:
                self._rate_gate.check_limit(follower_id, ACTION_MIRROR_SUBSCRIBE)

            config = MirrorConfig(
                follower_id=follower_id,
                target_wallet=wallet,
                chain=chain,
                **policy.model_dump(),
            )
            self._attach(config, persist=True)

        logger.info(
            f"{follower_id} now mirrors {chain.value} wallet {wallet} "
            f"({config.copy_percentage}%, max {config.max_amount_per_trade})"
        )
        return config

    def _attach(self, config: MirrorConfig, persist: bool):
        """Add config to both indices. Caller holds the lock."""
        key = (config.chain, config.target_wallet)

        subscription = None
        if key not in self._followers and self._watcher is not None:
            subscription = self._watcher.watch(config.chain, config.target_wallet, self._deliver)

        if persist and self._store is not None:
            try:
                self._store.save_mirror_config(config)
            except Exception:
                if subscription is not None:
                    subscription.cancel()
                raise

        self._followers.setdefault(key, set()).add(config.follower_id)
        if subscription is not None:
            self._subscriptions[key] = subscription
        self._configs[config.follower_id] = config

    def unsubscribe(self, follower_id: str) -> bool:
        """
        Stop mirroring for follower_id.

        In-flight mirror executions are not cancelled.

        Returns:
            False if the follower had no config
        """
        with self._lock:
            config = self._configs.get(follower_id)
            if config is None:
                return False

            if self._store is not None:
                self._store.delete_mirror_config(follower_id)

            del self._configs[follower_id]
            key = (config.chain, config.target_wallet)
            followers = self._followers.get(key, set())
            followers.discard(follower_id)
            if not followers:
                self._followers.pop(key, None)
                subscription = self._subscriptions.pop(key, None)
                if subscription is not None:
                    subscription.cancel()

        logger.info(f"{follower_id} stopped mirroring {config.target_wallet}")
        return True

    def get(self, follower_id: str) -> Optional[MirrorConfig]:
        with self._lock:
            return self._configs.get(follower_id)

    def patch(self, follower_id: str, partial: Mapping[str, Any]) -> MirrorConfig:
        """
        Update policy fields of an existing config.

        The target wallet cannot be changed in place; unsubscribe and
        subscribe again instead.

        Raises:
            NotSubscribed: Follower has no config
            ValueError: Unknown or immutable field, or invalid value
        """
        immutable = IMMUTABLE_FIELDS & set(partial)
        if immutable:
            raise ValueError(f"Fields cannot be patched: {sorted(immutable)}")
        unknown = set(partial) - set(MirrorConfig.model_fields)
        if unknown:
            raise ValueError(f"Unknown fields: {sorted(unknown)}")

        with self._lock:
            config = self._configs.get(follower_id)
            if config is None:
                raise NotSubscribed(f"{follower_id} is not mirroring any wallet")

            updated = MirrorConfig(**{**config.model_dump(), **dict(partial)})
            if self._store is not None:
                self._store.save_mirror_config(updated)
            self._configs[follower_id] = updated

        logger.info(f"Updated mirror config for {follower_id}: {dict(partial)}")
        return updated

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def followers(self, chain: Chain, target_wallet: str) -> FrozenSet[str]:
        key = (chain, normalize_address(target_wallet, chain))
        with self._lock:
            return frozenset(self._followers.get(key, ()))

    def configs_for(self, chain: Chain, target_wallet: str) -> List[MirrorConfig]:
        """Snapshot of the configs mirroring a target."""
        key = (chain, normalize_address(target_wallet, chain))
        with self._lock:
            return [self._configs[f] for f in sorted(self._followers.get(key, ()))]

    def monitored_wallets(self) -> Dict[WalletKey, FrozenSet[str]]:
        with self._lock:
            return {key: frozenset(members) for key, members in self._followers.items()}

    def is_watching(self, chain: Chain, target_wallet: str) -> bool:
        key = (chain, normalize_address(target_wallet, chain))
        with self._lock:
            return key in self._subscriptions

    def __len__(self) -> int:
        with self._lock:
            return len(self._configs)

    # ------------------------------------------------------------------
    # Startup / shutdown
    # ------------------------------------------------------------------

    def restore(self) -> int:
        """
        Rebuild the indices from the ConfigStore.

        Rate limits are not consulted; these subscriptions were accepted
        before. Configs whose chain cannot be watched are skipped.

        Returns:
            Number of configs restored
        """
        if self._store is None:
            return 0

        restored = 0
        for config in self._store.load_mirror_configs():
            with self._lock:
                if config.follower_id in self._configs:
                    continue
                try:
                    self._attach(config, persist=False)
                except ConfigurationError as e:
                    logger.error(f"Skipping stored config for {config.follower_id}: {e}")
                    continue
            restored += 1

        logger.info(f"Restored {restored} mirror subscription(s)")
        return restored

    def shutdown(self):
        """Cancel every watcher subscription. Configs are kept."""
        with self._lock:
            subscriptions = list(self._subscriptions.values())
            self._subscriptions.clear()
        for subscription in subscriptions:
            subscription.cancel()
        logger.info(f"Registry shut down ({len(subscriptions)} subscription(s) cancelled)")
