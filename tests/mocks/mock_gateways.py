"""
Mock collaborators: custody, persistence and activity watcher.

No database, no sockets.
"""

from typing import Any, Callable, Dict, List, Optional, Tuple

from mirrorbot.errors import ConfigurationError
from mirrorbot.gateways.interfaces import ConfigStore, OutcomeStore, SignerResolver
from mirrorbot.models import ActivityNotice, Chain, FollowerProfile, MirrorConfig


class MockCustody(SignerResolver):
    """Resolves key references to pre-registered signers."""

    def __init__(self, signers: Optional[Dict[str, Any]] = None):
        self.signers = dict(signers or {})
        self.calls: List[Tuple[str, str, Chain]] = []

    async def resolve_signer(self, encrypted_key_ref, owner_identity, chain):
        self.calls.append((encrypted_key_ref, owner_identity, chain))
        if encrypted_key_ref not in self.signers:
            raise ConfigurationError(f"Unknown key reference {encrypted_key_ref}")
        return self.signers[encrypted_key_ref]


class MockStore(OutcomeStore, ConfigStore):
    """Dictionary-backed store."""

    def __init__(self, fail_records: bool = False):
        self.profiles: Dict[str, FollowerProfile] = {}
        self.configs: Dict[str, MirrorConfig] = {}
        self.records: List[Tuple[str, Dict[str, Any]]] = []
        self.fail_records = fail_records

    def add_profile(self, profile: FollowerProfile):
        self.profiles[profile.owner_identity] = profile

    def record_outcome(self, owner_identity, record):
        if self.fail_records:
            raise RuntimeError("database is locked")
        self.records.append((owner_identity, record))

    def get_profile(self, owner_identity):
        return self.profiles.get(owner_identity)

    def save_mirror_config(self, config):
        self.configs[config.follower_id] = config

    def delete_mirror_config(self, follower_id):
        self.configs.pop(follower_id, None)

    def load_mirror_configs(self):
        return list(self.configs.values())


class MockSubscription:
    def __init__(self, chain: Chain, wallet: str, on_notice: Callable[[ActivityNotice], None]):
        self.chain = chain
        self.wallet = wallet
        self.on_notice = on_notice
        self.cancelled = False

    @property
    def active(self) -> bool:
        return not self.cancelled

    def cancel(self):
        self.cancelled = True


class MockWatcher:
    """ActivityWatcher stand-in recording subscriptions."""

    def __init__(self, supported=(Chain.ETHEREUM, Chain.SOLANA)):
        self.supported = set(supported)
        self.subscriptions: List[MockSubscription] = []

    def watch(self, chain, wallet, on_notice):
        if chain not in self.supported:
            raise ConfigurationError(f"No WebSocket endpoint configured for {chain.value}")
        subscription = MockSubscription(chain, wallet, on_notice)
        self.subscriptions.append(subscription)
        return subscription

    def active(self) -> List[MockSubscription]:
        return [s for s in self.subscriptions if s.active]

    def emit(self, notice: ActivityNotice):
        for subscription in self.active():
            if subscription.chain is notice.chain and subscription.wallet == notice.wallet:
                subscription.on_notice(notice)

    def stop_all(self):
        for subscription in self.subscriptions:
            subscription.cancel()


class MockAlerts:
    """AlertService stand-in collecting outcomes."""

    def __init__(self):
        self.outcomes = []

    async def notify_outcome(self, outcome):
        self.outcomes.append(outcome)
