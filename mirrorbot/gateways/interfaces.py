"""
Collaborator interfaces the engine is written against.

- SignerResolver: wallet custody, turns an opaque key reference into a signer
- OutcomeStore: persistence of follower profiles and mirror outcomes
- ConfigStore: persistence of mirror subscriptions
- RateLimitGate: security gate consulted before subscribing and mirroring

Reference implementations live next to this module (storage, rate_limit,
custody); deployments may substitute their own.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, List, Optional

from mirrorbot.chains.base import Signer
from mirrorbot.models import Chain, FollowerProfile, MirrorConfig


class SignerResolver(ABC):
    """Wallet custody. The engine never persists or sees plaintext keys."""

    @abstractmethod
    async def resolve_signer(
        self, encrypted_key_ref: str, owner_identity: str, chain: Chain
    ) -> Signer:
        """
        Resolve a signing handle.

        Raises:
            ConfigurationError: If the reference cannot be resolved
        """
        pass


class OutcomeStore(ABC):

    @abstractmethod
    def record_outcome(self, owner_identity: str, record: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def get_profile(self, owner_identity: str) -> Optional[FollowerProfile]:
        pass


class ConfigStore(ABC):

    @abstractmethod
    def save_mirror_config(self, config: MirrorConfig) -> None:
        pass

    @abstractmethod
    def delete_mirror_config(self, follower_id: str) -> None:
        pass

    @abstractmethod
    def load_mirror_configs(self) -> List[MirrorConfig]:
        pass


class RateLimitGate(ABC):

    @abstractmethod
    def check_limit(
        self, owner_identity: str, action_kind: str, amount: Optional[Decimal] = None
    ) -> None:
        """
        Allow the action or refuse it.

        Raises:
            RateLimitExceeded: If the owner is over the limit for action_kind
        """
        pass
