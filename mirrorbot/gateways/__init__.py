"""
Collaborator interfaces and reference implementations.
"""

from mirrorbot.gateways.interfaces import (
    ConfigStore,
    OutcomeStore,
    RateLimitGate,
    SignerResolver,
)
from mirrorbot.gateways.rate_limit import (
    ACTION_MIRROR_SUBSCRIBE,
    ACTION_MIRROR_TRADE,
    InMemoryRateLimiter,
)
from mirrorbot.gateways.storage import MirrorStore

__all__ = [
    "SignerResolver",
    "OutcomeStore",
    "ConfigStore",
    "RateLimitGate",
    "InMemoryRateLimiter",
    "ACTION_MIRROR_TRADE",
    "ACTION_MIRROR_SUBSCRIBE",
    "MirrorStore",
]
