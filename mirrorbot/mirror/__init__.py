"""
Mirror trading: subscription registry, activity watching, intent parsing
and per-follower dispatch.
"""

from mirrorbot.mirror.dispatcher import MirrorDispatcher, compute_copy_amount
from mirrorbot.mirror.parser import (
    EvmTradeIntentParser,
    SolanaTradeIntentParser,
    TradeIntentParser,
)
from mirrorbot.mirror.registry import MirrorRegistry
from mirrorbot.mirror.watcher import ActivityWatcher, WatchSubscription

__all__ = [
    "MirrorRegistry",
    "ActivityWatcher",
    "WatchSubscription",
    "TradeIntentParser",
    "EvmTradeIntentParser",
    "SolanaTradeIntentParser",
    "MirrorDispatcher",
    "compute_copy_amount",
]
