"""
Multi-chain Mirror Trading Engine

Executes swaps on Ethereum (Uniswap V2) and Solana (Jupiter) with resilient
retries, and mirrors trades of watched wallets for their followers.

Components:
- config: Validated configuration dataclasses
- chains: Chain adapters, signers and address grammar
- execution: Resilient swap executor and protocol fee collection
- mirror: Registry, activity watcher, intent parsers, dispatcher
- gateways: Custody, persistence and rate-limit collaborators
- runner: Main orchestrator
"""

from mirrorbot.config import EngineConfig, get_default_config
from mirrorbot.errors import MirrorBotError
from mirrorbot.models import (
    Chain,
    MirrorConfig,
    MirrorOutcome,
    MirrorPolicy,
    SwapIntent,
    TradeIntent,
)
from mirrorbot.runner import MirrorRunner

__version__ = "0.1.0"

__all__ = [
    "EngineConfig",
    "get_default_config",
    "MirrorBotError",
    "Chain",
    "MirrorConfig",
    "MirrorOutcome",
    "MirrorPolicy",
    "SwapIntent",
    "TradeIntent",
    "MirrorRunner",
]
