#!/usr/bin/env python3
"""
Mirror Bot - Main Entry Point

Watches target wallets on Ethereum and Solana and mirrors their swaps for
every subscribed follower.

Usage:
    python scripts/mirror_bot.py [--log-level LEVEL]
    python scripts/mirror_bot.py --register FOLLOWER [--evm-key-env VAR] [--solana-key-env VAR]
    python scripts/mirror_bot.py --subscribe FOLLOWER WALLET [--copy-pct N] [--max-amount N]
    python scripts/mirror_bot.py --unsubscribe FOLLOWER
    python scripts/mirror_bot.py --stats FOLLOWER

Examples:
    # Register a follower whose EVM key lives in $ALICE_ETH_KEY
    python scripts/mirror_bot.py --register alice --evm-key-env ALICE_ETH_KEY

    # Mirror half of every trade, capped at 0.5 ETH
    python scripts/mirror_bot.py --subscribe alice 0xabc... --copy-pct 50 --max-amount 0.5

    # Run the bot (restores stored subscriptions)
    python scripts/mirror_bot.py
"""

import argparse
import asyncio
import logging
import signal
import sys
from decimal import Decimal

from mirrorbot import EngineConfig, MirrorBotError, MirrorPolicy, MirrorRunner
from mirrorbot.gateways.custody import EnvSignerResolver
from mirrorbot.models import Chain, FollowerProfile

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Multi-chain Mirror Trading Bot",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    parser.add_argument(
        "--register",
        metavar="FOLLOWER",
        help="Store wallet key references for a follower",
    )

    parser.add_argument(
        "--evm-key-env",
        metavar="VAR",
        help="Environment variable holding the follower's EVM private key",
    )

    parser.add_argument(
        "--solana-key-env",
        metavar="VAR",
        help="Environment variable holding the follower's Solana keypair (base58)",
    )

    parser.add_argument(
        "--subscribe",
        nargs=2,
        metavar=("FOLLOWER", "WALLET"),
        help="Start mirroring WALLET for FOLLOWER",
    )

    parser.add_argument(
        "--copy-pct",
        type=Decimal,
        default=None,
        help="Percentage of each trade to copy (default: config)",
    )

    parser.add_argument(
        "--max-amount",
        type=Decimal,
        default=None,
        help="Maximum amount per mirrored trade (default: config)",
    )

    parser.add_argument(
        "--unsubscribe",
        metavar="FOLLOWER",
        help="Stop mirroring for FOLLOWER",
    )

    parser.add_argument(
        "--stats",
        metavar="FOLLOWER",
        help="Print mirror statistics for FOLLOWER",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level",
    )

    return parser.parse_args()


async def register(runner: MirrorRunner, follower: str, evm_var: str, solana_var: str) -> int:
    custody = EnvSignerResolver()
    evm_address = solana_address = None
    if evm_var:
        evm_address = (await custody.resolve_signer(evm_var, follower, Chain.ETHEREUM)).address
    if solana_var:
        solana_address = (await custody.resolve_signer(solana_var, follower, Chain.SOLANA)).address
    if not evm_address and not solana_address:
        logger.error("Provide --evm-key-env and/or --solana-key-env")
        return 1

    runner.store.set_wallet(
        FollowerProfile(
            owner_identity=follower,
            evm_address=evm_address,
            evm_key_ref=evm_var,
            solana_address=solana_address,
            solana_key_ref=solana_var,
        )
    )
    logger.info(f"Registered {follower}: evm={evm_address} solana={solana_address}")
    return 0


async def main() -> int:
    """Main entry point."""
    args = parse_args()

    # Set log level
    logging.getLogger().setLevel(getattr(logging, args.log_level))

    config = EngineConfig.from_env()
    command = bool(args.register or args.subscribe or args.unsubscribe or args.stats)
    runner = MirrorRunner(config=config, watch=not command)

    try:
        if args.register:
            return await register(runner, args.register, args.evm_key_env, args.solana_key_env)

        if args.subscribe:
            follower, wallet = args.subscribe
            overrides = {
                "copy_percentage": args.copy_pct,
                "max_amount_per_trade": args.max_amount,
            }
            policy = MirrorPolicy(
                **{
                    **MirrorPolicy.from_defaults(config.mirror).model_dump(),
                    **{k: v for k, v in overrides.items() if v is not None},
                }
            )
            mirror = runner.subscribe(follower, wallet, policy)
            logger.info(f"{follower} mirrors {mirror.target_wallet} on {mirror.chain.value}")
            return 0

        if args.unsubscribe:
            removed = runner.unsubscribe(args.unsubscribe)
            logger.info(f"Unsubscribed {args.unsubscribe}" if removed else "Nothing to unsubscribe")
            return 0

        if args.stats:
            for key, value in runner.get_mirror_stats(args.stats).items():
                logger.info(f"{key}: {value}")
            return 0
    except MirrorBotError as e:
        logger.error(f"{e.category}: {e}")
        return 1
    finally:
        if command:
            await runner.shutdown()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, runner.stop)

    try:
        await runner.run()
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
