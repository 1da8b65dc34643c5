"""
Protocol fee collection.

Best-effort native transfer to the chain's treasury after a successful
mirrored swap. collect_fee() never raises: every failure degrades to
None plus a log entry, so the primary trade is never rolled back or
blocked by fee handling.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Optional

from mirrorbot.chains.base import ChainAdapter, Signer, to_smallest_units
from mirrorbot.config import FeeConfig
from mirrorbot.errors import ConfigurationError
from mirrorbot.models import FeeOutcome

logger = logging.getLogger(__name__)

ZERO_EVM_ADDRESS = "0x" + "0" * 40


class FeeCollector:
    """
    Fee transfers for one chain.

    Misconfigured treasury addresses fail fast at construction; a missing
    or zero treasury disables collection.
    """

    def __init__(self, adapter: ChainAdapter, treasury: Optional[str], config: FeeConfig):
        """
        Initialize collector.

        Args:
            adapter: Adapter of the chain fees are collected on
            treasury: Treasury wallet on that chain (None disables fees)
            config: Fee percentage and optional minimum fee

        Raises:
            ConfigurationError: If treasury is set but not a valid address
        """
        self._adapter = adapter
        self._config = config

        treasury = (treasury or "").strip() or None
        if treasury and treasury.lower() == ZERO_EVM_ADDRESS:
            treasury = None
        if treasury and not adapter.is_valid_address(treasury):
            raise ConfigurationError(
                f"Invalid {adapter.chain.value} treasury address: {treasury!r}"
            )
        self._treasury = treasury

        if self._treasury is None:
            logger.warning(f"No {adapter.chain.value} treasury configured. Fee collection disabled.")

    @property
    def enabled(self) -> bool:
        return self._treasury is not None

    def fee_for(self, volume: Decimal) -> Decimal:
        """Fee owed on a native swap volume."""
        return volume * self._config.fee_pct / Decimal("100")

    async def collect_fee(self, signer: Signer, fee_amount) -> Optional[FeeOutcome]:
        """
        Transfer fee_amount (native, human units) from the signer to the treasury.

        Returns:
            FeeOutcome once the transfer is submitted, None if skipped or failed
        """
        try:
            return await self._collect(signer, fee_amount)
        except Exception as e:
            logger.error(f"[{self._adapter.chain.value}] Fee collection failed: {e}")
            return None

    async def _collect(self, signer: Signer, fee_amount) -> Optional[FeeOutcome]:
        chain = self._adapter.chain
        if self._treasury is None:
            return None

        try:
            amount = Decimal(str(fee_amount))
        except (InvalidOperation, ValueError, TypeError):
            logger.warning(f"[{chain.value}] Malformed fee amount {fee_amount!r}, skipping")
            return None
        if not amount.is_finite() or amount <= 0:
            logger.warning(f"[{chain.value}] Non-positive fee amount {fee_amount!r}, skipping")
            return None
        if self._config.min_fee is not None and amount < self._config.min_fee:
            logger.info(f"[{chain.value}] Fee {amount} below minimum {self._config.min_fee}, skipping")
            return None

        smallest = to_smallest_units(amount, chain.native_decimals)
        if smallest <= 0:
            logger.info(f"[{chain.value}] Fee {amount} rounds to zero, skipping")
            return None

        tx = await self._adapter.build_transfer(signer.address, self._treasury, smallest)
        estimate = await self._adapter.estimate_transfer_cost(tx)
        balance = await self._adapter.get_native_balance(signer.address)
        if balance < smallest + estimate.total_cost:
            logger.warning(
                f"[{chain.value}] Insufficient balance for fee: have {balance}, "
                f"need {smallest + estimate.total_cost}"
            )
            return None

        finalized = await self._adapter.finalize(tx, estimate)
        signed = await signer.sign(finalized)
        reference = await self._adapter.submit(signed)

        logger.info(f"[{chain.value}] Fee {amount} {chain.native_symbol} sent to treasury: {reference}")
        return FeeOutcome(
            chain=chain,
            reference=reference,
            amount=amount,
            amount_smallest=smallest,
            treasury=self._treasury,
        )
