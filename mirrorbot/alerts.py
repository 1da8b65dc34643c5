"""
Alert system for mirror trading notifications.

Sends Telegram alerts for executed, pending and failed mirror trades.
Alert delivery failure is logged but doesn't block operations.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from mirrorbot.models import MirrorOutcome, OutcomeStatus

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"


@dataclass
class AlertConfig:
    """Telegram alert configuration."""

    enabled: bool = True
    bot_token: Optional[str] = None
    chat_id: Optional[str] = None
    timeout: float = 10.0


class AlertService:
    """
    Sends Telegram notifications for mirror trade outcomes.
    """

    def __init__(self, config: AlertConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initialize alert service.

        Args:
            config: Telegram configuration
            transport: Optional httpx transport (tests)
        """
        self.config = config
        self._transport = transport
        self.sent = 0

        if config.enabled and (not config.bot_token or not config.chat_id):
            logger.warning(
                "Telegram alerts enabled but credentials missing. Alerts will be logged only."
            )

    async def notify_mirror_executed(self, outcome: MirrorOutcome):
        """
        Alert: Mirror trade confirmed.

        Args:
            outcome: Confirmed outcome
        """
        fee_line = f"\nFee tx: {outcome.fee_reference}" if outcome.fee_reference else ""
        message = f"""
✅ MIRROR TRADE EXECUTED

Follower: {outcome.follower_id}
Chain: {outcome.chain.value}
Swap: {outcome.copied_amount} {outcome.asset_in} -> {outcome.asset_out}
Original: {outcome.original_amount}
Copied from: {outcome.target_wallet}
Tx: {outcome.result_reference}{fee_line}
        """.strip()

        await self._send(message)

    async def notify_mirror_pending(self, outcome: MirrorOutcome):
        """
        Alert: Mirror trade submitted but not confirmed in time.

        Args:
            outcome: Pending outcome
        """
        message = f"""
⏳ MIRROR TRADE PENDING

Follower: {outcome.follower_id}
Chain: {outcome.chain.value}
Swap: {outcome.copied_amount} {outcome.asset_in} -> {outcome.asset_out}
Tx: {outcome.result_reference}

Confirmation was not observed in time. Check the transaction manually.
        """.strip()

        await self._send(message)

    async def notify_mirror_failed(self, outcome: MirrorOutcome):
        """
        Alert: Mirror trade failed.

        Args:
            outcome: Failed outcome (failure_reason is the category)
        """
        message = f"""
⛔ MIRROR TRADE FAILED

Follower: {outcome.follower_id}
Chain: {outcome.chain.value}
Swap: {outcome.copied_amount} {outcome.asset_in} -> {outcome.asset_out}
Copied from: {outcome.target_wallet}
Reason: {outcome.failure_reason}
        """.strip()

        await self._send(message)

    async def notify_outcome(self, outcome: MirrorOutcome):
        if outcome.success:
            await self.notify_mirror_executed(outcome)
        elif outcome.status is OutcomeStatus.PENDING:
            await self.notify_mirror_pending(outcome)
        else:
            await self.notify_mirror_failed(outcome)

    async def _send(self, message: str):
        """
        Send alert message.

        Args:
            message: Alert message text

        Note: Delivery failure is logged but doesn't raise.
        """
        logger.info(f"ALERT: {message}")

        if not self.config.enabled:
            return

        if not self.config.bot_token or not self.config.chat_id:
            return

        url = f"{TELEGRAM_API_URL}/bot{self.config.bot_token}/sendMessage"
        try:
            async with httpx.AsyncClient(timeout=self.config.timeout, transport=self._transport) as client:
                response = await client.post(
                    url, json={"chat_id": self.config.chat_id, "text": message}
                )
                response.raise_for_status()
            self.sent += 1
        except Exception as e:
            logger.error(f"Failed to send Telegram alert: {e}")
            # Don't raise - alert delivery failure doesn't block operations
