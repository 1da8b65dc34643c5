"""
Activity Watcher - Push Subscriptions on Target Wallets

Features:
- One WebSocket per watched (chain, wallet), each on its own daemon thread
- EVM: eth_subscribe "logs" for ERC-20 Transfer events to or from the wallet
- Solana: logsSubscribe (mentions wallet) plus accountSubscribe (lamports)
- Automatic reconnection until the subscription is cancelled
- Notices handed to a callback; the callback must not block for long
"""

import json
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

import websocket

from mirrorbot.chains.evm import TRANSFER_TOPIC
from mirrorbot.errors import ConfigurationError
from mirrorbot.models import ActivityNotice, Chain

logger = logging.getLogger(__name__)

NoticeCallback = Callable[[ActivityNotice], None]


def address_topic(address: str) -> str:
    """Left-pad a 20-byte address into a 32-byte log topic."""
    return "0x" + "0" * 24 + address.lower().replace("0x", "")


class WatchSubscription:
    """
    Live subscription on one wallet.

    Delivers ActivityNotice objects to the callback from the socket thread
    until cancel() is called. Cancellation is idempotent.
    """

    RECONNECT_DELAY_SECONDS = 5.0
    PING_INTERVAL_SECONDS = 30

    def __init__(
        self,
        chain: Chain,
        wallet: str,
        ws_url: str,
        on_notice: NoticeCallback,
        commitment: str = "confirmed",
        app_factory: Optional[Callable[..., Any]] = None,
    ):
        self.chain = chain
        self.wallet = wallet
        self.ws_url = ws_url
        self.commitment = commitment
        self._on_notice = on_notice
        self._app_factory = app_factory or websocket.WebSocketApp

        self._requests: Dict[int, str] = {}
        self._channels: Dict[Any, str] = {}
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._app = None

        self.notices_delivered = 0
        self.connected = False

    @property
    def active(self) -> bool:
        return not self._stopped.is_set()

    def subscription_requests(self) -> List[Dict[str, Any]]:
        """JSON-RPC subscribe requests sent on every (re)connect."""
        if self.chain is Chain.ETHEREUM:
            topic = address_topic(self.wallet)
            return [
                {
                    "jsonrpc": "2.0",
                    "id": 1,
                    "method": "eth_subscribe",
                    "params": ["logs", {"topics": [TRANSFER_TOPIC, topic]}],
                },
                {
                    "jsonrpc": "2.0",
                    "id": 2,
                    "method": "eth_subscribe",
                    "params": ["logs", {"topics": [TRANSFER_TOPIC, None, topic]}],
                },
            ]
        return [
            {
                "jsonrpc": "2.0",
                "id": 1,
                "method": "logsSubscribe",
                "params": [{"mentions": [self.wallet]}, {"commitment": self.commitment}],
            },
            {
                "jsonrpc": "2.0",
                "id": 2,
                "method": "accountSubscribe",
                "params": [self.wallet, {"encoding": "jsonParsed", "commitment": self.commitment}],
            },
        ]

    def _request_kind(self, request: Dict[str, Any]) -> str:
        return "account" if request["method"] == "accountSubscribe" else "log"

    def start(self):
        if self._stopped.is_set():
            raise RuntimeError("Cancelled subscriptions cannot be restarted")
        self._thread = threading.Thread(
            target=self._run,
            name=f"watch-{self.chain.value}-{self.wallet[:10]}",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"Watching {self.chain.value} wallet {self.wallet}")

    def _run(self):
        while not self._stopped.is_set():
            self._app = self._app_factory(
                self.ws_url,
                on_open=self._on_open,
                on_message=self._on_message,
                on_error=self._on_error,
                on_close=self._on_close,
            )
            self._app.run_forever(ping_interval=self.PING_INTERVAL_SECONDS)

            if self._stopped.wait(self.RECONNECT_DELAY_SECONDS):
                break
            logger.info(f"Reconnecting watcher for {self.wallet}...")

    def cancel(self):
        """Stop delivering notices and close the socket."""
        if self._stopped.is_set():
            return
        self._stopped.set()
        if self._app is not None:
            self._app.close()
        logger.info(f"Stopped watching {self.chain.value} wallet {self.wallet}")

    def _on_open(self, ws):
        self.connected = True
        self._requests.clear()
        self._channels.clear()
        for request in self.subscription_requests():
            self._requests[request["id"]] = self._request_kind(request)
            ws.send(json.dumps(request))
        logger.debug(f"Subscribed to {self.wallet} on {self.ws_url}")

    def _on_message(self, ws, message):
        if self._stopped.is_set():
            return
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            logger.warning(f"Failed to parse watcher message: {message[:100]}")
            return

        request_id = data.get("id")
        if request_id in self._requests:
            if "error" in data:
                logger.error(f"Subscription rejected for {self.wallet}: {data['error']}")
                return
            self._channels[data.get("result")] = self._requests[request_id]
            return

        params = data.get("params") or {}
        kind = self._channels.get(params.get("subscription"))
        if kind is None:
            return

        notice = self._to_notice(kind, params.get("result") or {})
        if notice is not None:
            self._deliver(notice)

    def _to_notice(self, kind: str, result: Dict[str, Any]) -> Optional[ActivityNotice]:
        if self.chain is Chain.ETHEREUM:
            # Reorged-out logs are re-emitted with removed=true
            if result.get("removed") or not result.get("transactionHash"):
                return None
            return ActivityNotice(
                chain=self.chain,
                wallet=self.wallet,
                kind="log",
                reference=result["transactionHash"],
                payload=result,
            )

        context = result.get("context") or {}
        value = result.get("value") or {}
        if kind == "account":
            return ActivityNotice(
                chain=self.chain,
                wallet=self.wallet,
                kind="account",
                reference=None,
                payload={"lamports": value.get("lamports"), "slot": context.get("slot")},
            )

        if value.get("err") or not value.get("signature"):
            return None
        return ActivityNotice(
            chain=self.chain,
            wallet=self.wallet,
            kind="log",
            reference=value["signature"],
            payload={"logs": value.get("logs") or [], "slot": context.get("slot")},
        )

    def _deliver(self, notice: ActivityNotice):
        try:
            self._on_notice(notice)
            self.notices_delivered += 1
        except Exception as e:
            logger.error(f"Notice handler failed for {notice.reference}: {e}")

    def _on_error(self, ws, error):
        logger.error(f"Watcher error for {self.wallet}: {error}")

    def _on_close(self, ws, close_status_code, close_msg):
        self.connected = False
        logger.info(f"Watcher closed for {self.wallet}: {close_status_code} - {close_msg}")


class ActivityWatcher:
    """
    Factory for wallet subscriptions across chains.

    Usage:
        watcher = ActivityWatcher({Chain.ETHEREUM: "wss://..."})
        subscription = watcher.watch(Chain.ETHEREUM, wallet, callback)
        ...
        subscription.cancel()
    """

    def __init__(
        self,
        ws_urls: Dict[Chain, Optional[str]],
        solana_commitment: str = "confirmed",
        app_factory: Optional[Callable[..., Any]] = None,
    ):
        self._ws_urls = {chain: url for chain, url in ws_urls.items() if url}
        self._solana_commitment = solana_commitment
        self._app_factory = app_factory
        self._subscriptions: List[WatchSubscription] = []
        self._lock = threading.Lock()

    def supports(self, chain: Chain) -> bool:
        return chain in self._ws_urls

    def watch(self, chain: Chain, wallet: str, on_notice: NoticeCallback) -> WatchSubscription:
        """
        Start a push subscription on a wallet.

        Raises:
            ConfigurationError: If no WebSocket endpoint is configured for chain
        """
        url = self._ws_urls.get(chain)
        if not url:
            raise ConfigurationError(f"No WebSocket endpoint configured for {chain.value}")

        subscription = WatchSubscription(
            chain,
            wallet,
            url,
            on_notice,
            commitment=self._solana_commitment,
            app_factory=self._app_factory,
        )
        subscription.start()
        with self._lock:
            self._subscriptions = [s for s in self._subscriptions if s.active]
            self._subscriptions.append(subscription)
        return subscription

    def stop_all(self):
        with self._lock:
            subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            subscription.cancel()
