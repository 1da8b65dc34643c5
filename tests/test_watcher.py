"""
Tests for ActivityWatcher and WatchSubscription.

A fake WebSocketApp stands in for websocket-client; no sockets are opened.
"""

import json
import threading

import pytest

from mirrorbot.chains.evm import TRANSFER_TOPIC
from mirrorbot.errors import ConfigurationError
from mirrorbot.mirror.watcher import ActivityWatcher, WatchSubscription, address_topic
from mirrorbot.models import Chain

EVM_WALLET = "0x6b175474e89094c44da98b954eedeac495271d0f"
SOL_WALLET = "So11111111111111111111111111111111111111112"


class FakeSocket:
    def __init__(self):
        self.sent = []

    def send(self, data):
        self.sent.append(json.loads(data))


class FakeApp(FakeSocket):
    """Mimics websocket.WebSocketApp callbacks."""

    def __init__(self, factory, url, on_open, on_message, on_error, on_close):
        super().__init__()
        self.factory = factory
        self.url = url
        self.on_open = on_open
        self.on_message = on_message
        self.on_error = on_error
        self.on_close = on_close
        self.closed = threading.Event()

    def run_forever(self, ping_interval=None):
        self.on_open(self)
        self.factory.opened.release()
        if self.factory.drop_next:
            self.factory.drop_next = False
            self.on_close(self, 1006, "connection dropped")
            return
        self.closed.wait(5)
        self.on_close(self, 1000, "bye")

    def close(self):
        self.closed.set()


class FakeAppFactory:
    def __init__(self, drop_first=False):
        self.apps = []
        self.drop_next = drop_first
        self.opened = threading.Semaphore(0)

    def __call__(self, url, on_open, on_message, on_error, on_close):
        app = FakeApp(self, url, on_open, on_message, on_error, on_close)
        self.apps.append(app)
        return app


def make_subscription(chain=Chain.ETHEREUM, wallet=EVM_WALLET, factory=None):
    notices = []
    subscription = WatchSubscription(
        chain,
        wallet,
        "wss://node.example",
        notices.append,
        app_factory=factory or FakeAppFactory(),
    )
    return subscription, notices


def confirm(subscription, socket, request_id, server_id):
    subscription._on_message(socket, json.dumps({"jsonrpc": "2.0", "id": request_id, "result": server_id}))


def notify(subscription, socket, server_id, result):
    subscription._on_message(
        socket,
        json.dumps({"jsonrpc": "2.0", "method": "subscription", "params": {"subscription": server_id, "result": result}}),
    )


class TestSubscriptionRequests:
    """Test the JSON-RPC requests sent on connect."""

    def test_address_topic(self):
        topic = address_topic(EVM_WALLET)

        assert len(topic) == 66
        assert topic.endswith(EVM_WALLET[2:])

    def test_evm_subscribes_both_directions(self):
        subscription, _ = make_subscription()
        topic = address_topic(EVM_WALLET)

        requests = subscription.subscription_requests()

        assert [r["method"] for r in requests] == ["eth_subscribe", "eth_subscribe"]
        assert requests[0]["params"][1]["topics"] == [TRANSFER_TOPIC, topic]
        assert requests[1]["params"][1]["topics"] == [TRANSFER_TOPIC, None, topic]

    def test_solana_logs_and_account(self):
        subscription, _ = make_subscription(Chain.SOLANA, SOL_WALLET)

        requests = subscription.subscription_requests()

        assert [r["method"] for r in requests] == ["logsSubscribe", "accountSubscribe"]
        assert requests[0]["params"][0] == {"mentions": [SOL_WALLET]}
        assert requests[1]["params"][0] == SOL_WALLET

    def test_on_open_sends_requests(self):
        subscription, _ = make_subscription()
        socket = FakeSocket()

        subscription._on_open(socket)

        assert len(socket.sent) == 2
        assert subscription.connected


class TestEvmMessages:
    """Test log notifications on EVM."""

    @pytest.fixture
    def opened(self):
        subscription, notices = make_subscription()
        socket = FakeSocket()
        subscription._on_open(socket)
        confirm(subscription, socket, 1, "0xsub-out")
        confirm(subscription, socket, 2, "0xsub-in")
        return subscription, socket, notices

    def test_log_becomes_notice(self, opened):
        subscription, socket, notices = opened
        log = {"transactionHash": "0xdeadbeef", "topics": [TRANSFER_TOPIC], "removed": False}

        notify(subscription, socket, "0xsub-in", log)

        assert len(notices) == 1
        assert notices[0].kind == "log"
        assert notices[0].reference == "0xdeadbeef"
        assert notices[0].wallet == EVM_WALLET
        assert subscription.notices_delivered == 1

    def test_removed_log_ignored(self, opened):
        subscription, socket, notices = opened

        notify(subscription, socket, "0xsub-out", {"transactionHash": "0xdead", "removed": True})

        assert notices == []

    def test_unknown_subscription_ignored(self, opened):
        subscription, socket, notices = opened

        notify(subscription, socket, "0xother", {"transactionHash": "0xdead"})

        assert notices == []

    def test_malformed_message_ignored(self, opened):
        subscription, socket, notices = opened

        subscription._on_message(socket, "not json")

        assert notices == []

    def test_rejected_subscription(self):
        subscription, notices = make_subscription()
        socket = FakeSocket()
        subscription._on_open(socket)
        subscription._on_message(socket, json.dumps({"id": 1, "error": {"code": -32601}}))

        notify(subscription, socket, None, {"transactionHash": "0xdead"})

        assert notices == []

    def test_handler_failure_contained(self):
        def explode(notice):
            raise RuntimeError("boom")

        subscription = WatchSubscription(
            Chain.ETHEREUM, EVM_WALLET, "wss://node.example", explode, app_factory=FakeAppFactory()
        )
        socket = FakeSocket()
        subscription._on_open(socket)
        confirm(subscription, socket, 1, "0xsub")

        notify(subscription, socket, "0xsub", {"transactionHash": "0xdead"})

        assert subscription.notices_delivered == 0


class TestSolanaMessages:
    """Test Solana log and account notifications."""

    @pytest.fixture
    def opened(self):
        subscription, notices = make_subscription(Chain.SOLANA, SOL_WALLET)
        socket = FakeSocket()
        subscription._on_open(socket)
        confirm(subscription, socket, 1, 101)
        confirm(subscription, socket, 2, 202)
        return subscription, socket, notices

    def test_log_notification(self, opened):
        subscription, socket, notices = opened

        notify(subscription, socket, 101, {
            "context": {"slot": 42},
            "value": {"signature": "5sig", "err": None, "logs": ["Program log: Instruction: Route"]},
        })

        assert notices[0].kind == "log"
        assert notices[0].reference == "5sig"
        assert notices[0].payload == {"logs": ["Program log: Instruction: Route"], "slot": 42}

    def test_failed_transaction_ignored(self, opened):
        subscription, socket, notices = opened

        notify(subscription, socket, 101, {
            "context": {"slot": 42},
            "value": {"signature": "5sig", "err": {"InstructionError": [0, "Custom"]}, "logs": []},
        })

        assert notices == []

    def test_account_notification(self, opened):
        subscription, socket, notices = opened

        notify(subscription, socket, 202, {"context": {"slot": 43}, "value": {"lamports": 5_000_000}})

        assert notices[0].kind == "account"
        assert notices[0].reference is None
        assert notices[0].payload == {"lamports": 5_000_000, "slot": 43}

    def test_reconnect_resets_channels(self, opened):
        """Server subscription ids from a previous connection are forgotten."""
        subscription, socket, notices = opened

        subscription._on_open(socket)
        notify(subscription, socket, 202, {"context": {"slot": 43}, "value": {"lamports": 1}})

        assert notices == []


class TestLifecycle:
    """Test thread start, reconnect and cancel."""

    def test_start_and_cancel(self):
        factory = FakeAppFactory()
        subscription, _ = make_subscription(factory=factory)

        subscription.start()
        assert factory.opened.acquire(timeout=2)
        subscription.cancel()
        subscription._thread.join(timeout=2)

        assert not subscription._thread.is_alive()
        assert not subscription.active
        assert len(factory.apps[0].sent) == 2

    def test_reconnects_after_drop(self):
        factory = FakeAppFactory(drop_first=True)
        subscription, _ = make_subscription(factory=factory)
        subscription.RECONNECT_DELAY_SECONDS = 0

        subscription.start()
        assert factory.opened.acquire(timeout=2)
        assert factory.opened.acquire(timeout=2)
        subscription.cancel()
        subscription._thread.join(timeout=2)

        assert len(factory.apps) == 2
        assert not subscription._thread.is_alive()

    def test_cancel_is_idempotent(self):
        subscription, _ = make_subscription()

        subscription.cancel()
        subscription.cancel()

        assert not subscription.active

    def test_cancelled_cannot_restart(self):
        subscription, _ = make_subscription()
        subscription.cancel()

        with pytest.raises(RuntimeError):
            subscription.start()

    def test_no_notices_after_cancel(self):
        subscription, notices = make_subscription()
        socket = FakeSocket()
        subscription._on_open(socket)
        confirm(subscription, socket, 1, "0xsub")
        subscription.cancel()

        notify(subscription, socket, "0xsub", {"transactionHash": "0xdead"})

        assert notices == []


class TestActivityWatcher:
    """Test the subscription factory."""

    def test_supports(self):
        watcher = ActivityWatcher({Chain.ETHEREUM: "wss://eth.example", Chain.SOLANA: None})

        assert watcher.supports(Chain.ETHEREUM)
        assert not watcher.supports(Chain.SOLANA)

    def test_missing_endpoint_raises(self):
        watcher = ActivityWatcher({Chain.ETHEREUM: None})

        with pytest.raises(ConfigurationError):
            watcher.watch(Chain.ETHEREUM, EVM_WALLET, lambda notice: None)

    def test_watch_and_stop_all(self):
        factory = FakeAppFactory()
        watcher = ActivityWatcher({Chain.SOLANA: "wss://sol.example"}, app_factory=factory)

        subscription = watcher.watch(Chain.SOLANA, SOL_WALLET, lambda notice: None)
        assert factory.opened.acquire(timeout=2)

        assert subscription.active
        assert factory.apps[0].url == "wss://sol.example"

        watcher.stop_all()
        subscription._thread.join(timeout=2)

        assert not subscription.active
        assert not subscription._thread.is_alive()
