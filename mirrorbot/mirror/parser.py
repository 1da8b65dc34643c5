"""
Trade Intent Parsers

Heuristic, chain-specific decoders turning enriched ActivityNotice objects
into normalized TradeIntent values. Parsing is best-effort: anything that
cannot be classified returns None, and guesses carry low confidence so the
dispatcher can ignore them.

Confidence levels:
- 0.9  decoded router calldata / swap program logs
- 0.7  router call, assets inferred from Transfer logs
- 0.6  balance deltas without a recognised swap marker
- 0.3  lamport delta between consecutive account observations
- 0.2  plain native transfers
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from eth_abi import decode
from eth_abi.exceptions import DecodingError

from mirrorbot.chains.base import from_smallest_units
from mirrorbot.chains.evm import (
    SWAP_EXACT_ETH_FOR_TOKENS,
    SWAP_EXACT_TOKENS_FOR_ETH,
    SWAP_EXACT_TOKENS_FOR_TOKENS,
    TRANSFER_TOPIC,
    selector,
)
from mirrorbot.config import JUPITER_V6_PROGRAM, WSOL_MINT
from mirrorbot.mirror.watcher import address_topic
from mirrorbot.models import NATIVE_ASSET, ActivityNotice, Chain, TradeIntent, TradeKind

logger = logging.getLogger(__name__)

DecimalsLookup = Callable[[str], Awaitable[int]]

CONFIDENCE_DECODED = 0.9
CONFIDENCE_INFERRED = 0.7
CONFIDENCE_BALANCE_DELTA = 0.6
CONFIDENCE_ACCOUNT_DELTA = 0.3
CONFIDENCE_TRANSFER = 0.2


class TradeIntentParser(ABC):
    """Decode chain activity into a TradeIntent (or None)."""

    chain: Chain

    @abstractmethod
    async def parse(self, notice: ActivityNotice) -> Optional[TradeIntent]:
        pass


# ----------------------------------------------------------------------
# EVM
# ----------------------------------------------------------------------

_ETH_IN = ["uint256", "address[]", "address", "uint256"]
_TOKEN_IN = ["uint256", "uint256", "address[]", "address", "uint256"]

ROUTER_CALLS: Dict[bytes, Tuple[str, List[str]]] = {
    selector(signature): (signature.split("(")[0], types)
    for signature, types in (
        (SWAP_EXACT_ETH_FOR_TOKENS, _ETH_IN),
        ("swapExactETHForTokensSupportingFeeOnTransferTokens(uint256,address[],address,uint256)", _ETH_IN),
        (SWAP_EXACT_TOKENS_FOR_ETH, _TOKEN_IN),
        ("swapExactTokensForETHSupportingFeeOnTransferTokens(uint256,uint256,address[],address,uint256)", _TOKEN_IN),
        (SWAP_EXACT_TOKENS_FOR_TOKENS, _TOKEN_IN),
        ("swapExactTokensForTokensSupportingFeeOnTransferTokens(uint256,uint256,address[],address,uint256)", _TOKEN_IN),
    )
}


@dataclass(frozen=True)
class RouterCall:
    function: str
    amount_in: Optional[int]
    path: List[str]


def decode_router_call(data: str) -> Optional[RouterCall]:
    """Decode Uniswap V2 style swap calldata. None if unrecognised."""
    try:
        raw = bytes.fromhex(data[2:] if data.startswith("0x") else data)
    except ValueError:
        return None

    entry = ROUTER_CALLS.get(raw[:4])
    if entry is None:
        return None
    function, types = entry
    try:
        args = decode(types, raw[4:])
    except DecodingError:
        return None

    if len(types) == len(_ETH_IN):
        return RouterCall(function, None, [a.lower() for a in args[1]])
    return RouterCall(function, int(args[0]), [a.lower() for a in args[2]])


class EvmTradeIntentParser(TradeIntentParser):
    """
    Router-call heuristics for EVM transactions.

    value > 0 to a known router is a buy with ETH; value == 0 is a sell,
    with the amount read from the wallet's outgoing Transfer log when
    present and from calldata otherwise.
    """

    chain = Chain.ETHEREUM

    def __init__(self, routers: Iterable[str], weth_address: str, decimals: DecimalsLookup):
        self._routers = {r.lower() for r in routers}
        self._weth = weth_address.lower()
        self._decimals = decimals

    def _transfers(self, receipt: Dict[str, Any], wallet_topic: str, position: int) -> List[Tuple[str, int]]:
        """(token, amount) for Transfer logs with wallet at topic position."""
        found = []
        for log in receipt.get("logs", []):
            topics = [t.lower() for t in log.get("topics", [])]
            if len(topics) < 3 or topics[0] != TRANSFER_TOPIC or topics[position] != wallet_topic:
                continue
            try:
                amount = int(log.get("data") or "0x0", 16)
            except ValueError:
                continue
            found.append((log["address"].lower(), amount))
        return found

    async def parse(self, notice: ActivityNotice) -> Optional[TradeIntent]:
        if notice.kind != "transaction":
            return None
        tx = notice.payload.get("transaction") or {}
        receipt = notice.payload.get("receipt") or {}
        wallet = notice.wallet.lower()

        if receipt.get("status", 1) == 0 or tx.get("from", "").lower() != wallet:
            return None

        value = int(tx.get("value") or 0)
        if tx.get("to", "").lower() not in self._routers:
            if value <= 0:
                return None
            return self._intent(
                notice, TradeKind.TRANSFER, from_smallest_units(value, 18),
                NATIVE_ASSET, NATIVE_ASSET, CONFIDENCE_TRANSFER,
            )

        call = decode_router_call(tx.get("input") or "0x")
        topic = address_topic(wallet)

        if value > 0:
            token = call.path[-1] if call and call.path else None
            confidence = CONFIDENCE_DECODED
            if token is None:
                received = self._transfers(receipt, topic, 2)
                if not received:
                    logger.debug(f"Router buy {notice.reference} with no decodable output token")
                    return None
                token = max(received, key=lambda t: t[1])[0]
                confidence = CONFIDENCE_INFERRED
            return self._intent(
                notice, TradeKind.BUY, from_smallest_units(value, 18),
                NATIVE_ASSET, token, confidence,
            )

        sent = self._transfers(receipt, topic, 1)
        if sent:
            token, amount = max(sent, key=lambda t: t[1])
        elif call is not None and call.amount_in and call.path:
            token, amount = call.path[0], call.amount_in
        else:
            return None

        if call is not None and call.path:
            output = NATIVE_ASSET if call.path[-1] == self._weth else call.path[-1]
            confidence = CONFIDENCE_DECODED
        else:
            output = NATIVE_ASSET
            confidence = CONFIDENCE_INFERRED

        try:
            decimals = await self._decimals(token)
        except Exception as e:
            logger.warning(f"Cannot size sell of {token} in {notice.reference}: {e}")
            return None

        return self._intent(
            notice, TradeKind.SELL, from_smallest_units(amount, decimals),
            token, output, confidence,
        )

    def _intent(self, notice, kind, amount, asset_in, asset_out, confidence) -> TradeIntent:
        return TradeIntent(
            source_chain=self.chain,
            wallet=notice.wallet,
            kind=kind,
            amount=amount,
            asset_in=asset_in,
            asset_out=asset_out,
            origin_reference=notice.reference,
            observed_at=notice.observed_at,
            confidence=confidence,
        )


# ----------------------------------------------------------------------
# Solana
# ----------------------------------------------------------------------

SWAP_LOG_MARKERS = (
    JUPITER_V6_PROGRAM,
    "Instruction: Route",
    "Instruction: SharedAccountsRoute",
    "Instruction: Swap",
    "Instruction: Buy",
    "Instruction: Sell",
)


def _account_index(message: Dict[str, Any], wallet: str) -> Optional[int]:
    for index, key in enumerate(message.get("accountKeys", [])):
        pubkey = key.get("pubkey") if isinstance(key, dict) else key
        if pubkey == wallet:
            return index
    return None


def _token_deltas(meta: Dict[str, Any], owner: str) -> Dict[str, Tuple[int, int]]:
    """mint -> (raw delta, decimals) for token accounts owned by owner."""
    deltas: Dict[str, List[int]] = {}
    for sign, key in ((-1, "preTokenBalances"), (1, "postTokenBalances")):
        for balance in meta.get(key) or []:
            if balance.get("owner") != owner:
                continue
            amount = balance.get("uiTokenAmount") or {}
            entry = deltas.setdefault(balance["mint"], [0, int(amount.get("decimals", 0))])
            entry[0] += sign * int(amount.get("amount", "0"))
    return {mint: (delta, decimals) for mint, (delta, decimals) in deltas.items() if delta}


class SolanaTradeIntentParser(TradeIntentParser):
    """
    Balance-delta heuristics for Solana.

    Confirmed transactions are decoded from the wallet's pre/post SOL and
    token balances (wrapped SOL counts as SOL). Lamport-only account
    notices fall back to the delta between consecutive observations.
    """

    chain = Chain.SOLANA

    def __init__(self):
        self._last_lamports: Dict[str, int] = {}

    async def parse(self, notice: ActivityNotice) -> Optional[TradeIntent]:
        if notice.kind == "transaction":
            return self._parse_transaction(notice)
        if notice.kind == "account":
            return self._parse_account(notice)
        return None

    def _parse_transaction(self, notice: ActivityNotice) -> Optional[TradeIntent]:
        tx = notice.payload.get("transaction") or {}
        meta = tx.get("meta") or {}
        if meta.get("err") is not None:
            return None

        message = (tx.get("transaction") or {}).get("message") or {}
        index = _account_index(message, notice.wallet)
        if index is None:
            return None

        pre, post = meta.get("preBalances") or [], meta.get("postBalances") or []
        if index >= len(pre) or index >= len(post):
            return None
        sol_delta = post[index] - pre[index]
        if index == 0:
            sol_delta += meta.get("fee", 0)

        tokens = _token_deltas(meta, notice.wallet)
        wsol = tokens.pop(WSOL_MINT, None)
        if wsol is not None:
            sol_delta += wsol[0]

        logs = meta.get("logMessages") or notice.payload.get("logs") or []
        marked = any(marker in line for line in logs for marker in SWAP_LOG_MARKERS)
        confidence = CONFIDENCE_DECODED if marked else CONFIDENCE_BALANCE_DELTA

        spent = {mint: v for mint, v in tokens.items() if v[0] < 0}
        received = {mint: v for mint, v in tokens.items() if v[0] > 0}

        if received and sol_delta < 0 and not spent:
            mint = max(received, key=lambda m: received[m][0])
            return self._intent(
                notice, TradeKind.BUY, from_smallest_units(-sol_delta, 9),
                NATIVE_ASSET, mint, confidence,
            )

        if spent:
            mint = min(spent, key=lambda m: spent[m][0])
            raw, decimals = spent[mint]
            if received:
                output = max(received, key=lambda m: received[m][0])
            elif sol_delta > 0:
                output = NATIVE_ASSET
            else:
                return None
            return self._intent(
                notice, TradeKind.SELL, from_smallest_units(-raw, decimals),
                mint, output, confidence,
            )

        if sol_delta != 0 and not received:
            return self._intent(
                notice, TradeKind.TRANSFER, from_smallest_units(abs(sol_delta), 9),
                NATIVE_ASSET, NATIVE_ASSET, CONFIDENCE_TRANSFER,
            )
        return None

    def _parse_account(self, notice: ActivityNotice) -> Optional[TradeIntent]:
        lamports = notice.payload.get("lamports")
        if lamports is None:
            return None
        previous = self._last_lamports.get(notice.wallet)
        self._last_lamports[notice.wallet] = lamports
        if previous is None or lamports == previous:
            return None

        delta = lamports - previous
        direction = "received" if delta > 0 else "sent"
        logger.debug(f"{notice.wallet} {direction} {abs(delta)} lamports")
        return self._intent(
            notice, TradeKind.TRANSFER, from_smallest_units(abs(delta), 9),
            NATIVE_ASSET, NATIVE_ASSET, CONFIDENCE_ACCOUNT_DELTA,
            reference=f"account:{notice.wallet}:{notice.payload.get('slot')}",
        )

    def _intent(self, notice, kind, amount, asset_in, asset_out, confidence, reference=None) -> TradeIntent:
        return TradeIntent(
            source_chain=self.chain,
            wallet=notice.wallet,
            kind=kind,
            amount=amount,
            asset_in=asset_in,
            asset_out=asset_out,
            origin_reference=reference or notice.reference,
            observed_at=notice.observed_at,
            confidence=confidence,
        )
