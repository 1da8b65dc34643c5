"""
EVM Chain Adapter - Ethereum mainnet via Uniswap V2

Design:
- Sync Web3 calls wrapped in asyncio.run_in_executor()
- Router calldata encoded with eth_abi against minimal function signatures
- Quotes from the router's getAmountsOut view, paths routed through WETH
- Legacy gasPrice pricing; gas limit and price come from the cost ladder
- Nonce read at "pending", then pinned for the retries of one execution so a
  higher-priced retry replaces its own earlier attempt and nothing else
"""

import asyncio
import functools
import logging
import time
from dataclasses import replace
from datetime import timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound

from mirrorbot.chains.addresses import is_evm_address
from mirrorbot.chains.base import (
    ChainAdapter,
    Signer,
    bump_price,
    to_smallest_units,
)
from mirrorbot.config import EvmConfig
from mirrorbot.errors import (
    ConfirmationTimeout,
    InsufficientAllowance,
    InsufficientFunds,
    InvalidAsset,
    MirrorBotError,
    NoRouteFound,
    TransactionReverted,
    TransientNetworkError,
    UserRejected,
)
from mirrorbot.models import (
    ActivityNotice,
    Chain,
    ConfirmationOutcome,
    CostEstimate,
    CostTier,
    Quote,
    SignedTransaction,
    UnsignedTransaction,
    utcnow,
)

logger = logging.getLogger(__name__)


# Minimal function signatures, only what we call or decode
GET_AMOUNTS_OUT = "getAmountsOut(uint256,address[])"
SWAP_EXACT_ETH_FOR_TOKENS = "swapExactETHForTokens(uint256,address[],address,uint256)"
SWAP_EXACT_TOKENS_FOR_ETH = "swapExactTokensForETH(uint256,uint256,address[],address,uint256)"
SWAP_EXACT_TOKENS_FOR_TOKENS = "swapExactTokensForTokens(uint256,uint256,address[],address,uint256)"
ERC20_DECIMALS = "decimals()"
ERC20_BALANCE_OF = "balanceOf(address)"
ERC20_ALLOWANCE = "allowance(address,address)"

TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

NATIVE_ALIASES = ("native", "eth")


def selector(signature: str) -> bytes:
    return bytes(Web3.keccak(text=signature)[:4])


def encode_call(signature: str, types: List[str], args: List[Any]) -> str:
    """ABI-encode a call as 0x-prefixed calldata."""
    return Web3.to_hex(selector(signature) + encode(types, args))


def to_hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(value)
    return str(value)


def classify_rpc_error(error: Exception) -> MirrorBotError:
    """Map a node/transport failure to a typed engine error."""
    if isinstance(error, MirrorBotError):
        return error
    text = str(error).lower()
    if "insufficient funds" in text:
        return InsufficientFunds(str(error))
    return TransientNetworkError(str(error))


class EvmChainAdapter(ChainAdapter):
    """
    Uniswap V2 swap execution on an EVM chain.

    Assets are ERC20 addresses or "native"/"ETH" for the chain's coin.
    """

    chain = Chain.ETHEREUM
    QUOTE_TTL_SECONDS = 30

    def __init__(
        self,
        config: EvmConfig,
        web3_factory: Optional[Callable[[str], Any]] = None,
        poll_interval: float = 2.0,
    ):
        """
        Initialize adapter.

        Args:
            config: EVM settings (endpoints, router, tiers)
            web3_factory: Builds a Web3 client for an endpoint URL
            poll_interval: Seconds between confirmation polls
        """
        super().__init__(config.rpc_urls, config.cost_tiers)
        self.config = config
        self.poll_interval = poll_interval
        self._web3_factory = web3_factory or self._default_web3
        self._w3 = None
        self._router = Web3.to_checksum_address(config.router_address)
        self._weth = Web3.to_checksum_address(config.weth_address)
        self._decimals: Dict[str, int] = {self._weth.lower(): 18}

    def _default_web3(self, url: str) -> Web3:
        return Web3(Web3.HTTPProvider(url, request_kwargs={"timeout": self.config.request_timeout}))

    @property
    def w3(self):
        if self._w3 is None:
            self._w3 = self._web3_factory(self.endpoints.current)
        return self._w3

    def _on_endpoint_changed(self) -> None:
        self._w3 = None

    async def _run(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    async def _sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    def _now(self) -> float:
        return time.time()

    def is_native(self, asset: str) -> bool:
        return asset.lower() in NATIVE_ALIASES

    def is_valid_address(self, address: str) -> bool:
        return is_evm_address(address)

    async def _eth_call(self, to: str, data: str) -> bytes:
        """eth_call; reverts surface as ContractLogicError, transport as TransientNetworkError."""
        try:
            return await self._run(self.w3.eth.call, {"to": to, "data": data})
        except ContractLogicError:
            raise
        except Exception as e:
            raise classify_rpc_error(e) from e

    async def _read_uint(self, token: str, signature: str, types: List[str], args: List[Any]) -> int:
        raw = await self._eth_call(token, encode_call(signature, types, args))
        (value,) = decode(["uint256"], raw)
        return value

    # ------------------------------------------------------------------
    # Assets and quoting
    # ------------------------------------------------------------------

    async def get_decimals(self, asset: str) -> int:
        if self.is_native(asset):
            return 18
        key = asset.lower()
        if key in self._decimals:
            return self._decimals[key]
        if not Web3.is_address(asset):
            raise InvalidAsset(f"Not a token address: {asset}")

        try:
            raw = await self._eth_call(
                Web3.to_checksum_address(asset), encode_call(ERC20_DECIMALS, [], [])
            )
            (decimals,) = decode(["uint8"], raw)
        except (ContractLogicError, DecodingError) as e:
            raise InvalidAsset(f"Could not read decimals for {asset}") from e

        self._decimals[key] = decimals
        return decimals

    def _path(self, input_asset: str, output_asset: str) -> List[str]:
        start = self._weth if self.is_native(input_asset) else Web3.to_checksum_address(input_asset)
        end = self._weth if self.is_native(output_asset) else Web3.to_checksum_address(output_asset)
        if start == end:
            raise NoRouteFound(f"No swap route from {input_asset} to {output_asset}")
        if start == self._weth or end == self._weth:
            return [start, end]
        return [start, self._weth, end]

    async def get_quote(
        self,
        input_asset: str,
        output_asset: str,
        amount: Decimal,
        max_slippage_bps: int,
    ) -> Quote:
        input_decimals = await self.get_decimals(input_asset)
        await self.get_decimals(output_asset)

        amount_in = to_smallest_units(amount, input_decimals)
        if amount_in <= 0:
            raise NoRouteFound(f"Amount {amount} rounds to zero for {input_asset}")

        path = self._path(input_asset, output_asset)
        data = encode_call(GET_AMOUNTS_OUT, ["uint256", "address[]"], [amount_in, path])
        try:
            raw = await self._eth_call(self._router, data)
            (amounts,) = decode(["uint256[]"], raw)
        except (ContractLogicError, DecodingError) as e:
            raise NoRouteFound(f"Router has no route {input_asset} -> {output_asset}") from e

        output_amount = amounts[-1]
        if output_amount <= 0:
            raise NoRouteFound(f"Router quoted zero output {input_asset} -> {output_asset}")

        logger.debug(f"Quote {amount_in} {input_asset} -> {output_amount} {output_asset} via {path}")
        return Quote(
            chain=self.chain,
            input_asset=input_asset,
            output_asset=output_asset,
            input_amount=amount_in,
            output_amount=output_amount,
            route={"path": path, "amounts": list(amounts)},
            price_impact=None,
            expiry=utcnow() + timedelta(seconds=self.QUOTE_TTL_SECONDS),
        )

    async def build_swap(self, quote: Quote, min_output: int, recipient: str) -> UnsignedTransaction:
        to = Web3.to_checksum_address(recipient)
        path = list(quote.route["path"])
        deadline = int(self._now()) + self.config.deadline_seconds

        spend_token = None
        if self.is_native(quote.input_asset):
            data = encode_call(
                SWAP_EXACT_ETH_FOR_TOKENS,
                ["uint256", "address[]", "address", "uint256"],
                [min_output, path, to, deadline],
            )
            value = quote.input_amount
        else:
            signature = (
                SWAP_EXACT_TOKENS_FOR_ETH if self.is_native(quote.output_asset)
                else SWAP_EXACT_TOKENS_FOR_TOKENS
            )
            data = encode_call(
                signature,
                ["uint256", "uint256", "address[]", "address", "uint256"],
                [quote.input_amount, min_output, path, to, deadline],
            )
            value = 0
            spend_token = path[0]

        payload = {
            "from": to,
            "to": self._router,
            "data": data,
            "value": value,
            "chainId": self.config.chain_id,
        }
        return UnsignedTransaction(
            chain=self.chain,
            sender=to,
            payload=payload,
            value=value,
            min_output=min_output,
            recipient=to,
            spend_token=spend_token,
            spend_amount=quote.input_amount if spend_token else 0,
        )

    # ------------------------------------------------------------------
    # Cost estimation
    # ------------------------------------------------------------------

    async def _simulate_usage(self, tx: UnsignedTransaction) -> int:
        call = {k: tx.payload[k] for k in ("from", "to", "data", "value") if k in tx.payload}
        return int(await self._run(self.w3.eth.estimate_gas, call))

    async def _network_unit_price(self) -> int:
        return int(await self._run(lambda: self.w3.eth.gas_price))

    def _total_cost(self, resource_limit: int, unit_price: int) -> int:
        return resource_limit * unit_price

    async def finalize(self, tx: UnsignedTransaction, estimate: CostEstimate) -> UnsignedTransaction:
        """
        Set gas, gas price and nonce.

        A pinned nonce is kept; otherwise the pending count is read so a new
        transaction never replaces an earlier unconfirmed one.
        """
        nonce = tx.payload.get("nonce")
        if nonce is None:
            try:
                nonce = await self._run(self.w3.eth.get_transaction_count, tx.sender, "pending")
            except Exception as e:
                raise classify_rpc_error(e) from e
        return self.with_cost(
            tx,
            estimate,
            gas=estimate.resource_limit,
            gasPrice=estimate.unit_price,
            nonce=nonce,
        )

    def pin_sequence(self, tx: UnsignedTransaction, finalized: UnsignedTransaction) -> UnsignedTransaction:
        payload = dict(tx.payload)
        payload["nonce"] = finalized.payload["nonce"]
        return replace(tx, payload=payload)

    # ------------------------------------------------------------------
    # Balance, submission, confirmation
    # ------------------------------------------------------------------

    async def get_native_balance(self, address: str) -> int:
        try:
            return int(await self._run(self.w3.eth.get_balance, Web3.to_checksum_address(address)))
        except Exception as e:
            raise classify_rpc_error(e) from e

    async def preflight(self, tx: UnsignedTransaction, estimate: CostEstimate) -> None:
        """Native balance check plus token balance and router allowance for token input."""
        await super().preflight(tx, estimate)
        if not tx.spend_token:
            return

        owner = Web3.to_checksum_address(tx.sender)
        balance = await self._read_uint(tx.spend_token, ERC20_BALANCE_OF, ["address"], [owner])
        if balance < tx.spend_amount:
            raise InsufficientFunds(
                f"{owner} holds {balance} of {tx.spend_token}, needs {tx.spend_amount}"
            )

        spender = tx.payload["to"]
        allowance = await self._read_uint(
            tx.spend_token, ERC20_ALLOWANCE, ["address", "address"], [owner, spender]
        )
        if allowance < tx.spend_amount:
            raise InsufficientAllowance(
                f"Router allowance {allowance} < {tx.spend_amount} for {tx.spend_token}"
            )

    async def submit(self, signed: SignedTransaction) -> str:
        try:
            tx_hash = await self._run(self.w3.eth.send_raw_transaction, signed.raw)
        except Exception as e:
            raise classify_rpc_error(e) from e
        reference = to_hex(tx_hash)
        logger.info(f"Submitted {reference} via {self.current_endpoint}")
        return reference

    async def _get_receipt(self, reference: str) -> Optional[Any]:
        try:
            return await self._run(self.w3.eth.get_transaction_receipt, reference)
        except TransactionNotFound:
            return None

    async def await_confirmation(
        self, reference: str, confirmations: int, timeout: float
    ) -> ConfirmationOutcome:
        deadline = time.monotonic() + timeout
        while True:
            try:
                receipt = await self._get_receipt(reference)
                if receipt is not None:
                    if int(receipt["status"]) == 0:
                        raise TransactionReverted(f"Transaction {reference} reverted")
                    head = await self._run(lambda: self.w3.eth.block_number)
                    depth = int(head) - int(receipt["blockNumber"]) + 1
                    if depth >= confirmations:
                        fee_paid = int(receipt.get("gasUsed", 0)) * int(receipt.get("effectiveGasPrice", 0))
                        return ConfirmationOutcome(
                            reference=reference,
                            confirmed=True,
                            block=int(receipt["blockNumber"]),
                            confirmations=depth,
                            fee_paid=fee_paid,
                        )
            except MirrorBotError:
                raise
            except Exception as e:
                logger.warning(f"Receipt poll for {reference} failed: {e}")

            if time.monotonic() >= deadline:
                raise ConfirmationTimeout(
                    f"{reference} not confirmed within {timeout}s", reference=reference
                )
            await self._sleep(self.poll_interval)

    # ------------------------------------------------------------------
    # Native transfers
    # ------------------------------------------------------------------

    async def build_transfer(self, sender: str, recipient: str, amount: int) -> UnsignedTransaction:
        frm = Web3.to_checksum_address(sender)
        to = Web3.to_checksum_address(recipient)
        payload = {
            "from": frm,
            "to": to,
            "value": amount,
            "data": "0x",
            "chainId": self.config.chain_id,
        }
        return UnsignedTransaction(chain=self.chain, sender=frm, payload=payload, value=amount, recipient=to)

    async def estimate_transfer_cost(self, tx: UnsignedTransaction) -> CostEstimate:
        price = bump_price(await self._network_unit_price(), self.config.transfer_price_bump_pct)
        limit = self.config.transfer_gas
        return CostEstimate(limit, price, limit * price, CostTier.PRECISE)

    # ------------------------------------------------------------------
    # Activity
    # ------------------------------------------------------------------

    async def fetch_activity(self, notice: ActivityNotice) -> ActivityNotice:
        if notice.kind != "log" or not notice.reference:
            return notice
        try:
            tx = await self._run(self.w3.eth.get_transaction, notice.reference)
            receipt = await self._run(self.w3.eth.get_transaction_receipt, notice.reference)
        except Exception as e:
            raise TransientNetworkError(f"Could not load {notice.reference}: {e}") from e

        payload = {
            "transaction": {
                "hash": to_hex(tx["hash"]),
                "from": str(tx["from"]).lower(),
                "to": str(tx.get("to") or "").lower(),
                "value": int(tx.get("value", 0)),
                "input": to_hex(tx.get("input", "0x")),
            },
            "receipt": {
                "status": int(receipt.get("status", 1)),
                "blockNumber": int(receipt.get("blockNumber", 0)),
                "logs": [
                    {
                        "address": str(log["address"]).lower(),
                        "topics": [to_hex(topic) for topic in log["topics"]],
                        "data": to_hex(log["data"]),
                    }
                    for log in receipt.get("logs", [])
                ],
            },
        }
        return ActivityNotice(
            chain=self.chain,
            wallet=notice.wallet,
            kind="transaction",
            reference=notice.reference,
            payload=payload,
            observed_at=notice.observed_at,
        )


class EvmLocalSigner(Signer):
    """Signing handle over a local eth-account key."""

    chain = Chain.ETHEREUM

    def __init__(self, private_key: str):
        self._account = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self._account.address

    async def sign(self, tx: UnsignedTransaction) -> SignedTransaction:
        if tx.cost is None:
            raise ValueError("Transaction must be finalized before signing")
        if tx.sender.lower() != self.address.lower():
            raise UserRejected(f"Signer {self.address} cannot sign for {tx.sender}")

        payload = {k: v for k, v in tx.payload.items() if k != "from"}
        signed = self._account.sign_transaction(payload)
        return SignedTransaction(
            chain=self.chain,
            sender=tx.sender,
            raw=bytes(signed.raw_transaction),
            reference=to_hex(signed.hash),
            value=tx.value,
            cost=tx.cost,
        )
