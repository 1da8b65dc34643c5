"""
Solana Chain Adapter - Jupiter aggregator over JSON-RPC

Design:
- httpx.AsyncClient for both the Solana JSON-RPC endpoints and the Jupiter API
- The full Jupiter quoteResponse is the opaque route; it is replayed to /swap
  with otherAmountThreshold pinned to our own min_output
- Compute budget (limit and micro-lamport price) is applied by rewriting the
  ComputeBudget instructions of the returned v0 message
- Every attempt refreshes the recent blockhash so retries never reuse an
  expired one
- Priority price = median of recent prioritization fees, floored
"""

import asyncio
import base64
import logging
import statistics
import time
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

import base58
import httpx
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.instruction import CompiledInstruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from mirrorbot.chains.addresses import is_solana_address
from mirrorbot.chains.base import ChainAdapter, Signer, to_smallest_units
from mirrorbot.config import JUPITER_V6_PROGRAM, USDC_MINT, WSOL_MINT, SolanaConfig
from mirrorbot.errors import (
    ConfirmationTimeout,
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


COMPUTE_BUDGET_PROGRAM = Pubkey.from_string("ComputeBudget111111111111111111111111111111")
MICRO_LAMPORTS_PER_LAMPORT = 1_000_000

NATIVE_ALIASES = ("native", "sol")
KNOWN_DECIMALS = {WSOL_MINT: 9, USDC_MINT: 6}

COMMITMENT_LEVELS = {"processed": 0, "confirmed": 1, "finalized": 2}

NO_ROUTE_MARKERS = ("could_not_find_any_route", "no_routes_found", "route not found")
INVALID_ASSET_MARKERS = ("token_not_tradable", "not tradable", "invalid_input_mint", "invalid_output_mint")
INSUFFICIENT_FUNDS_MARKERS = (
    "insufficient funds",
    "insufficient lamports",
    "attempt to debit an account but found no record of a prior credit",
)


def classify_rpc_error(method: str, error: Dict[str, Any]) -> MirrorBotError:
    """Map a JSON-RPC error object to a typed engine error."""
    message = str(error.get("message", ""))
    detail = f"{message} {error.get('data', '')}".lower()
    if any(marker in detail for marker in INSUFFICIENT_FUNDS_MARKERS):
        return InsufficientFunds(f"{method}: {message}")
    return TransientNetworkError(f"{method}: {message}")


def rebuild_message(
    message: MessageV0,
    blockhash: Hash,
    unit_limit: Optional[int] = None,
    unit_price: Optional[int] = None,
) -> MessageV0:
    """
    Copy of a v0 message with a fresh blockhash and, when the message uses the
    ComputeBudget program, the given compute unit limit and price.
    """
    keys = list(message.account_keys)
    instructions = list(message.instructions)

    if COMPUTE_BUDGET_PROGRAM in keys and (unit_limit or unit_price):
        budget_index = keys.index(COMPUTE_BUDGET_PROGRAM)
        replacements = {}
        if unit_limit:
            data = bytes(set_compute_unit_limit(unit_limit).data)
            replacements[data[:1]] = data
        if unit_price:
            data = bytes(set_compute_unit_price(unit_price).data)
            replacements[data[:1]] = data

        rewritten = []
        seen = set()
        for ix in instructions:
            tag = bytes(ix.data)[:1]
            if ix.program_id_index == budget_index and tag in replacements:
                ix = CompiledInstruction(budget_index, replacements[tag], bytes(ix.accounts))
                seen.add(tag)
            rewritten.append(ix)
        missing = [
            CompiledInstruction(budget_index, data, b"")
            for tag, data in replacements.items() if tag not in seen
        ]
        instructions = missing + rewritten

    return MessageV0(
        message.header,
        keys,
        blockhash,
        instructions,
        list(message.address_table_lookups),
    )


def unsigned_wire(message: MessageV0) -> str:
    """Base64 transaction with placeholder signatures, for simulation."""
    count = message.header.num_required_signatures
    tx = VersionedTransaction.populate(message, [Signature.default()] * count)
    return base64.b64encode(bytes(tx)).decode()


class SolanaChainAdapter(ChainAdapter):
    """
    Jupiter swap execution on Solana.

    Assets are SPL mint addresses or "native"/"SOL" (routed as wrapped SOL).
    """

    chain = Chain.SOLANA
    QUOTE_TTL_SECONDS = 30
    ENRICH_ATTEMPTS = 5

    def __init__(
        self,
        config: SolanaConfig,
        client: Optional[httpx.AsyncClient] = None,
        poll_interval: float = 2.0,
    ):
        """
        Initialize adapter.

        Args:
            config: Solana settings (endpoints, Jupiter URL, tiers)
            client: Shared HTTP client (one is created if omitted)
            poll_interval: Seconds between confirmation polls
        """
        super().__init__(config.rpc_urls, config.cost_tiers)
        self.config = config
        self.poll_interval = poll_interval
        self._client = client or httpx.AsyncClient(timeout=config.request_timeout)
        self._decimals: Dict[str, int] = dict(KNOWN_DECIMALS)

    async def close(self) -> None:
        await self._client.aclose()

    async def _sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    def is_native(self, asset: str) -> bool:
        return asset.lower() in NATIVE_ALIASES or asset == WSOL_MINT

    def is_valid_address(self, address: str) -> bool:
        return is_solana_address(address)

    def mint(self, asset: str) -> str:
        if self.is_native(asset):
            return WSOL_MINT
        if not is_solana_address(asset):
            raise InvalidAsset(f"Not a mint address: {asset}")
        return asset

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _rpc(self, method: str, params: Optional[list] = None) -> Any:
        endpoint = self.endpoints.current
        body = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params or []}
        try:
            response = await self._client.post(endpoint, json=body)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TransientNetworkError(f"{method} failed on {endpoint}: {e}") from e

        if data.get("error"):
            raise classify_rpc_error(method, data["error"])
        return data.get("result")

    async def _jupiter(self, method: str, path: str, rejected=TransientNetworkError, **kwargs) -> Dict[str, Any]:
        url = f"{self.config.jupiter_url.rstrip('/')}/{path}"
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise TransientNetworkError(f"Jupiter {path} request failed: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientNetworkError(f"Jupiter {path} returned {response.status_code}")
        if response.status_code >= 400:
            text = response.text.lower()
            if any(marker in text for marker in NO_ROUTE_MARKERS):
                raise NoRouteFound(f"Jupiter found no route: {response.text[:200]}")
            if any(marker in text for marker in INVALID_ASSET_MARKERS):
                raise InvalidAsset(f"Jupiter rejected asset: {response.text[:200]}")
            raise rejected(f"Jupiter {path} returned {response.status_code}: {response.text[:200]}")

        try:
            return response.json()
        except ValueError as e:
            raise TransientNetworkError(f"Jupiter {path} returned invalid JSON") from e

    # ------------------------------------------------------------------
    # Assets and quoting
    # ------------------------------------------------------------------

    async def get_decimals(self, asset: str) -> int:
        mint = self.mint(asset)
        if mint in self._decimals:
            return self._decimals[mint]

        try:
            result = await self._rpc("getTokenSupply", [mint])
        except TransientNetworkError as e:
            if "invalid param" in str(e).lower():
                raise InvalidAsset(f"Not a token mint: {mint}") from e
            raise
        if not result or "value" not in result:
            raise InvalidAsset(f"No supply info for mint {mint}")

        decimals = int(result["value"]["decimals"])
        self._decimals[mint] = decimals
        return decimals

    async def get_quote(
        self,
        input_asset: str,
        output_asset: str,
        amount: Decimal,
        max_slippage_bps: int,
    ) -> Quote:
        input_decimals = await self.get_decimals(input_asset)
        await self.get_decimals(output_asset)

        input_mint, output_mint = self.mint(input_asset), self.mint(output_asset)
        if input_mint == output_mint:
            raise NoRouteFound(f"No swap route from {input_asset} to {output_asset}")

        amount_in = to_smallest_units(amount, input_decimals)
        if amount_in <= 0:
            raise NoRouteFound(f"Amount {amount} rounds to zero for {input_asset}")

        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount_in),
            "slippageBps": max_slippage_bps,
        }
        route = await self._jupiter("GET", "quote", rejected=NoRouteFound, params=params)

        output_amount = int(route.get("outAmount") or 0)
        if output_amount <= 0:
            raise NoRouteFound(f"Jupiter quoted zero output {input_asset} -> {output_asset}")

        return Quote(
            chain=self.chain,
            input_asset=input_asset,
            output_asset=output_asset,
            input_amount=int(route.get("inAmount") or amount_in),
            output_amount=output_amount,
            route=route,
            price_impact=Decimal(str(route.get("priceImpactPct") or "0")),
            expiry=utcnow() + timedelta(seconds=self.QUOTE_TTL_SECONDS),
        )

    async def build_swap(self, quote: Quote, min_output: int, recipient: str) -> UnsignedTransaction:
        route = dict(quote.route)
        route["otherAmountThreshold"] = str(min_output)
        body = {
            "quoteResponse": route,
            "userPublicKey": recipient,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": False,
            "computeUnitPriceMicroLamports": self.config.min_priority_fee,
        }
        response = await self._jupiter("POST", "swap", json=body)

        encoded = response.get("swapTransaction")
        if not encoded:
            raise TransientNetworkError("Jupiter returned no swap transaction")
        message = VersionedTransaction.from_bytes(base64.b64decode(encoded)).message

        native_in = self.is_native(quote.input_asset)
        return UnsignedTransaction(
            chain=self.chain,
            sender=recipient,
            payload={
                "message": message,
                "last_valid_block_height": response.get("lastValidBlockHeight"),
            },
            value=quote.input_amount if native_in else 0,
            min_output=min_output,
            recipient=recipient,
            spend_token=None if native_in else self.mint(quote.input_asset),
            spend_amount=0 if native_in else quote.input_amount,
        )

    # ------------------------------------------------------------------
    # Cost estimation
    # ------------------------------------------------------------------

    async def _simulate_usage(self, tx: UnsignedTransaction) -> int:
        result = await self._rpc(
            "simulateTransaction",
            [
                unsigned_wire(tx.payload["message"]),
                {
                    "encoding": "base64",
                    "sigVerify": False,
                    "replaceRecentBlockhash": True,
                    "commitment": self.config.commitment,
                },
            ],
        )
        value = (result or {}).get("value") or {}
        if value.get("err"):
            raise TransactionReverted(f"Simulation failed: {value['err']}")
        units = value.get("unitsConsumed")
        if not units:
            raise TransientNetworkError("Simulation returned no unitsConsumed")
        return int(units)

    async def _network_unit_price(self) -> int:
        fees = await self._rpc("getRecentPrioritizationFees", [[JUPITER_V6_PROGRAM]])
        values = [int(f["prioritizationFee"]) for f in fees or [] if int(f.get("prioritizationFee", 0)) > 0]
        if not values:
            return self.config.min_priority_fee
        return max(int(statistics.median(values)), self.config.min_priority_fee)

    def _total_cost(self, resource_limit: int, unit_price: int) -> int:
        priority = -(-resource_limit * unit_price // MICRO_LAMPORTS_PER_LAMPORT)
        return self.config.base_fee_lamports + priority

    async def _latest_blockhash(self) -> Hash:
        result = await self._rpc("getLatestBlockhash", [{"commitment": self.config.commitment}])
        return Hash.from_string(result["value"]["blockhash"])

    async def finalize(self, tx: UnsignedTransaction, estimate: CostEstimate) -> UnsignedTransaction:
        message = tx.payload["message"]
        if estimate.unit_price and COMPUTE_BUDGET_PROGRAM not in list(message.account_keys):
            logger.warning("Swap message has no compute budget instructions; priority fee not applied")
        rebuilt = rebuild_message(
            message,
            await self._latest_blockhash(),
            unit_limit=estimate.resource_limit,
            unit_price=estimate.unit_price,
        )
        return self.with_cost(tx, estimate, message=rebuilt)

    # ------------------------------------------------------------------
    # Balance, submission, confirmation
    # ------------------------------------------------------------------

    async def get_native_balance(self, address: str) -> int:
        result = await self._rpc("getBalance", [address, {"commitment": self.config.commitment}])
        return int(result["value"])

    async def get_token_balance(self, owner: str, mint: str) -> int:
        result = await self._rpc(
            "getTokenAccountsByOwner",
            [owner, {"mint": mint}, {"encoding": "jsonParsed", "commitment": self.config.commitment}],
        )
        total = 0
        for account in (result or {}).get("value", []):
            info = account["account"]["data"]["parsed"]["info"]
            total += int(info["tokenAmount"]["amount"])
        return total

    async def preflight(self, tx: UnsignedTransaction, estimate: CostEstimate) -> None:
        await super().preflight(tx, estimate)
        if not tx.spend_token:
            return
        balance = await self.get_token_balance(tx.sender, tx.spend_token)
        if balance < tx.spend_amount:
            raise InsufficientFunds(
                f"{tx.sender} holds {balance} of {tx.spend_token}, needs {tx.spend_amount}"
            )

    async def submit(self, signed: SignedTransaction) -> str:
        encoded = base64.b64encode(signed.raw).decode()
        signature = await self._rpc(
            "sendTransaction",
            [encoded, {"encoding": "base64", "preflightCommitment": self.config.commitment}],
        )
        logger.info(f"Submitted {signature} via {self.current_endpoint}")
        return str(signature)

    def _meets_commitment(self, status: Dict[str, Any], confirmations: int) -> bool:
        level = COMMITMENT_LEVELS.get(status.get("confirmationStatus") or "processed", 0)
        if level == COMMITMENT_LEVELS["finalized"]:
            return True
        if level < COMMITMENT_LEVELS[self.config.commitment]:
            return False
        return (status.get("confirmations") or 0) + 1 >= confirmations

    async def await_confirmation(
        self, reference: str, confirmations: int, timeout: float
    ) -> ConfirmationOutcome:
        deadline = time.monotonic() + timeout
        while True:
            try:
                result = await self._rpc(
                    "getSignatureStatuses", [[reference], {"searchTransactionHistory": True}]
                )
                status = ((result or {}).get("value") or [None])[0]
                if status:
                    if status.get("err"):
                        raise TransactionReverted(f"Transaction {reference} failed: {status['err']}")
                    if self._meets_commitment(status, confirmations):
                        return ConfirmationOutcome(
                            reference=reference,
                            confirmed=True,
                            block=status.get("slot"),
                            confirmations=status.get("confirmations") or confirmations,
                        )
            except TransientNetworkError as e:
                logger.warning(f"Status poll for {reference} failed: {e}")

            if time.monotonic() >= deadline:
                raise ConfirmationTimeout(
                    f"{reference} not confirmed within {timeout}s", reference=reference
                )
            await self._sleep(self.poll_interval)

    # ------------------------------------------------------------------
    # Native transfers
    # ------------------------------------------------------------------

    async def build_transfer(self, sender: str, recipient: str, amount: int) -> UnsignedTransaction:
        payer = Pubkey.from_string(sender)
        instruction = transfer(
            TransferParams(from_pubkey=payer, to_pubkey=Pubkey.from_string(recipient), lamports=amount)
        )
        # Blockhash is filled in by finalize()
        message = MessageV0.try_compile(payer, [instruction], [], Hash.default())
        return UnsignedTransaction(
            chain=self.chain,
            sender=sender,
            payload={"message": message},
            value=amount,
            recipient=recipient,
        )

    async def estimate_transfer_cost(self, tx: UnsignedTransaction) -> CostEstimate:
        return CostEstimate(0, 0, self.config.base_fee_lamports, CostTier.PRECISE)

    # ------------------------------------------------------------------
    # Activity
    # ------------------------------------------------------------------

    async def fetch_activity(self, notice: ActivityNotice) -> ActivityNotice:
        if notice.kind != "log" or not notice.reference:
            return notice

        transaction = None
        for _ in range(self.ENRICH_ATTEMPTS):
            transaction = await self._rpc(
                "getTransaction",
                [
                    notice.reference,
                    {
                        "encoding": "jsonParsed",
                        "maxSupportedTransactionVersion": 0,
                        "commitment": "confirmed",
                    },
                ],
            )
            if transaction:
                break
            await self._sleep(self.poll_interval)
        if not transaction:
            raise TransientNetworkError(f"Transaction {notice.reference} not available")

        return ActivityNotice(
            chain=self.chain,
            wallet=notice.wallet,
            kind="transaction",
            reference=notice.reference,
            payload={"transaction": transaction, "logs": notice.payload.get("logs", [])},
            observed_at=notice.observed_at,
        )


class SolanaKeypairSigner(Signer):
    """Signing handle over a local solders Keypair."""

    chain = Chain.SOLANA

    def __init__(self, keypair: Keypair):
        self._keypair = keypair

    @classmethod
    def from_base58(cls, secret: str) -> "SolanaKeypairSigner":
        """Load a base58-encoded 64-byte keypair (solana-keygen secret)."""
        raw = base58.b58decode(secret.strip())
        if len(raw) != 64:
            raise ValueError(f"Expected a 64-byte keypair, got {len(raw)} bytes")
        return cls(Keypair.from_bytes(raw))

    @property
    def address(self) -> str:
        return str(self._keypair.pubkey())

    async def sign(self, tx: UnsignedTransaction) -> SignedTransaction:
        if tx.cost is None:
            raise ValueError("Transaction must be finalized before signing")
        message = tx.payload["message"]
        if message.account_keys[0] != self._keypair.pubkey():
            raise UserRejected(f"Signer {self.address} is not the fee payer")

        signed = VersionedTransaction(message, [self._keypair])
        return SignedTransaction(
            chain=self.chain,
            sender=tx.sender,
            raw=bytes(signed),
            reference=str(signed.signatures[0]),
            value=tx.value,
            cost=tx.cost,
        )
