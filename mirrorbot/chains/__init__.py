"""
Chain adapters for EVM (Ethereum, Uniswap V2) and Solana (Jupiter).
"""

from mirrorbot.chains.addresses import detect_chain, normalize_address
from mirrorbot.chains.base import ChainAdapter, EndpointRotator, Signer
from mirrorbot.chains.evm import EvmChainAdapter, EvmLocalSigner
from mirrorbot.chains.solana import SolanaChainAdapter, SolanaKeypairSigner

__all__ = [
    "ChainAdapter",
    "EndpointRotator",
    "Signer",
    "EvmChainAdapter",
    "EvmLocalSigner",
    "SolanaChainAdapter",
    "SolanaKeypairSigner",
    "detect_chain",
    "normalize_address",
]
