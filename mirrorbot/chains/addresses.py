"""
Wallet address grammar for supported chains.
"""

import base58
from web3 import Web3

from mirrorbot.errors import InvalidAddress
from mirrorbot.models import Chain


def is_evm_address(address: str) -> bool:
    """0x + 40 hex digits; mixed case must carry a valid EIP-55 checksum."""
    if not isinstance(address, str) or not Web3.is_address(address):
        return False
    digits = address[2:] if address[:2].lower() == "0x" else address
    if digits in (digits.lower(), digits.upper()):
        return True
    return Web3.is_checksum_address(address)


def is_solana_address(address: str) -> bool:
    """Base58 string decoding to a 32-byte public key."""
    if not isinstance(address, str) or not (32 <= len(address) <= 44):
        return False
    try:
        return len(base58.b58decode(address)) == 32
    except ValueError:
        return False


def detect_chain(address: str) -> Chain:
    """
    Determine which chain an address belongs to.

    Raises:
        InvalidAddress: If the address matches neither grammar
    """
    if is_evm_address(address):
        return Chain.ETHEREUM
    if is_solana_address(address):
        return Chain.SOLANA
    raise InvalidAddress(f"Not a valid EVM or Solana address: {address!r}")


def normalize_address(address: str, chain: Chain) -> str:
    """EVM addresses are case-insensitive; Solana addresses are not."""
    address = address.strip()
    if chain is Chain.ETHEREUM:
        return address.lower()
    return address
