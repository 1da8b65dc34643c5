"""
Development wallet custody.

Key references name environment variables holding the secret
(hex private key for EVM, base58 keypair for Solana). Production
deployments plug in their own SignerResolver backed by a vault.
"""

import os

from mirrorbot.chains.base import Signer
from mirrorbot.chains.evm import EvmLocalSigner
from mirrorbot.chains.solana import SolanaKeypairSigner
from mirrorbot.errors import ConfigurationError
from mirrorbot.gateways.interfaces import SignerResolver
from mirrorbot.models import Chain


class EnvSignerResolver(SignerResolver):

    async def resolve_signer(
        self, encrypted_key_ref: str, owner_identity: str, chain: Chain
    ) -> Signer:
        secret = os.getenv(encrypted_key_ref)
        if not secret:
            raise ConfigurationError(f"No key material for {owner_identity} ({chain.value})")
        try:
            if chain is Chain.ETHEREUM:
                return EvmLocalSigner(secret)
            return SolanaKeypairSigner.from_base58(secret)
        except Exception as e:
            raise ConfigurationError(f"Malformed key for {owner_identity} ({chain.value})") from e
