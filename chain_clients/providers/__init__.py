"""
Providers package - Chain client implementations per RPC dialect.
"""

from chain_clients.providers.evm import EvmChainClient
from chain_clients.providers.starknet import StarknetChainClient


__all__ = [
    "EvmChainClient",
    "StarknetChainClient",
]
