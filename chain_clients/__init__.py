"""
Chain Clients Package - Resilient JSON-RPC access to EVM and Starknet chains.

Features:
- Health-aware endpoint pool with cooldowns
- Typed transport/protocol errors with failover
- Family-neutral raw records (RawBlock, RawLog, RawTransaction)

Quick Start:
    from chain_clients import ChainClientRegistry

    async def head_of(chain: str) -> int:
        async with ChainClientRegistry() as registry:
            return await registry.get(chain).get_height()

Endpoint overrides:
    ETHEREUM_RPC_URLS="https://a.example,https://b.example"
"""

from chain_clients.base import ChainClient, JsonRpcChainClient
from chain_clients.config import (
    ChainClientConfig,
    EndpointPoolConfig,
    get_config,
    set_config,
)
from chain_clients.endpoint_pool import EndpointPool
from chain_clients.models import (
    Chain,
    ChainFamily,
    ChainSpec,
    Endpoint,
    EndpointOutcome,
    RawBlock,
    RawLog,
    RawTransaction,
)
from chain_clients.providers import EvmChainClient, StarknetChainClient
from chain_clients.registry import (
    CHAIN_SPECS,
    ChainClientRegistry,
    create_chain_client,
    get_chain_spec,
    get_default_registry,
    resolve_endpoints,
)


__all__ = [
    # Base
    "ChainClient",
    "JsonRpcChainClient",
    # Config
    "ChainClientConfig",
    "EndpointPoolConfig",
    "get_config",
    "set_config",
    # Pool
    "EndpointPool",
    # Models
    "Chain",
    "ChainFamily",
    "ChainSpec",
    "Endpoint",
    "EndpointOutcome",
    "RawBlock",
    "RawLog",
    "RawTransaction",
    # Providers
    "EvmChainClient",
    "StarknetChainClient",
    # Registry
    "CHAIN_SPECS",
    "ChainClientRegistry",
    "create_chain_client",
    "get_chain_spec",
    "get_default_registry",
    "resolve_endpoints",
]
