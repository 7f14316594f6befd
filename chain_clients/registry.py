"""
Chain Client Registry - Chain specs, endpoint resolution and client caching.

Features:
- Built-in ChainSpec per supported chain (family, chain id, decimals)
- Endpoint resolution: <CHAIN>_RPC_URLS env var, then config, then defaults
- One cached client per chain, closed together
"""

import logging
import os
from typing import Any, Dict, List, Optional, Union

import aiohttp

from chain_clients.base import ChainClient, JsonRpcChainClient
from chain_clients.config import ChainClientConfig, get_config
from chain_clients.models import Chain, ChainFamily, ChainSpec
from chain_clients.providers.evm import EvmChainClient
from chain_clients.providers.starknet import StarknetChainClient
from core.clock import ClockProtocol
from core.exceptions import UnsupportedChainError


logger = logging.getLogger(__name__)


CHAIN_SPECS: Dict[Chain, ChainSpec] = {
    Chain.ETHEREUM: ChainSpec(
        chain=Chain.ETHEREUM,
        family=ChainFamily.EVM,
        native_symbol="ETH",
        chain_id=1,
        default_endpoints=(
            "https://ethereum-rpc.publicnode.com",
            "https://eth.drpc.org",
        ),
    ),
    Chain.LISK: ChainSpec(
        chain=Chain.LISK,
        family=ChainFamily.EVM,
        native_symbol="ETH",
        chain_id=1135,
        default_endpoints=(
            "https://rpc.api.lisk.com",
            "https://lisk.drpc.org",
        ),
    ),
    Chain.STARKNET: ChainSpec(
        chain=Chain.STARKNET,
        family=ChainFamily.CAIRO,
        native_symbol="STRK",
        default_endpoints=(
            "https://rpc.starknet.lava.build",
            "https://starknet-rpc.publicnode.com",
        ),
    ),
}


_CLIENT_CLASSES = {
    ChainFamily.EVM: EvmChainClient,
    ChainFamily.CAIRO: StarknetChainClient,
}


def get_chain_spec(chain: Union[Chain, str]) -> ChainSpec:
    """Get the spec of a supported chain."""
    resolved = Chain.from_value(chain)
    spec = CHAIN_SPECS.get(resolved)
    if spec is None:
        raise UnsupportedChainError(
            message=f"No chain spec registered for {resolved.value}",
            chain=resolved.value,
            supported_chains=[c.value for c in CHAIN_SPECS],
        )
    return spec


def resolve_endpoints(
    spec: ChainSpec,
    config: Optional[ChainClientConfig] = None,
) -> List[str]:
    """
    Endpoint urls for a chain, in priority order.

    `<CHAIN>_RPC_URLS` (comma-separated) wins over `config.endpoints`,
    which wins over the built-in defaults.
    """
    config = config or get_config()

    from_env = os.getenv(spec.rpc_env_var, "")
    urls = [u.strip() for u in from_env.split(",") if u.strip()]
    if urls:
        return urls

    configured = config.endpoints.get(spec.chain.value)
    if configured:
        return list(configured)

    return list(spec.default_endpoints)


def create_chain_client(
    chain: Union[Chain, str],
    endpoints: Optional[List[str]] = None,
    config: Optional[ChainClientConfig] = None,
    session: Optional[aiohttp.ClientSession] = None,
    clock: Optional[ClockProtocol] = None,
) -> JsonRpcChainClient:
    """
    Create a chain client for `chain`.

    Args:
        chain: Chain enum member or name ('ethereum', 'lisk', 'starknet')
        endpoints: Explicit endpoint urls (skips resolution)
        config: Client configuration
        session: Shared aiohttp session
        clock: Clock for endpoint cooldowns

    Raises:
        UnsupportedChainError: Unknown chain
        ConfigurationError: No endpoints resolved
    """
    config = config or get_config()
    spec = get_chain_spec(chain)
    urls = endpoints or resolve_endpoints(spec, config)

    client_class = _CLIENT_CLASSES[spec.family]
    client = client_class(
        spec,
        endpoints=urls,
        config=config,
        session=session,
        clock=clock,
    )
    logger.info(
        f"[{spec.chain.value}] Created {client_class.__name__} "
        f"with {len(client.pool)} endpoint(s)"
    )
    return client


class ChainClientRegistry:
    """
    One chain client per chain, created on first use.

    Usage:
        async with ChainClientRegistry() as registry:
            client = registry.get("ethereum")
            height = await client.get_height()
    """

    def __init__(
        self,
        config: Optional[ChainClientConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
        clock: Optional[ClockProtocol] = None,
    ) -> None:
        self._config = config or get_config()
        self._session = session
        self._clock = clock
        self._clients: Dict[str, ChainClient] = {}

    def get(self, chain: Union[Chain, str]) -> ChainClient:
        """Get (or create) the client for `chain`."""
        key = Chain.from_value(chain).value
        client = self._clients.get(key)
        if client is None:
            client = create_chain_client(
                key,
                config=self._config,
                session=self._session,
                clock=self._clock,
            )
            self._clients[key] = client
        return client

    def register(self, client: ChainClient) -> None:
        """Register a prebuilt client, replacing any existing one."""
        if client.chain in self._clients:
            logger.warning(f"Client for '{client.chain}' already registered, replacing")
        self._clients[client.chain] = client

    def list_chains(self) -> List[str]:
        """Chains with an instantiated client."""
        return list(self._clients)

    def get_all_stats(self) -> Dict[str, Any]:
        """Get statistics of every instantiated client."""
        return {
            chain: client.get_stats() if hasattr(client, "get_stats") else {}
            for chain, client in self._clients.items()
        }

    async def close(self) -> None:
        """Close all clients."""
        for chain, client in list(self._clients.items()):
            try:
                await client.close()
            except aiohttp.ClientError as e:
                logger.warning(f"[{chain}] Error closing client: {e}")
        self._clients.clear()

    async def __aenter__(self) -> "ChainClientRegistry":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


_default_registry: Optional[ChainClientRegistry] = None


def get_default_registry() -> ChainClientRegistry:
    """Get the process-wide chain client registry."""
    global _default_registry
    if _default_registry is None:
        _default_registry = ChainClientRegistry()
    return _default_registry
