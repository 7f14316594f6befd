"""
Interaction Fetcher Package - Contract interactions over block ranges.

Quick Start:
    from chain_clients import ChainClientRegistry
    from interaction_fetcher import InteractionFetcher

    async def fetch_recent(address: str) -> None:
        async with ChainClientRegistry() as registry:
            fetcher = InteractionFetcher(registry)
            head = await registry.get("lisk").get_height()
            result = await fetcher.fetch(address, "lisk", head - 100, head)
            print(result.summary.to_dict())
"""

from interaction_fetcher.config import FetcherConfig, get_config, set_config
from interaction_fetcher.fetcher import InteractionFetcher
from interaction_fetcher.models import (
    FetchMethod,
    InteractionResult,
    InteractionSummary,
    InteractionType,
    NormalizedEvent,
    NormalizedTransaction,
)
from interaction_fetcher.normalizer import (
    AbiSelectorIndex,
    evm_event_topic,
    evm_function_selector,
    event_unique_key,
    normalize,
    normalize_event,
    sn_keccak,
)


__all__ = [
    # Config
    "FetcherConfig",
    "get_config",
    "set_config",
    # Fetcher
    "InteractionFetcher",
    # Models
    "FetchMethod",
    "InteractionResult",
    "InteractionSummary",
    "InteractionType",
    "NormalizedEvent",
    "NormalizedTransaction",
    # Normalizer
    "AbiSelectorIndex",
    "evm_event_topic",
    "evm_function_selector",
    "event_unique_key",
    "normalize",
    "normalize_event",
    "sn_keccak",
]
