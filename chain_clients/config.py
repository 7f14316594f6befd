"""
Chain Clients - Configuration.

============================================================
CONFIGURABLE RPC RESILIENCE
============================================================

All transport and failover parameters are configurable:
- Request timeout and attempt budget
- Endpoint cooldown policy
- Starknet event pagination
- Per-chain endpoint overrides

Configuration can be loaded from:
- Default values
- Environment variables
- YAML config file

============================================================
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging


logger = logging.getLogger(__name__)


# =============================================================
# ENDPOINT POOL
# =============================================================


@dataclass
class EndpointPoolConfig:
    """
    Cooldown policy for failing endpoints.

    After `failure_threshold` consecutive failures an endpoint cools
    down for `cooldown_base_seconds * 2^(failures - threshold)`,
    capped at `cooldown_max_seconds`.
    """
    failure_threshold: int = 3
    cooldown_base_seconds: float = 5.0
    cooldown_max_seconds: float = 300.0
    success_rate_alpha: float = 0.2  # EWMA weight of the newest outcome

    def __post_init__(self) -> None:
        """Validate policy."""
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.cooldown_base_seconds <= 0:
            raise ValueError("cooldown_base_seconds must be > 0")
        if self.cooldown_max_seconds < self.cooldown_base_seconds:
            raise ValueError("cooldown_max_seconds must be >= cooldown_base_seconds")
        if not 0 < self.success_rate_alpha <= 1:
            raise ValueError("success_rate_alpha must be in (0, 1]")

    def to_dict(self) -> Dict[str, float]:
        """Convert to dictionary."""
        return {
            "failure_threshold": self.failure_threshold,
            "cooldown_base_seconds": self.cooldown_base_seconds,
            "cooldown_max_seconds": self.cooldown_max_seconds,
            "success_rate_alpha": self.success_rate_alpha,
        }


# =============================================================
# MAIN CONFIGURATION
# =============================================================


@dataclass
class ChainClientConfig:
    """
    Main configuration for chain clients.
    """
    request_timeout_seconds: float = 30.0
    max_attempts: int = 4

    pool: EndpointPoolConfig = field(default_factory=EndpointPoolConfig)

    # Starknet starknet_getEvents pagination
    events_page_size: int = 1000
    max_event_pages: int = 200

    # Block timestamp cache per client
    timestamp_cache_size: int = 10_000

    # chain name -> endpoint urls, overrides built-in defaults
    endpoints: Dict[str, List[str]] = field(default_factory=dict)

    user_agent: str = "contract-interaction-indexer/1.0"

    def __post_init__(self) -> None:
        """Validate settings."""
        if self.request_timeout_seconds <= 0:
            raise ValueError("request_timeout_seconds must be > 0")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.events_page_size < 1:
            raise ValueError("events_page_size must be >= 1")

    @classmethod
    def from_env(cls) -> "ChainClientConfig":
        """
        Load configuration from environment variables.

        Environment variables:
        - RPC_REQUEST_TIMEOUT
        - RPC_MAX_ATTEMPTS
        - RPC_FAILURE_THRESHOLD
        - RPC_COOLDOWN_BASE
        - RPC_COOLDOWN_MAX
        - STARKNET_EVENTS_PAGE_SIZE

        Per-chain endpoints (<CHAIN>_RPC_URLS) are resolved by the
        registry at client creation time.
        """
        config = cls()

        if os.getenv("RPC_REQUEST_TIMEOUT"):
            config.request_timeout_seconds = float(os.getenv("RPC_REQUEST_TIMEOUT"))
        if os.getenv("RPC_MAX_ATTEMPTS"):
            config.max_attempts = int(os.getenv("RPC_MAX_ATTEMPTS"))
        if os.getenv("RPC_FAILURE_THRESHOLD"):
            config.pool.failure_threshold = int(os.getenv("RPC_FAILURE_THRESHOLD"))
        if os.getenv("RPC_COOLDOWN_BASE"):
            config.pool.cooldown_base_seconds = float(os.getenv("RPC_COOLDOWN_BASE"))
        if os.getenv("RPC_COOLDOWN_MAX"):
            config.pool.cooldown_max_seconds = float(os.getenv("RPC_COOLDOWN_MAX"))
        if os.getenv("STARKNET_EVENTS_PAGE_SIZE"):
            config.events_page_size = int(os.getenv("STARKNET_EVENTS_PAGE_SIZE"))

        return config

    @classmethod
    def from_yaml(cls, path: Path) -> "ChainClientConfig":
        """Load configuration from the `chain_clients` section of a YAML file."""
        import yaml

        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}
            data = data.get('chain_clients', data)

            config = cls()

            if 'pool' in data:
                p = data['pool']
                config.pool = EndpointPoolConfig(
                    failure_threshold=p.get('failure_threshold', 3),
                    cooldown_base_seconds=p.get('cooldown_base_seconds', 5.0),
                    cooldown_max_seconds=p.get('cooldown_max_seconds', 300.0),
                    success_rate_alpha=p.get('success_rate_alpha', 0.2),
                )

            if 'request_timeout_seconds' in data:
                config.request_timeout_seconds = float(data['request_timeout_seconds'])
            if 'max_attempts' in data:
                config.max_attempts = int(data['max_attempts'])
            if 'events_page_size' in data:
                config.events_page_size = int(data['events_page_size'])
            if 'endpoints' in data:
                config.endpoints = {
                    str(chain).lower(): list(urls)
                    for chain, urls in data['endpoints'].items()
                }

            return config

        except (OSError, yaml.YAMLError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Failed to load YAML config from {path}: {e}")
            return cls()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "request_timeout_seconds": self.request_timeout_seconds,
            "max_attempts": self.max_attempts,
            "pool": self.pool.to_dict(),
            "events_page_size": self.events_page_size,
            "max_event_pages": self.max_event_pages,
            "endpoints": {chain: len(urls) for chain, urls in self.endpoints.items()},
        }


# =============================================================
# GLOBAL CONFIG SINGLETON
# =============================================================


_default_config: Optional[ChainClientConfig] = None


def get_config() -> ChainClientConfig:
    """Get the global chain client configuration."""
    global _default_config
    if _default_config is None:
        _default_config = ChainClientConfig.from_env()
    return _default_config


def set_config(config: ChainClientConfig) -> None:
    """Set the global chain client configuration."""
    global _default_config
    _default_config = config
