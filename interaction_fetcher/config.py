"""
Interaction Fetcher - Configuration.

============================================================
FETCH STRATEGY PARAMETERS
============================================================

- max_concurrency: in-flight sub-fetches (hydration batches,
  block reads) per fetch
- batch_size: transaction hashes per hydration call
- direct_scan_cap: largest range whose every block is scanned
  for direct calls; larger ranges only scan their newest
  `direct_scan_cap` blocks
- block_scan_cap: blocks scanned when log retrieval degrades
- log_chunk_size: chunk length when salvaging logs after a
  whole-range failure

============================================================
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional
import logging


logger = logging.getLogger(__name__)


@dataclass
class FetcherConfig:
    """Configuration for InteractionFetcher."""
    max_concurrency: int = 4
    batch_size: int = 15
    direct_scan_cap: int = 50
    block_scan_cap: int = 200
    log_chunk_size: int = 2000

    def __post_init__(self) -> None:
        """Validate settings."""
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.direct_scan_cap < 0:
            raise ValueError("direct_scan_cap must be >= 0")
        if self.block_scan_cap < 1:
            raise ValueError("block_scan_cap must be >= 1")
        if self.log_chunk_size < 1:
            raise ValueError("log_chunk_size must be >= 1")

    @classmethod
    def from_env(cls) -> "FetcherConfig":
        """
        Load configuration from environment variables.

        Environment variables:
        - FETCH_MAX_CONCURRENCY
        - FETCH_BATCH_SIZE
        - FETCH_DIRECT_SCAN_CAP
        - FETCH_BLOCK_SCAN_CAP
        - FETCH_LOG_CHUNK_SIZE
        """
        return cls(
            max_concurrency=int(os.getenv("FETCH_MAX_CONCURRENCY", "4")),
            batch_size=int(os.getenv("FETCH_BATCH_SIZE", "15")),
            direct_scan_cap=int(os.getenv("FETCH_DIRECT_SCAN_CAP", "50")),
            block_scan_cap=int(os.getenv("FETCH_BLOCK_SCAN_CAP", "200")),
            log_chunk_size=int(os.getenv("FETCH_LOG_CHUNK_SIZE", "2000")),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "FetcherConfig":
        """Load configuration from the `fetcher` section of a YAML file."""
        import yaml

        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}
            section = data.get('fetcher', data)
            defaults = cls()
            return cls(
                max_concurrency=int(section.get('max_concurrency', defaults.max_concurrency)),
                batch_size=int(section.get('batch_size', defaults.batch_size)),
                direct_scan_cap=int(section.get('direct_scan_cap', defaults.direct_scan_cap)),
                block_scan_cap=int(section.get('block_scan_cap', defaults.block_scan_cap)),
                log_chunk_size=int(section.get('log_chunk_size', defaults.log_chunk_size)),
            )
        except (OSError, yaml.YAMLError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Failed to load YAML config from {path}: {e}")
            return cls()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "max_concurrency": self.max_concurrency,
            "batch_size": self.batch_size,
            "direct_scan_cap": self.direct_scan_cap,
            "block_scan_cap": self.block_scan_cap,
            "log_chunk_size": self.log_chunk_size,
        }


_default_config: Optional[FetcherConfig] = None


def get_config() -> FetcherConfig:
    """Get the global fetcher configuration."""
    global _default_config
    if _default_config is None:
        _default_config = FetcherConfig.from_env()
    return _default_config


def set_config(config: FetcherConfig) -> None:
    """Set the global fetcher configuration."""
    global _default_config
    _default_config = config
