"""
Continuous Sync - Configuration.

============================================================
CONFIGURABLE CYCLE POLICY
============================================================

- Window growth when the chain head has not moved
- Catch-up chunk size when it has
- Cycle deadline, inter-cycle interval and error backoff
- Progress horizon and stall detection

Configuration can be loaded from:
- Default values
- Environment variables
- YAML config file

============================================================
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional
import logging


logger = logging.getLogger(__name__)


@dataclass
class SyncEngineConfig:
    """Cycle policy of the continuous sync engine."""

    window_increment: int = 100
    """Blocks added per cycle number when the head has not advanced."""

    max_window_blocks: int = 10_000
    """Largest catch-up window when the head has advanced."""

    max_lookback_blocks: int = 100_000
    """Longest idle look-back window; growth stops here."""

    cycle_deadline_seconds: float = 300.0
    cycle_interval_seconds: float = 30.0

    error_backoff_base_seconds: float = 5.0
    error_backoff_max_seconds: float = 300.0

    progress_target_seconds: float = 1800.0
    """Elapsed time that maps to 99% progress."""

    stall_cycle_threshold: int = 5

    retained_records: int = 10_000
    """New transactions (and events) kept on the engine; 0 keeps none."""

    def __post_init__(self) -> None:
        """Validate policy."""
        if self.window_increment < 1:
            raise ValueError("window_increment must be >= 1")
        if self.max_window_blocks < 1:
            raise ValueError("max_window_blocks must be >= 1")
        if self.max_lookback_blocks < 1:
            raise ValueError("max_lookback_blocks must be >= 1")
        if self.cycle_deadline_seconds <= 0:
            raise ValueError("cycle_deadline_seconds must be > 0")
        if self.cycle_interval_seconds < 0:
            raise ValueError("cycle_interval_seconds must be >= 0")
        if self.error_backoff_base_seconds < 0:
            raise ValueError("error_backoff_base_seconds must be >= 0")
        if self.error_backoff_max_seconds < self.error_backoff_base_seconds:
            raise ValueError("error_backoff_max_seconds must be >= error_backoff_base_seconds")
        if self.progress_target_seconds <= 0:
            raise ValueError("progress_target_seconds must be > 0")
        if self.stall_cycle_threshold < 1:
            raise ValueError("stall_cycle_threshold must be >= 1")
        if self.retained_records < 0:
            raise ValueError("retained_records must be >= 0")

    def backoff_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based)."""
        return min(
            self.error_backoff_max_seconds,
            self.error_backoff_base_seconds * (2 ** attempt),
        )

    @classmethod
    def from_env(cls) -> "SyncEngineConfig":
        """
        Load configuration from environment variables.

        Environment variables:
        - SYNC_WINDOW_INCREMENT
        - SYNC_MAX_WINDOW_BLOCKS
        - SYNC_MAX_LOOKBACK_BLOCKS
        - SYNC_CYCLE_DEADLINE
        - SYNC_CYCLE_INTERVAL
        - SYNC_BACKOFF_BASE
        - SYNC_BACKOFF_MAX
        - SYNC_PROGRESS_TARGET
        - SYNC_STALL_CYCLES
        - SYNC_RETAINED_RECORDS
        """
        config = cls()

        if os.getenv("SYNC_WINDOW_INCREMENT"):
            config.window_increment = int(os.getenv("SYNC_WINDOW_INCREMENT"))
        if os.getenv("SYNC_MAX_WINDOW_BLOCKS"):
            config.max_window_blocks = int(os.getenv("SYNC_MAX_WINDOW_BLOCKS"))
        if os.getenv("SYNC_MAX_LOOKBACK_BLOCKS"):
            config.max_lookback_blocks = int(os.getenv("SYNC_MAX_LOOKBACK_BLOCKS"))
        if os.getenv("SYNC_CYCLE_DEADLINE"):
            config.cycle_deadline_seconds = float(os.getenv("SYNC_CYCLE_DEADLINE"))
        if os.getenv("SYNC_CYCLE_INTERVAL"):
            config.cycle_interval_seconds = float(os.getenv("SYNC_CYCLE_INTERVAL"))
        if os.getenv("SYNC_BACKOFF_BASE"):
            config.error_backoff_base_seconds = float(os.getenv("SYNC_BACKOFF_BASE"))
        if os.getenv("SYNC_BACKOFF_MAX"):
            config.error_backoff_max_seconds = float(os.getenv("SYNC_BACKOFF_MAX"))
        if os.getenv("SYNC_PROGRESS_TARGET"):
            config.progress_target_seconds = float(os.getenv("SYNC_PROGRESS_TARGET"))
        if os.getenv("SYNC_STALL_CYCLES"):
            config.stall_cycle_threshold = int(os.getenv("SYNC_STALL_CYCLES"))
        if os.getenv("SYNC_RETAINED_RECORDS"):
            config.retained_records = int(os.getenv("SYNC_RETAINED_RECORDS"))

        config.__post_init__()
        return config

    @classmethod
    def from_yaml(cls, path: Path) -> "SyncEngineConfig":
        """Load configuration from the `sync` section of a YAML file."""
        import yaml

        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}
            section = data.get('sync', data)
            known = cls.__dataclass_fields__
            return cls(**{k: v for k, v in section.items() if k in known})
        except (OSError, yaml.YAMLError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Failed to load YAML config from {path}: {e}")
            return cls()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "window_increment": self.window_increment,
            "max_window_blocks": self.max_window_blocks,
            "max_lookback_blocks": self.max_lookback_blocks,
            "cycle_deadline_seconds": self.cycle_deadline_seconds,
            "cycle_interval_seconds": self.cycle_interval_seconds,
            "error_backoff_base_seconds": self.error_backoff_base_seconds,
            "error_backoff_max_seconds": self.error_backoff_max_seconds,
            "progress_target_seconds": self.progress_target_seconds,
            "stall_cycle_threshold": self.stall_cycle_threshold,
            "retained_records": self.retained_records,
        }


_default_config: Optional[SyncEngineConfig] = None


def get_config() -> SyncEngineConfig:
    """Get the global sync engine configuration."""
    global _default_config
    if _default_config is None:
        _default_config = SyncEngineConfig.from_env()
    return _default_config


def set_config(config: SyncEngineConfig) -> None:
    """Set the global sync engine configuration."""
    global _default_config
    _default_config = config
