"""
Continuous Sync Package - Marathon sync sessions over one contract.

Components:
- types: Session request, state document, reports
- window: Block window policy per cycle
- merge: Idempotent merge with integrity scoring
- state_machine: Phase transition rules
- engine: Cycle loop with deadline, backoff and cancellation
- manager: start / status / stop
- repository, models: State stores (in-memory, SQLAlchemy)

Quick Start:
    manager = SyncManager(InteractionFetcher(registry))
    handle = await manager.start(SyncConfig(address, "starknet"))
    print(manager.status(handle).progress)
"""

from .config import SyncEngineConfig, get_config, set_config
from .engine import CancellationToken, ContinuousSyncEngine
from .manager import SyncManager
from .merge import integrity_score, merge_result
from .repository import (
    InMemorySyncStateStore,
    SqlAlchemySyncStateRepository,
    SyncStateStore,
)
from .state_machine import ALLOWED_TRANSITIONS, SyncStateMachine
from .types import (
    AccumulatedSummary,
    CycleReport,
    ProgressReport,
    SessionHandle,
    SyncConfig,
    SyncPhase,
    SyncState,
    SyncStatus,
)
from .window import compute_window


__all__ = [
    # Config
    "SyncEngineConfig",
    "get_config",
    "set_config",
    # Engine
    "CancellationToken",
    "ContinuousSyncEngine",
    "SyncManager",
    # Policy
    "compute_window",
    "integrity_score",
    "merge_result",
    "ALLOWED_TRANSITIONS",
    "SyncStateMachine",
    # Stores
    "SyncStateStore",
    "InMemorySyncStateStore",
    "SqlAlchemySyncStateRepository",
    # Types
    "AccumulatedSummary",
    "CycleReport",
    "ProgressReport",
    "SessionHandle",
    "SyncConfig",
    "SyncPhase",
    "SyncState",
    "SyncStatus",
]
