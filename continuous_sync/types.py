"""
Continuous Sync - Type Definitions.

============================================================
SESSION MODEL
============================================================
A sync session keeps one contract's interaction dataset fresh
over an open-ended number of cycles.

- One session per subject key (account:chain:contract)
- State is a JSON document owned by the engine
- Dedup sets make repeated cycles idempotent

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set
import uuid

from core.clock import from_iso8601, now_utc


# ============================================================
# STATUS & PHASES
# ============================================================

class SyncStatus(str, Enum):
    """Externally visible session status."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self != SyncStatus.RUNNING


class SyncPhase(str, Enum):
    """
    Engine phases.

    INIT → FETCHING → MERGING → REPORTING → FETCHING ...
    Terminal: STOPPED, FAILED, COMPLETED
    """

    INIT = "init"
    FETCHING = "fetching"
    MERGING = "merging"
    REPORTING = "reporting"
    STOPPED = "stopped"
    FAILED = "failed"
    COMPLETED = "completed"


# ============================================================
# SESSION REQUEST
# ============================================================

def make_subject_key(account_id: str, chain: str, contract_address: str) -> str:
    """Subject key of a session: 'account:chain:contract'."""
    return f"{account_id}:{chain.strip().lower()}:{contract_address.strip().lower()}"


@dataclass
class SyncConfig:
    """What to sync and how."""

    contract_address: str
    chain: str
    base_block_range: int = 1000
    continuous: bool = True
    account_id: str = "default"
    abi: Optional[Any] = None
    resume: bool = False
    max_cycles: Optional[int] = None
    """Stop as COMPLETED after this many cycles (None = unbounded)."""

    def __post_init__(self) -> None:
        """Validate request."""
        if self.base_block_range < 0:
            raise ValueError("base_block_range must be >= 0")
        if self.max_cycles is not None and self.max_cycles < 1:
            raise ValueError("max_cycles must be >= 1")
        self.chain = self.chain.strip().lower()

    @property
    def subject_key(self) -> str:
        return make_subject_key(self.account_id, self.chain, self.contract_address)


@dataclass(frozen=True)
class SessionHandle:
    """Opaque reference returned by SyncManager.start."""

    session_id: str
    subject_key: str


# ============================================================
# SUMMARIES & REPORTS
# ============================================================

@dataclass
class AccumulatedSummary:
    """Totals over every cycle of a session."""

    total_transactions: int = 0
    event_transactions: int = 0
    direct_transactions: int = 0
    total_events: int = 0
    unique_users: int = 0
    blocks_scanned: int = 0
    duplicates_skipped: int = 0
    partial_cycles: int = 0
    timed_out_cycles: int = 0
    failed_cycles: int = 0

    def to_dict(self) -> Dict[str, int]:
        """Convert to dictionary."""
        return {
            "total_transactions": self.total_transactions,
            "event_transactions": self.event_transactions,
            "direct_transactions": self.direct_transactions,
            "total_events": self.total_events,
            "unique_users": self.unique_users,
            "blocks_scanned": self.blocks_scanned,
            "duplicates_skipped": self.duplicates_skipped,
            "partial_cycles": self.partial_cycles,
            "timed_out_cycles": self.timed_out_cycles,
            "failed_cycles": self.failed_cycles,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AccumulatedSummary":
        known = cls.__dataclass_fields__
        return cls(**{k: int(v) for k, v in (data or {}).items() if k in known})


@dataclass(frozen=True)
class CycleReport:
    """Telemetry of one completed cycle."""

    cycle_number: int
    from_block: int
    to_block: int
    method: str
    new_transactions: int
    duplicate_transactions: int
    new_events: int
    duplicate_events: int
    new_users: int
    items: int
    duplicates: int
    data_integrity_score: float
    partial: bool
    duration_seconds: float

    @property
    def new_items(self) -> int:
        return self.new_transactions + self.new_events

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "cycle_number": self.cycle_number,
            "from_block": self.from_block,
            "to_block": self.to_block,
            "method": self.method,
            "new_transactions": self.new_transactions,
            "duplicate_transactions": self.duplicate_transactions,
            "new_events": self.new_events,
            "duplicate_events": self.duplicate_events,
            "new_users": self.new_users,
            "items": self.items,
            "duplicates": self.duplicates,
            "data_integrity_score": self.data_integrity_score,
            "partial": self.partial,
            "duration_seconds": self.duration_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CycleReport":
        return cls(**{k: data[k] for k in cls.__dataclass_fields__ if k in data})


@dataclass(frozen=True)
class ProgressReport:
    """Point-in-time snapshot returned by `status`."""

    session_id: str
    subject_key: str
    status: SyncStatus
    phase: SyncPhase
    progress: float
    cycle_count: int
    accumulated_summary: Dict[str, int]
    data_integrity_score: float
    last_processed_block: Optional[int]
    last_error: Optional[str]
    stalled: bool
    last_cycle: Optional[CycleReport]
    started_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "session_id": self.session_id,
            "subject_key": self.subject_key,
            "status": self.status.value,
            "phase": self.phase.value,
            "progress": self.progress,
            "cycle_count": self.cycle_count,
            "accumulated_summary": dict(self.accumulated_summary),
            "data_integrity_score": self.data_integrity_score,
            "last_processed_block": self.last_processed_block,
            "last_error": self.last_error,
            "stalled": self.stalled,
            "last_cycle": self.last_cycle.to_dict() if self.last_cycle else None,
            "started_at": self.started_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


# ============================================================
# SYNC STATE (JSON DOCUMENT)
# ============================================================

def event_key(transaction_hash: str, log_index: int) -> str:
    """Dedup key of an event."""
    return f"{transaction_hash}:{log_index}"


@dataclass
class SyncState:
    """
    Engine-owned state of a session.

    Serialized with `to_dict` (dedup sets as sorted lists) and restored
    with `from_dict`.
    """

    subject_key: str
    account_id: str
    contract_address: str
    chain: str
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    last_processed_block: Optional[int] = None
    cycle_count: int = 0
    dedup_tx_hashes: Set[str] = field(default_factory=set)
    dedup_event_keys: Set[str] = field(default_factory=set)
    dedup_user_addresses: Set[str] = field(default_factory=set)
    accumulated_summary: AccumulatedSummary = field(default_factory=AccumulatedSummary)
    data_integrity_score: float = 100.0
    progress: float = 0.0
    status: SyncStatus = SyncStatus.RUNNING
    phase: SyncPhase = SyncPhase.INIT
    last_error: Optional[str] = None
    consecutive_idle_cycles: int = 0
    stalled: bool = False
    last_cycle: Optional[CycleReport] = None
    started_at: datetime = field(default_factory=now_utc)
    updated_at: datetime = field(default_factory=now_utc)

    @classmethod
    def for_config(cls, config: "SyncConfig") -> "SyncState":
        """Fresh state for a session request."""
        return cls(
            subject_key=config.subject_key,
            account_id=config.account_id,
            contract_address=config.contract_address,
            chain=config.chain,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-safe dictionary."""
        return {
            "session_id": self.session_id,
            "subject_key": self.subject_key,
            "account_id": self.account_id,
            "contract_address": self.contract_address,
            "chain": self.chain,
            "last_processed_block": self.last_processed_block,
            "cycle_count": self.cycle_count,
            "dedup_tx_hashes": sorted(self.dedup_tx_hashes),
            "dedup_event_keys": sorted(self.dedup_event_keys),
            "dedup_user_addresses": sorted(self.dedup_user_addresses),
            "accumulated_summary": self.accumulated_summary.to_dict(),
            "data_integrity_score": self.data_integrity_score,
            "progress": self.progress,
            "status": self.status.value,
            "phase": self.phase.value,
            "last_error": self.last_error,
            "consecutive_idle_cycles": self.consecutive_idle_cycles,
            "stalled": self.stalled,
            "last_cycle": self.last_cycle.to_dict() if self.last_cycle else None,
            "started_at": self.started_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncState":
        """Restore from `to_dict` output."""
        last_cycle = data.get("last_cycle")
        return cls(
            session_id=data["session_id"],
            subject_key=data["subject_key"],
            account_id=data["account_id"],
            contract_address=data["contract_address"],
            chain=data["chain"],
            last_processed_block=data.get("last_processed_block"),
            cycle_count=int(data.get("cycle_count", 0)),
            dedup_tx_hashes=set(data.get("dedup_tx_hashes") or []),
            dedup_event_keys=set(data.get("dedup_event_keys") or []),
            dedup_user_addresses=set(data.get("dedup_user_addresses") or []),
            accumulated_summary=AccumulatedSummary.from_dict(data.get("accumulated_summary") or {}),
            data_integrity_score=float(data.get("data_integrity_score", 100.0)),
            progress=float(data.get("progress", 0.0)),
            status=SyncStatus(data.get("status", SyncStatus.RUNNING.value)),
            phase=SyncPhase(data.get("phase", SyncPhase.INIT.value)),
            last_error=data.get("last_error"),
            consecutive_idle_cycles=int(data.get("consecutive_idle_cycles", 0)),
            stalled=bool(data.get("stalled", False)),
            last_cycle=CycleReport.from_dict(last_cycle) if last_cycle else None,
            started_at=from_iso8601(data["started_at"]) if data.get("started_at") else now_utc(),
            updated_at=from_iso8601(data["updated_at"]) if data.get("updated_at") else now_utc(),
        )

    def to_progress_report(self) -> ProgressReport:
        """Snapshot for pollers."""
        return ProgressReport(
            session_id=self.session_id,
            subject_key=self.subject_key,
            status=self.status,
            phase=self.phase,
            progress=self.progress,
            cycle_count=self.cycle_count,
            accumulated_summary=self.accumulated_summary.to_dict(),
            data_integrity_score=self.data_integrity_score,
            last_processed_block=self.last_processed_block,
            last_error=self.last_error,
            stalled=self.stalled,
            last_cycle=self.last_cycle,
            started_at=self.started_at,
            updated_at=self.updated_at,
        )


__all__ = [
    "SyncStatus",
    "SyncPhase",
    "SyncConfig",
    "SessionHandle",
    "AccumulatedSummary",
    "CycleReport",
    "ProgressReport",
    "SyncState",
    "event_key",
    "make_subject_key",
]
