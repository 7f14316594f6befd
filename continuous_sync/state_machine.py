"""
Continuous Sync - Phase State Machine.

============================================================
TRANSITION RULES
============================================================
- INIT → FETCHING: Session starts
- FETCHING → MERGING: Fetch returned a result
- FETCHING → FETCHING: Transient failure, retry after backoff
- MERGING → REPORTING: State updated
- REPORTING → FETCHING: Next cycle
- REPORTING → COMPLETED: One-shot session or cycle limit reached

- Any non-terminal phase → STOPPED: Cancellation observed
- Any non-terminal phase → FAILED: Non-recoverable error

Terminal phases accept no transition.

============================================================
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Set
import logging

from core.clock import now_utc
from core.exceptions import StateTransitionError

from .types import SyncPhase, SyncStatus


logger = logging.getLogger(__name__)


# ============================================================
# TRANSITION RULES
# ============================================================

ALLOWED_TRANSITIONS: Dict[SyncPhase, Set[SyncPhase]] = {
    SyncPhase.INIT: {
        SyncPhase.FETCHING,
        SyncPhase.STOPPED,
        SyncPhase.FAILED,
    },
    SyncPhase.FETCHING: {
        SyncPhase.MERGING,
        SyncPhase.FETCHING,
        SyncPhase.STOPPED,
        SyncPhase.FAILED,
    },
    SyncPhase.MERGING: {
        SyncPhase.REPORTING,
        SyncPhase.FAILED,
    },
    SyncPhase.REPORTING: {
        SyncPhase.FETCHING,
        SyncPhase.COMPLETED,
        SyncPhase.STOPPED,
        SyncPhase.FAILED,
    },
    SyncPhase.STOPPED: set(),
    SyncPhase.FAILED: set(),
    SyncPhase.COMPLETED: set(),
}

TERMINAL_PHASES: Set[SyncPhase] = {
    SyncPhase.STOPPED,
    SyncPhase.FAILED,
    SyncPhase.COMPLETED,
}

PHASE_TO_STATUS: Dict[SyncPhase, SyncStatus] = {
    SyncPhase.STOPPED: SyncStatus.STOPPED,
    SyncPhase.FAILED: SyncStatus.FAILED,
    SyncPhase.COMPLETED: SyncStatus.COMPLETED,
}


@dataclass(frozen=True)
class PhaseTransition:
    """Record of one phase change."""

    from_phase: SyncPhase
    to_phase: SyncPhase
    reason: str
    timestamp: datetime


class SyncStateMachine:
    """
    Guards engine phase changes against ALLOWED_TRANSITIONS.

    Keeps a bounded transition history for debugging.
    """

    def __init__(
        self,
        initial_phase: SyncPhase = SyncPhase.INIT,
        max_history_size: int = 200,
    ):
        self._phase = initial_phase
        self._history: List[PhaseTransition] = []
        self._max_history_size = max_history_size

    @property
    def phase(self) -> SyncPhase:
        return self._phase

    @property
    def is_terminal(self) -> bool:
        return self._phase in TERMINAL_PHASES

    @property
    def history(self) -> List[PhaseTransition]:
        return list(self._history)

    def can_transition(self, to_phase: SyncPhase) -> bool:
        return to_phase in ALLOWED_TRANSITIONS.get(self._phase, set())

    def transition(self, to_phase: SyncPhase, reason: str = "") -> PhaseTransition:
        """
        Move to `to_phase`.

        Raises:
            StateTransitionError: Transition not allowed
        """
        if not self.can_transition(to_phase):
            raise StateTransitionError(
                f"Invalid sync phase transition: {self._phase.value} -> {to_phase.value}",
                from_state=self._phase.value,
                to_state=to_phase.value,
            )

        record = PhaseTransition(
            from_phase=self._phase,
            to_phase=to_phase,
            reason=reason,
            timestamp=now_utc(),
        )
        self._phase = to_phase
        self._history.append(record)
        if len(self._history) > self._max_history_size:
            self._history = self._history[-self._max_history_size:]

        if to_phase in TERMINAL_PHASES:
            logger.info(f"Sync phase {record.from_phase.value} -> {to_phase.value}: {reason}")
        else:
            logger.debug(f"Sync phase {record.from_phase.value} -> {to_phase.value}")
        return record

    def status_for(self, phase: Optional[SyncPhase] = None) -> SyncStatus:
        """External status matching a phase."""
        return PHASE_TO_STATUS.get(phase or self._phase, SyncStatus.RUNNING)
