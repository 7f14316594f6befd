"""
Continuous Sync - Engine.

============================================================
RESPONSIBILITY
============================================================
Runs the cycle loop of one sync session.

Each cycle:
1. Reads the chain head and computes the block window
2. Fetches interactions (bounded by the cycle deadline)
3. Merges them idempotently into the session state
4. Reports progress, persists the state, notifies on_cycle

============================================================
FAILURE POLICY
============================================================
- Transient errors and cycle timeouts: counted, backed off
  (exponential, capped), same window retried
- InvalidAddress / InvalidRange and other non-recoverable
  errors: session FAILED immediately
- Cancellation is cooperative: observed between cycles and
  during sleeps, never mid-merge

============================================================
"""

import asyncio
import inspect
import logging
from collections import deque
from typing import Any, Callable, Deque, List, Optional, Tuple

from core.clock import ClockFactory, ClockProtocol, now_utc
from core.exceptions import CycleTimeout, IndexerError, ProtocolError, StorageError
from interaction_fetcher.fetcher import InteractionFetcher
from interaction_fetcher.models import (
    InteractionResult,
    NormalizedEvent,
    NormalizedTransaction,
)
from interaction_fetcher.normalizer import AbiSelectorIndex

from .config import SyncEngineConfig, get_config
from .merge import merge_result
from .repository import InMemorySyncStateStore, SyncStateStore
from .state_machine import SyncStateMachine
from .types import CycleReport, ProgressReport, SyncConfig, SyncPhase, SyncState, SyncStatus
from .window import compute_window


logger = logging.getLogger(__name__)


CycleCallback = Callable[[CycleReport, List[NormalizedTransaction], List[NormalizedEvent]], Any]


class CancellationToken:
    """Cooperative stop signal shared by a manager and an engine."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self, timeout: float) -> bool:
        """
        Sleep up to `timeout` seconds.

        Returns:
            True if cancelled before the timeout elapsed
        """
        if self._event.is_set():
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False


class ContinuousSyncEngine:
    """
    Cycle loop of one session.

    Usage:
        engine = ContinuousSyncEngine(SyncConfig(address, "lisk"), fetcher)
        task = asyncio.create_task(engine.run())
        ...
        engine.stop()
        await task
    """

    def __init__(
        self,
        config: SyncConfig,
        fetcher: InteractionFetcher,
        engine_config: Optional[SyncEngineConfig] = None,
        store: Optional[SyncStateStore] = None,
        state: Optional[SyncState] = None,
        token: Optional[CancellationToken] = None,
        on_cycle: Optional[CycleCallback] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        """
        Initialize engine.

        Args:
            config: Session request
            fetcher: Interaction fetcher
            engine_config: Cycle policy
            store: State store (in-memory by default)
            state: Previously persisted state to resume from
            token: Cancellation token (a fresh one by default)
            on_cycle: Called with (report, new transactions, new events)
                after each merged cycle; may be a coroutine function
            clock: Clock for progress and durations
        """
        self._config = config
        self._fetcher = fetcher
        self._engine_config = engine_config or get_config()
        self._store = store or InMemorySyncStateStore()
        self._token = token or CancellationToken()
        self._on_cycle = on_cycle
        self._clock = clock or ClockFactory.get_clock()

        self._state = state or SyncState.for_config(config)
        self._state.status = SyncStatus.RUNNING
        self._state.phase = SyncPhase.INIT
        self._state.last_error = None
        self._machine = SyncStateMachine()

        self._abi_index: Optional[AbiSelectorIndex] = None
        self._started_monotonic: Optional[float] = None
        self._error_streak = 0

        # Most recent new records of this engine run; on_cycle sees every one
        retained = self._engine_config.retained_records
        self.transactions: Deque[NormalizedTransaction] = deque(maxlen=retained)
        self.events: Deque[NormalizedEvent] = deque(maxlen=retained)
        self._pending_new: Tuple[List[NormalizedTransaction], List[NormalizedEvent]] = ([], [])

    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def phase(self) -> SyncPhase:
        return self._machine.phase

    @property
    def token(self) -> CancellationToken:
        return self._token

    @property
    def is_running(self) -> bool:
        return not self._machine.is_terminal

    def progress_report(self) -> ProgressReport:
        """Current snapshot of the session."""
        return self._state.to_progress_report()

    def stop(self) -> None:
        """Request a cooperative stop."""
        if not self._token.cancelled:
            logger.info(f"[{self._state.subject_key}] Stop requested")
        self._token.cancel()

    # --------------------------------------------------------
    # MAIN LOOP
    # --------------------------------------------------------

    async def run(self) -> SyncState:
        """
        Run cycles until completion, stop or failure.

        Returns:
            Final state (status is terminal)
        """
        self._started_monotonic = self._clock.monotonic()
        key = self._state.subject_key
        logger.info(
            f"[{key}] Sync session {self._state.session_id} starting "
            f"(continuous={self._config.continuous}, resume_from={self._state.last_processed_block})"
        )

        if self._token.cancelled:
            await self._finish(SyncPhase.STOPPED, "stopped before start")
            return self._state

        self._set_phase(SyncPhase.FETCHING, "session started")
        await self._persist()

        while True:
            if self._token.cancelled:
                await self._finish(SyncPhase.STOPPED, "stop requested")
                break

            cycle_number = self._state.cycle_count + 1

            try:
                result, from_block, to_block, duration = await self._run_fetch(cycle_number)
            except CycleTimeout as e:
                self._state.accumulated_summary.timed_out_cycles += 1
                if await self._back_off(cycle_number, e):
                    break
                continue
            except IndexerError as e:
                if not e.is_retryable:
                    await self._fail(e)
                    break
                self._state.accumulated_summary.failed_cycles += 1
                if await self._back_off(cycle_number, e):
                    break
                continue
            except Exception as e:
                logger.exception(f"[{key}] Unexpected error in cycle {cycle_number}")
                await self._fail(e)
                break

            self._error_streak = 0
            report = self._merge(result, cycle_number, from_block, to_block, duration)
            await self._report(report)

            if self._is_done(cycle_number):
                await self._finish(SyncPhase.COMPLETED, f"completed after {cycle_number} cycle(s)")
                break

            self._set_phase(SyncPhase.FETCHING, "next cycle")
            if await self._token.wait(self._engine_config.cycle_interval_seconds):
                await self._finish(SyncPhase.STOPPED, "stop requested")
                break

        return self._state

    # --------------------------------------------------------
    # CYCLE STEPS
    # --------------------------------------------------------

    async def _run_fetch(self, cycle_number: int) -> Tuple[InteractionResult, int, int, float]:
        """Head query and fetch, bounded by the cycle deadline."""
        deadline = self._engine_config.cycle_deadline_seconds
        started = self._clock.monotonic()
        try:
            result, from_block, to_block = await asyncio.wait_for(
                self._fetch_window(cycle_number),
                timeout=deadline,
            )
        except asyncio.TimeoutError:
            raise CycleTimeout(
                f"Cycle {cycle_number} exceeded {deadline}s deadline",
                deadline_seconds=deadline,
                chain=self._config.chain,
            )
        return result, from_block, to_block, self._clock.monotonic() - started

    async def _fetch_window(self, cycle_number: int) -> Tuple[InteractionResult, int, int]:
        client = self._fetcher.client_for(self._config.chain)
        client.require_address(self._config.contract_address)
        if self._abi_index is None:
            self._abi_index = AbiSelectorIndex.from_abi(self._config.abi, client.family)

        head = await client.get_height()
        if not isinstance(head, int) or isinstance(head, bool) or head < 0:
            # A bad head is the provider's fault, never the caller's range
            raise ProtocolError(
                f"Chain head is not a block number: {head!r}",
                method="get_height",
                chain=client.chain,
            )
        from_block, to_block = compute_window(
            cycle_number=cycle_number,
            head=head,
            last_processed_block=self._state.last_processed_block,
            base_range=self._config.base_block_range,
            increment=self._engine_config.window_increment,
            max_window_blocks=self._engine_config.max_window_blocks,
            max_lookback_blocks=self._engine_config.max_lookback_blocks,
        )
        logger.debug(
            f"[{self._state.subject_key}] Cycle {cycle_number}: head={head}, "
            f"window=[{from_block}, {to_block}]"
        )

        result = await self._fetcher.fetch(
            self._config.contract_address,
            self._config.chain,
            from_block,
            to_block,
            abi=self._abi_index,
        )
        return result, from_block, to_block

    def _merge(
        self,
        result: InteractionResult,
        cycle_number: int,
        from_block: int,
        to_block: int,
        duration: float,
    ) -> CycleReport:
        """Merge step; no awaits between phase change and state update."""
        self._set_phase(SyncPhase.MERGING, f"cycle {cycle_number} fetched")

        previous_block = self._state.last_processed_block
        report, new_txs, new_events = merge_result(
            self._state,
            result,
            cycle_number=cycle_number,
            from_block=from_block,
            to_block=to_block,
            duration_seconds=duration,
        )
        self.transactions.extend(new_txs)
        self.events.extend(new_events)
        self._pending_new = (new_txs, new_events)

        self._update_stall(report, previous_block)
        self._state.last_error = None
        self._update_progress()
        self._set_phase(SyncPhase.REPORTING, f"cycle {cycle_number} merged")
        return report

    async def _report(self, report: CycleReport) -> None:
        key = self._state.subject_key
        summary = self._state.accumulated_summary
        logger.info(
            f"[{key}] Cycle {report.cycle_number} [{report.from_block}, {report.to_block}] "
            f"{report.method}: +{report.new_transactions} txs, +{report.new_events} events, "
            f"{report.duplicates} dup, integrity={report.data_integrity_score:.1f}% "
            f"(total {summary.total_transactions} txs, {summary.unique_users} users, "
            f"progress {self._state.progress:.1f}%)"
        )

        await self._persist()

        if self._on_cycle is not None:
            new_txs, new_events = self._pending_new
            try:
                outcome = self._on_cycle(report, new_txs, new_events)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception(
                    f"[{key}] on_cycle callback failed for cycle {report.cycle_number}"
                )

    def _is_done(self, cycle_number: int) -> bool:
        if not self._config.continuous:
            return True
        return self._config.max_cycles is not None and cycle_number >= self._config.max_cycles

    # --------------------------------------------------------
    # BOOKKEEPING
    # --------------------------------------------------------

    def _set_phase(self, phase: SyncPhase, reason: str) -> None:
        self._machine.transition(phase, reason)
        self._state.phase = phase
        self._state.status = self._machine.status_for(phase)
        self._state.updated_at = now_utc()

    def _update_progress(self) -> None:
        """Wall-clock progress capped at 99 while running; never decreases."""
        if self._started_monotonic is None:
            return
        elapsed = self._clock.monotonic() - self._started_monotonic
        target = self._engine_config.progress_target_seconds
        computed = min(99.0, elapsed / target * 100.0)
        self._state.progress = round(max(self._state.progress, computed), 2)

    def _update_stall(self, report: CycleReport, previous_block: Optional[int]) -> None:
        key = self._state.subject_key
        if report.new_items == 0 and previous_block == self._state.last_processed_block:
            self._state.consecutive_idle_cycles += 1
            threshold = self._engine_config.stall_cycle_threshold
            if self._state.consecutive_idle_cycles >= threshold and not self._state.stalled:
                self._state.stalled = True
                logger.warning(
                    f"[{key}] Session stalled: {self._state.consecutive_idle_cycles} cycles "
                    f"without new data at block {self._state.last_processed_block}"
                )
        else:
            if self._state.stalled:
                logger.info(f"[{key}] Session recovered from stall")
            self._state.consecutive_idle_cycles = 0
            self._state.stalled = False

    async def _back_off(self, cycle_number: int, error: IndexerError) -> bool:
        """
        Record a transient failure and sleep before retrying.

        Returns:
            True if the session was stopped while waiting
        """
        delay = self._engine_config.backoff_for(self._error_streak)
        for source in (error, error.cause):
            retry_after = getattr(source, "retry_after_seconds", None)
            if retry_after:
                delay = max(delay, retry_after)
        self._error_streak += 1
        self._state.last_error = str(error)
        self._update_progress()
        self._set_phase(SyncPhase.FETCHING, f"retry after {type(error).__name__}")

        logger.warning(
            f"[{self._state.subject_key}] Cycle {cycle_number} failed "
            f"({self._error_streak} in a row), retrying in {delay:.1f}s: {error}"
        )
        await self._persist()

        if await self._token.wait(delay):
            await self._finish(SyncPhase.STOPPED, "stop requested during backoff")
            return True
        return False

    async def _fail(self, error: BaseException) -> None:
        self._state.last_error = str(error)
        await self._finish(SyncPhase.FAILED, f"{type(error).__name__}: {error}")
        logger.error(f"[{self._state.subject_key}] Sync session failed: {error}")

    async def _finish(self, phase: SyncPhase, reason: str) -> None:
        self._set_phase(phase, reason)
        if phase == SyncPhase.COMPLETED:
            self._state.progress = 100.0
        await self._persist()

    async def _persist(self) -> None:
        try:
            await self._store.save(self._state)
        except StorageError as e:
            logger.error(f"[{self._state.subject_key}] Failed to persist sync state: {e}")


__all__ = [
    "CancellationToken",
    "ContinuousSyncEngine",
    "CycleCallback",
]
