"""
Continuous Sync - Session Manager.

Entry point for callers: start / status / stop sessions.

- At most one running session per subject key; a duplicate start
  returns the running session's handle
- Sessions keep their last snapshot after they end, so `status`
  reports the terminal state and last error
- `resume=True` continues from the persisted state of the subject
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

from core.clock import ClockProtocol
from interaction_fetcher.fetcher import InteractionFetcher

from .config import SyncEngineConfig, get_config
from .engine import ContinuousSyncEngine, CycleCallback
from .repository import InMemorySyncStateStore, SyncStateStore
from .types import ProgressReport, SessionHandle, SyncConfig, SyncState


logger = logging.getLogger(__name__)


@dataclass
class _Session:
    handle: SessionHandle
    engine: ContinuousSyncEngine
    task: asyncio.Task

    @property
    def is_active(self) -> bool:
        return not self.task.done() and self.engine.is_running


class SyncManager:
    """
    Owns the running sync sessions of a process.

    Usage:
        manager = SyncManager(fetcher)
        handle = await manager.start(SyncConfig(address, "ethereum"))
        report = manager.status(handle)
        await manager.stop(handle, wait=True)
    """

    def __init__(
        self,
        fetcher: Optional[InteractionFetcher] = None,
        store: Optional[SyncStateStore] = None,
        engine_config: Optional[SyncEngineConfig] = None,
        clock: Optional[ClockProtocol] = None,
        max_finished_sessions: int = 100,
    ):
        """
        Args:
            fetcher: Interaction fetcher shared by every session
            store: State store (in-memory by default)
            engine_config: Cycle policy
            clock: Clock handed to the engines
            max_finished_sessions: Ended sessions kept for `status`;
                the oldest are forgotten beyond this
        """
        self._fetcher = fetcher or InteractionFetcher()
        self._store = store or InMemorySyncStateStore()
        self._engine_config = engine_config or get_config()
        self._clock = clock
        self._max_finished_sessions = max_finished_sessions

        self._sessions: Dict[str, _Session] = {}
        self._by_subject: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    @property
    def store(self) -> SyncStateStore:
        return self._store

    async def start(
        self,
        config: SyncConfig,
        on_cycle: Optional[CycleCallback] = None,
    ) -> SessionHandle:
        """
        Start a session, or return the running one for the same subject.

        Args:
            config: Session request
            on_cycle: Per-cycle callback handed to the engine

        Returns:
            Handle of the (new or existing) session

        Raises:
            UnsupportedChainError: Unknown chain
            InvalidAddress: The chain rejects the contract address
        """
        subject_key = config.subject_key

        client = self._fetcher.client_for(config.chain)
        client.require_address(config.contract_address)

        async with self._lock:
            existing_id = self._by_subject.get(subject_key)
            existing = self._sessions.get(existing_id) if existing_id else None
            if existing is not None and existing.is_active:
                logger.info(f"[{subject_key}] Session already running: {existing.handle.session_id}")
                return existing.handle

            state = await self._initial_state(config)

            engine = ContinuousSyncEngine(
                config=config,
                fetcher=self._fetcher,
                engine_config=self._engine_config,
                store=self._store,
                state=state,
                on_cycle=on_cycle,
                clock=self._clock,
            )
            handle = SessionHandle(
                session_id=engine.state.session_id,
                subject_key=subject_key,
            )
            task = asyncio.create_task(engine.run(), name=f"sync:{subject_key}")

            self._sessions[handle.session_id] = _Session(handle=handle, engine=engine, task=task)
            self._by_subject[subject_key] = handle.session_id
            self._prune_finished()

        logger.info(f"[{subject_key}] Started sync session {handle.session_id}")
        return handle

    async def _initial_state(self, config: SyncConfig) -> Optional[SyncState]:
        if not config.resume:
            return None

        state = await self._store.load(config.subject_key)
        if state is None:
            logger.info(f"[{config.subject_key}] Nothing to resume, starting fresh")
            return None

        # A resumed run is a new session over the same dataset
        fresh = SyncState.for_config(config)
        state.session_id = fresh.session_id
        state.started_at = fresh.started_at
        logger.info(
            f"[{config.subject_key}] Resuming from block {state.last_processed_block} "
            f"after {state.cycle_count} cycle(s)"
        )
        return state

    def _prune_finished(self) -> None:
        """Forget the oldest ended sessions beyond `max_finished_sessions`."""
        finished = [sid for sid, s in self._sessions.items() if s.task.done()]
        excess = len(finished) - self._max_finished_sessions
        for session_id in finished[:max(0, excess)]:
            session = self._sessions.pop(session_id)
            if self._by_subject.get(session.handle.subject_key) == session_id:
                del self._by_subject[session.handle.subject_key]
            logger.debug(f"[{session.handle.subject_key}] Forgot ended session {session_id}")

    def _get(self, handle: Union[SessionHandle, str]) -> _Session:
        session_id = handle.session_id if isinstance(handle, SessionHandle) else handle
        session = self._sessions.get(session_id)
        if session is None:
            raise KeyError(f"Unknown sync session: {session_id}")
        return session

    def status(self, handle: Union[SessionHandle, str]) -> ProgressReport:
        """
        Snapshot of a session.

        Raises:
            KeyError: Unknown session
        """
        return self._get(handle).engine.progress_report()

    async def stop(
        self,
        handle: Union[SessionHandle, str],
        wait: bool = False,
    ) -> ProgressReport:
        """
        Request a stop; with `wait`, return after the session ended.

        Raises:
            KeyError: Unknown session
        """
        session = self._get(handle)
        session.engine.stop()
        if wait:
            await asyncio.gather(session.task, return_exceptions=True)
        return session.engine.progress_report()

    async def wait(self, handle: Union[SessionHandle, str]) -> ProgressReport:
        """
        Wait until a session has ended.

        Raises:
            KeyError: Unknown session
        """
        session = self._get(handle)
        await asyncio.gather(session.task, return_exceptions=True)
        return session.engine.progress_report()

    def list_sessions(self) -> List[ProgressReport]:
        """Snapshots of every session known to this manager."""
        return [s.engine.progress_report() for s in self._sessions.values()]

    def get_engine(self, handle: Union[SessionHandle, str]) -> ContinuousSyncEngine:
        """Engine behind a session (dataset access)."""
        return self._get(handle).engine

    async def shutdown(self) -> None:
        """Stop every active session and wait for them to end."""
        active = [s for s in self._sessions.values() if not s.task.done()]
        for session in active:
            session.engine.stop()
        if active:
            await asyncio.gather(*(s.task for s in active), return_exceptions=True)
        logger.info(f"Sync manager shut down ({len(active)} session(s) stopped)")
