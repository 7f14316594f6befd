"""
Continuous Sync - Repository.

============================================================
PURPOSE
============================================================
Stores for the sync state document, keyed by subject key.

- InMemorySyncStateStore: default, process-local
- SqlAlchemySyncStateRepository: async SQLAlchemy, one row
  per subject in `sync_states`

Dedup sets are stored in full (sorted lists) so duplicate
detection stays exact after a resume.

============================================================
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Any

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from core.exceptions import StorageError

from .models import Base, SyncStateModel
from .types import SyncState


logger = logging.getLogger(__name__)


# ============================================================
# STORE CONTRACT
# ============================================================

class SyncStateStore(ABC):
    """Persistence contract for sync state documents."""

    @abstractmethod
    async def load(self, subject_key: str) -> Optional[SyncState]:
        """Load the state of a subject, or None."""
        pass

    @abstractmethod
    async def save(self, state: SyncState) -> None:
        """
        Insert or replace the state of `state.subject_key`.

        Raises:
            StorageError: The state could not be written
        """
        pass

    @abstractmethod
    async def delete(self, subject_key: str) -> bool:
        """Delete the state of a subject. Returns True if it existed."""
        pass


# ============================================================
# IN-MEMORY STORE
# ============================================================

class InMemorySyncStateStore(SyncStateStore):
    """
    Process-local store.

    Keeps serialized snapshots, so later mutation of a saved state
    object does not leak into the store.
    """

    def __init__(self):
        self._documents: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def load(self, subject_key: str) -> Optional[SyncState]:
        async with self._lock:
            document = self._documents.get(subject_key)
        return SyncState.from_dict(document) if document else None

    async def save(self, state: SyncState) -> None:
        document = state.to_dict()
        async with self._lock:
            self._documents[state.subject_key] = document

    async def delete(self, subject_key: str) -> bool:
        async with self._lock:
            return self._documents.pop(subject_key, None) is not None

    def keys(self) -> List[str]:
        return list(self._documents)


# ============================================================
# SQLALCHEMY REPOSITORY
# ============================================================

class SqlAlchemySyncStateRepository(SyncStateStore):
    """
    Repository for sync state persistence.

    One row per subject key; `save` is an upsert.
    """

    def __init__(self, session_factory):
        """
        Initialize repository.

        Args:
            session_factory: Async session factory
        """
        self._session_factory = session_factory

    @staticmethod
    async def create_schema(engine: AsyncEngine) -> None:
        """Create the sync_states table if missing."""
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def load(
        self,
        subject_key: str,
        session: Optional[AsyncSession] = None,
    ) -> Optional[SyncState]:
        try:
            async with self._get_session(session) as sess:
                stmt = select(SyncStateModel).where(SyncStateModel.subject_key == subject_key)
                result = await sess.execute(stmt)
                model = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to load sync state: {e}",
                subject_key=subject_key,
                cause=e,
            )

        if model is None:
            return None
        return SyncState.from_dict(model.state)

    async def save(
        self,
        state: SyncState,
        session: Optional[AsyncSession] = None,
    ) -> None:
        document = state.to_dict()
        try:
            async with self._get_session(session) as sess:
                stmt = select(SyncStateModel).where(SyncStateModel.subject_key == state.subject_key)
                result = await sess.execute(stmt)
                model = result.scalar_one_or_none()

                if model is None:
                    model = SyncStateModel(subject_key=state.subject_key)
                    sess.add(model)

                model.session_id = state.session_id
                model.account_id = state.account_id
                model.chain = state.chain
                model.contract_address = state.contract_address
                model.status = state.status.value
                model.last_processed_block = state.last_processed_block
                model.cycle_count = state.cycle_count
                model.data_integrity_score = state.data_integrity_score
                model.state = document
                model.updated_at = state.updated_at

                await sess.commit()
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to save sync state: {e}",
                subject_key=state.subject_key,
                cause=e,
            )

        logger.debug(f"Saved sync state: {state.subject_key} (cycle {state.cycle_count})")

    async def delete(
        self,
        subject_key: str,
        session: Optional[AsyncSession] = None,
    ) -> bool:
        try:
            async with self._get_session(session) as sess:
                stmt = delete(SyncStateModel).where(SyncStateModel.subject_key == subject_key)
                result = await sess.execute(stmt)
                await sess.commit()
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to delete sync state: {e}",
                subject_key=subject_key,
                cause=e,
            )

        deleted = result.rowcount > 0
        if deleted:
            logger.info(f"Deleted sync state: {subject_key}")
        return deleted

    async def list_states(
        self,
        status: Optional[str] = None,
        session: Optional[AsyncSession] = None,
    ) -> List[SyncState]:
        """List persisted states, optionally filtered by status."""
        try:
            async with self._get_session(session) as sess:
                stmt = select(SyncStateModel).order_by(SyncStateModel.subject_key)
                if status:
                    stmt = stmt.where(SyncStateModel.status == status)
                result = await sess.execute(stmt)
                models = list(result.scalars().all())
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list sync states: {e}", cause=e)

        return [SyncState.from_dict(m.state) for m in models]

    # --------------------------------------------------------
    # HELPERS
    # --------------------------------------------------------

    @asynccontextmanager
    async def _get_session(self, session: Optional[AsyncSession]):
        """Get or create a session."""
        if session:
            yield session
        else:
            async with self._session_factory() as sess:
                yield sess
