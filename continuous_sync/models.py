"""
Continuous Sync - ORM Models.

============================================================
PURPOSE
============================================================
SQLAlchemy ORM model persisting the sync state document of
each subject (account:chain:contract).

The full state, dedup sets included, lives in one JSON
column; a few fields are mirrored into columns for querying.

============================================================
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import (
    BigInteger,
    DateTime,
    Float,
    Integer,
    JSON,
    String,
)
from sqlalchemy.orm import Mapped, declarative_base, mapped_column


Base = declarative_base()


class SyncStateModel(Base):
    """Persisted sync state of one subject."""

    __tablename__ = "sync_states"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    subject_key: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )
    """account:chain:contract"""

    session_id: Mapped[str] = mapped_column(String(36), nullable=False)

    account_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    chain: Mapped[str] = mapped_column(String(30), nullable=False)

    contract_address: Mapped[str] = mapped_column(String(80), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    """running, completed, failed or stopped."""

    last_processed_block: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    cycle_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    data_integrity_score: Mapped[float] = mapped_column(Float, nullable=False, default=100.0)

    state: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    """SyncState.to_dict() document."""

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<SyncStateModel(subject_key={self.subject_key}, status={self.status}, "
            f"last_processed_block={self.last_processed_block})>"
        )
