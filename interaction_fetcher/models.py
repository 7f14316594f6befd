"""
Interaction Fetcher Models - Canonical records produced by one fetch.

Records are frozen; `canonical_bytes()` gives a byte-stable
serialization (sorted keys, no whitespace) used to verify that the
same raw input always normalizes to the same output.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class FetchMethod(Enum):
    """Strategy a fetch ended up using."""
    EVENTS_FIRST = "events-first"
    HYBRID = "hybrid"
    BLOCK_SCAN = "block-scan"


class InteractionType(Enum):
    """How a transaction was discovered."""
    EVENT = "event"
    DIRECT = "direct"


def _canonical(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


@dataclass(frozen=True)
class NormalizedTransaction:
    """A transaction in canonical form. `hash` is the unique key."""
    hash: str
    block_number: int
    timestamp_utc: Optional[datetime]
    from_address: Optional[str]
    to_address: Optional[str]
    value_wei: int
    gas_used: int
    gas_price_wei: int
    status: bool
    method_id: Optional[str]
    function_name: str
    chain: str
    interaction_type: str = InteractionType.EVENT.value
    value_native: Decimal = Decimal(0)
    fee_native: Decimal = Decimal(0)

    @property
    def fee_wei(self) -> int:
        return self.gas_used * self.gas_price_wei

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-safe dictionary (big integers as strings)."""
        return {
            "hash": self.hash,
            "block_number": self.block_number,
            "timestamp_utc": self.timestamp_utc.isoformat() if self.timestamp_utc else None,
            "from_address": self.from_address,
            "to_address": self.to_address,
            "value_wei": str(self.value_wei),
            "gas_used": str(self.gas_used),
            "gas_price_wei": str(self.gas_price_wei),
            "status": self.status,
            "method_id": self.method_id,
            "function_name": self.function_name,
            "chain": self.chain,
            "interaction_type": self.interaction_type,
            "value_native": str(self.value_native),
            "fee_native": str(self.fee_native),
        }

    def canonical_bytes(self) -> bytes:
        return _canonical(self.to_dict())


@dataclass(frozen=True)
class NormalizedEvent:
    """A contract event in canonical form. `unique_key` identifies it."""
    transaction_hash: str
    log_index: int
    unique_key: str
    address: str
    topics: Tuple[str, ...]
    data: Tuple[str, ...]
    block_number: int
    chain: str
    event_name: str = "unknown"

    @property
    def dedup_key(self) -> Tuple[str, int]:
        return (self.transaction_hash, self.log_index)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "transaction_hash": self.transaction_hash,
            "log_index": self.log_index,
            "unique_key": self.unique_key,
            "address": self.address,
            "topics": list(self.topics),
            "data": list(self.data),
            "block_number": self.block_number,
            "chain": self.chain,
            "event_name": self.event_name,
        }

    def canonical_bytes(self) -> bytes:
        return _canonical(self.to_dict())


@dataclass(frozen=True)
class InteractionSummary:
    """Counters describing one fetch."""
    total_transactions: int = 0
    event_transactions: int = 0
    direct_transactions: int = 0
    total_events: int = 0
    blocks_scanned: int = 0
    blocks_inspected: int = 0
    partial: bool = False
    failed_items: int = 0
    direct_scan_truncated: bool = False
    method: FetchMethod = FetchMethod.EVENTS_FIRST

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_transactions": self.total_transactions,
            "event_transactions": self.event_transactions,
            "direct_transactions": self.direct_transactions,
            "total_events": self.total_events,
            "blocks_scanned": self.blocks_scanned,
            "blocks_inspected": self.blocks_inspected,
            "partial": self.partial,
            "failed_items": self.failed_items,
            "direct_scan_truncated": self.direct_scan_truncated,
            "method": self.method.value,
        }


@dataclass(frozen=True)
class InteractionResult:
    """
    Output of InteractionFetcher.fetch.

    `blocks_scanned` in the summary is the requested range length;
    `blocks_inspected` counts blocks whose bodies were actually read.
    """
    transactions: Tuple[NormalizedTransaction, ...] = ()
    events: Tuple[NormalizedEvent, ...] = ()
    summary: InteractionSummary = field(default_factory=InteractionSummary)

    @property
    def method(self) -> FetchMethod:
        return self.summary.method

    @property
    def partial(self) -> bool:
        return self.summary.partial

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "transactions": [tx.to_dict() for tx in self.transactions],
            "events": [ev.to_dict() for ev in self.events],
            "summary": self.summary.to_dict(),
            "method": self.method.value,
        }
