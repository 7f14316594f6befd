"""
Chain Client Models - Chains, endpoints and family-neutral raw records.

Raw records are what every chain client hands to the interaction
fetcher. Addresses inside them are already normalized by the client
that produced them, so callers can compare them as plain strings.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Tuple, Union
from urllib.parse import urlparse

from core.exceptions import UnsupportedChainError


class ChainFamily(Enum):
    """RPC dialect family of a chain."""
    EVM = "evm"
    CAIRO = "cairo"


class Chain(Enum):
    """Supported blockchain networks."""
    ETHEREUM = "ethereum"
    LISK = "lisk"
    STARKNET = "starknet"

    @classmethod
    def from_value(cls, value: Union["Chain", str]) -> "Chain":
        """Resolve a chain from an enum member or a case-insensitive name."""
        if isinstance(value, Chain):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise UnsupportedChainError(
                message=f"Chain {value!r} is not supported",
                chain=str(value),
                supported_chains=[c.value for c in cls],
            )


@dataclass(frozen=True)
class ChainSpec:
    """Static description of a chain."""
    chain: Chain
    family: ChainFamily
    native_symbol: str
    native_decimals: int = 18
    chain_id: Optional[int] = None
    default_endpoints: Tuple[str, ...] = ()

    @property
    def rpc_env_var(self) -> str:
        """Environment variable holding comma-separated endpoint overrides."""
        return f"{self.chain.value.upper()}_RPC_URLS"


# ─────────────────────────────────────────────────────────────
# Endpoints
# ─────────────────────────────────────────────────────────────

@dataclass
class Endpoint:
    """
    One RPC endpoint with its health bookkeeping.

    Mutated only by the EndpointPool, under `_lock`.
    """
    url: str
    chain_family: ChainFamily
    name: str = ""
    priority: int = 0
    consecutive_failures: int = 0
    success_rate: float = 1.0
    last_latency_ms: Optional[float] = None
    cooldown_until: Optional[float] = None  # unix seconds
    total_requests: int = 0
    total_failures: int = 0
    last_error: Optional[str] = None
    last_success_at: Optional[datetime] = None

    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.name:
            # Provider URLs often embed API keys in the path; log the host only
            self.name = urlparse(self.url).hostname or self.url

    def is_cooling_down(self, now: float) -> bool:
        """Check if the endpoint is excluded from selection at `now`."""
        with self._lock:
            return self.cooldown_until is not None and now < self.cooldown_until

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        with self._lock:
            return {
                "name": self.name,
                "chain_family": self.chain_family.value,
                "priority": self.priority,
                "consecutive_failures": self.consecutive_failures,
                "success_rate": round(self.success_rate, 4),
                "last_latency_ms": self.last_latency_ms,
                "cooldown_until": self.cooldown_until,
                "total_requests": self.total_requests,
                "total_failures": self.total_failures,
                "last_error": self.last_error,
                "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            }


@dataclass(frozen=True)
class EndpointOutcome:
    """Result of one call against an endpoint."""
    success: bool
    latency_ms: Optional[float] = None
    error: Optional[BaseException] = None

    @classmethod
    def ok(cls, latency_ms: Optional[float] = None) -> "EndpointOutcome":
        return cls(success=True, latency_ms=latency_ms)

    @classmethod
    def failed(
        cls,
        error: BaseException,
        latency_ms: Optional[float] = None,
    ) -> "EndpointOutcome":
        return cls(success=False, latency_ms=latency_ms, error=error)


# ─────────────────────────────────────────────────────────────
# Raw records (family-neutral)
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RawLog:
    """A contract log/event as returned by a chain client."""
    transaction_hash: str
    log_index: int
    address: str
    block_number: int
    topics: Tuple[str, ...] = ()
    data: Tuple[str, ...] = ()
    block_hash: Optional[str] = None


@dataclass(frozen=True)
class RawTransaction:
    """
    A transaction as returned by a chain client.

    `calls` lists (target, selector) pairs: one pair for an EVM call,
    one per inner call for a Starknet multicall.
    `has_receipt` is False for transactions read from a block body,
    whose gas and status fields are not known yet.
    """
    hash: str
    block_number: int
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    value: int = 0
    gas_used: int = 0
    gas_price: int = 0
    status: bool = True
    input: str = "0x"
    calls: Tuple[Tuple[str, str], ...] = ()
    block_timestamp: Optional[int] = None
    nonce: Optional[int] = None
    tx_type: Optional[str] = None
    has_receipt: bool = False

    def is_addressed_to(self, address: str) -> bool:
        """Check if `address` is the direct recipient or an inner call target."""
        if self.to_address == address:
            return True
        return any(target == address for target, _ in self.calls)


@dataclass(frozen=True)
class RawBlock:
    """A block with its transaction bodies."""
    number: int
    timestamp: Optional[int]
    transactions: Tuple[RawTransaction, ...] = ()
