"""
Core Module Package.

This package contains the infrastructure shared by every
indexer package.

Components:
- clock: Unified time abstraction
- exceptions: Error taxonomy with retry classification
"""

from .clock import ClockFactory, ClockProtocol, MockClock, SystemClock, now_utc
from .exceptions import (
    ChainUnavailable,
    ConfigurationError,
    CycleTimeout,
    ErrorClassification,
    IndexerError,
    InvalidAddress,
    InvalidRange,
    NetworkError,
    NoHealthyEndpoint,
    PartialFailure,
    ProtocolError,
    RateLimitError,
    RpcResponseError,
    StateTransitionError,
    StorageError,
    UnsupportedChainError,
    classify_exception,
    is_retryable,
)


__all__ = [
    "ClockFactory",
    "ClockProtocol",
    "MockClock",
    "SystemClock",
    "now_utc",
    "ErrorClassification",
    "IndexerError",
    "NetworkError",
    "RateLimitError",
    "ProtocolError",
    "RpcResponseError",
    "NoHealthyEndpoint",
    "ChainUnavailable",
    "PartialFailure",
    "CycleTimeout",
    "StorageError",
    "InvalidAddress",
    "InvalidRange",
    "UnsupportedChainError",
    "ConfigurationError",
    "StateTransitionError",
    "classify_exception",
    "is_retryable",
]
