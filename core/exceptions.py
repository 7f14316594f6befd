"""
Core Module - Exceptions.

============================================================
RESPONSIBILITY
============================================================
Defines the error taxonomy shared by chain clients, the
interaction fetcher and the continuous sync engine.

- Retry policy is decided by exception TYPE, never by
  matching on messages
- Every error carries a classification (transient or not)
- Includes chain/endpoint context for debugging

============================================================
EXCEPTION HIERARCHY
============================================================
IndexerError (base)
├── NetworkError                 TRANSIENT
│   └── RateLimitError           TRANSIENT
├── ProtocolError                TRANSIENT
│   └── RpcResponseError         TRANSIENT
├── NoHealthyEndpoint            TRANSIENT
├── ChainUnavailable             TRANSIENT
├── PartialFailure               TRANSIENT
├── CycleTimeout                 TRANSIENT
├── StorageError                 TRANSIENT
├── StateTransitionError         NON_RECOVERABLE
├── InvalidAddress               NON_RECOVERABLE
├── InvalidRange                 NON_RECOVERABLE
├── UnsupportedChainError        NON_RECOVERABLE
└── ConfigurationError           NON_RECOVERABLE

============================================================
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence


# ============================================================
# ERROR CLASSIFICATION
# ============================================================

class ErrorClassification(Enum):
    """Classification of error recoverability."""

    TRANSIENT = "transient"
    """Temporary error, retry after a delay may succeed."""

    NON_RECOVERABLE = "non_recoverable"
    """Permanent error, retrying the same request is pointless."""


# ============================================================
# BASE EXCEPTION
# ============================================================

class IndexerError(Exception):
    """
    Base exception for all indexer errors.

    All exceptions carry:
    - classification: drives retry decisions
    - chain: chain the failing call targeted (if any)
    - context: for debugging
    - timestamp: when the error occurred
    """

    default_classification: ErrorClassification = ErrorClassification.TRANSIENT

    def __init__(
        self,
        message: str,
        chain: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
        classification: Optional[ErrorClassification] = None,
    ):
        super().__init__(message)

        self.message = message
        self.chain = chain
        self.context = context or {}
        self.cause = cause
        self.classification = classification or self.default_classification
        self.timestamp = datetime.now(timezone.utc)

        if cause:
            self.context["cause_type"] = type(cause).__name__
            self.context["cause_message"] = str(cause)

    @property
    def is_retryable(self) -> bool:
        """Check if the failed operation may be retried."""
        return self.classification == ErrorClassification.TRANSIENT

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging/storage."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "chain": self.chain,
            "classification": self.classification.value,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "cause": str(self.cause) if self.cause else None,
        }

    def __str__(self) -> str:
        parts = [f"{type(self).__name__}: {self.message}"]
        if self.chain:
            parts.append(f"[chain={self.chain}]")
        if self.cause:
            parts.append(f"(caused by: {self.cause})")
        return " ".join(parts)


# ============================================================
# TRANSPORT ERRORS
# ============================================================

class NetworkError(IndexerError):
    """Endpoint unreachable, connection reset or request timed out."""

    def __init__(
        self,
        message: str,
        endpoint: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if endpoint:
            context["endpoint"] = endpoint
        if status_code is not None:
            context["status_code"] = status_code

        super().__init__(message, context=context, **kwargs)
        self.endpoint = endpoint
        self.status_code = status_code


class RateLimitError(NetworkError):
    """Endpoint answered HTTP 429."""

    def __init__(
        self,
        message: str,
        retry_after_seconds: Optional[float] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.retry_after_seconds = retry_after_seconds
        if retry_after_seconds is not None:
            self.context["retry_after_seconds"] = retry_after_seconds


class ProtocolError(IndexerError):
    """Malformed JSON-RPC response (bad JSON, missing result, wrong shape)."""

    def __init__(
        self,
        message: str,
        endpoint: Optional[str] = None,
        method: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if endpoint:
            context["endpoint"] = endpoint
        if method:
            context["method"] = method

        super().__init__(message, context=context, **kwargs)
        self.endpoint = endpoint
        self.method = method


class RpcResponseError(ProtocolError):
    """Endpoint answered with a JSON-RPC error object."""

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.code = code
        if code is not None:
            self.context["rpc_code"] = code


# ============================================================
# ENDPOINT / CHAIN AVAILABILITY
# ============================================================

class NoHealthyEndpoint(IndexerError):
    """
    Every endpoint of the chain is cooling down.

    Callers retry after a delay; this is never permanent.
    """

    def __init__(
        self,
        message: str,
        retry_after_seconds: Optional[float] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.retry_after_seconds = retry_after_seconds


class ChainUnavailable(IndexerError):
    """All endpoint attempts for a call were exhausted."""

    def __init__(
        self,
        message: str,
        attempted_endpoints: Optional[Sequence[str]] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        self.attempted_endpoints: List[str] = list(attempted_endpoints or [])
        context["attempted_endpoints"] = self.attempted_endpoints
        super().__init__(message, context=context, **kwargs)


class PartialFailure(IndexerError):
    """
    Some sub-fetches of a batch failed.

    Carries whatever succeeded so the caller can keep it.
    """

    def __init__(
        self,
        message: str,
        results: Optional[List[Any]] = None,
        failed: Optional[List[Any]] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.results = list(results or [])
        self.failed = list(failed or [])
        self.context["succeeded"] = len(self.results)
        self.context["failed"] = len(self.failed)


class CycleTimeout(IndexerError):
    """A sync cycle exceeded its deadline and was discarded."""

    def __init__(
        self,
        message: str,
        deadline_seconds: Optional[float] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.deadline_seconds = deadline_seconds


class StorageError(IndexerError):
    """Sync state could not be loaded or saved."""

    def __init__(
        self,
        message: str,
        subject_key: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if subject_key:
            context["subject_key"] = subject_key
        super().__init__(message, context=context, **kwargs)
        self.subject_key = subject_key


# ============================================================
# NON-RECOVERABLE ERRORS
# ============================================================

class InvalidAddress(IndexerError):
    """Address fails the chain's address-format check."""

    default_classification = ErrorClassification.NON_RECOVERABLE

    def __init__(self, message: str, address: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", {})
        if address is not None:
            context["address"] = address
        super().__init__(message, context=context, **kwargs)
        self.address = address


class InvalidRange(IndexerError):
    """Block range is negative or inverted."""

    default_classification = ErrorClassification.NON_RECOVERABLE

    def __init__(
        self,
        message: str,
        from_block: Optional[int] = None,
        to_block: Optional[int] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        context["from_block"] = from_block
        context["to_block"] = to_block
        super().__init__(message, context=context, **kwargs)
        self.from_block = from_block
        self.to_block = to_block


class UnsupportedChainError(IndexerError):
    """Requested chain has no registered client."""

    default_classification = ErrorClassification.NON_RECOVERABLE

    def __init__(
        self,
        message: str,
        supported_chains: Optional[List[str]] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.supported_chains = supported_chains or []
        self.context["supported_chains"] = self.supported_chains


class ConfigurationError(IndexerError):
    """Error in configuration."""

    default_classification = ErrorClassification.NON_RECOVERABLE

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if config_key:
            context["config_key"] = config_key
        super().__init__(message, context=context, **kwargs)
        self.config_key = config_key


class StateTransitionError(IndexerError):
    """Invalid sync phase transition."""

    default_classification = ErrorClassification.NON_RECOVERABLE

    def __init__(
        self,
        message: str,
        from_state: Optional[str] = None,
        to_state: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if from_state:
            context["from_state"] = from_state
        if to_state:
            context["to_state"] = to_state
        super().__init__(message, context=context, **kwargs)


# ============================================================
# EXCEPTION UTILITIES
# ============================================================

def classify_exception(exc: BaseException) -> ErrorClassification:
    """Classify an exception for retry decisions."""
    if isinstance(exc, IndexerError):
        return exc.classification

    if isinstance(exc, (ConnectionError, TimeoutError, OSError)):
        return ErrorClassification.TRANSIENT

    return ErrorClassification.NON_RECOVERABLE


def is_retryable(exc: BaseException) -> bool:
    """Check whether the operation that raised `exc` may be retried."""
    return classify_exception(exc) == ErrorClassification.TRANSIENT


__all__ = [
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
