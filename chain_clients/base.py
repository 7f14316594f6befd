"""
Base Chain Client - Abstract interface for all chain RPC clients.

All clients MUST:
- Return family-neutral raw records (RawBlock, RawLog, RawTransaction)
- Normalize addresses before handing records out
- Raise typed errors from core.exceptions, never bare transport errors
- Never decide retry policy by matching on error messages
"""

import asyncio
import itertools
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import aiohttp

from chain_clients.config import ChainClientConfig, get_config
from chain_clients.endpoint_pool import EndpointPool
from chain_clients.models import (
    ChainFamily,
    ChainSpec,
    Endpoint,
    EndpointOutcome,
    RawBlock,
    RawLog,
    RawTransaction,
)
from core.clock import ClockProtocol
from core.exceptions import (
    ChainUnavailable,
    IndexerError,
    InvalidAddress,
    NetworkError,
    NoHealthyEndpoint,
    PartialFailure,
    ProtocolError,
    RateLimitError,
    RpcResponseError,
)


logger = logging.getLogger(__name__)


# Result shape checks handed to JsonRpcChainClient.call; they raise
# ValueError or TypeError on a malformed result
ResultParser = Callable[[Any], Any]


def expect_quantity(result: Any) -> int:
    """Non-negative integer from a hex quantity ('0x1a'), decimal string or int."""
    if result is None or isinstance(result, bool):
        raise ValueError(f"expected a quantity, got {result!r}")
    if isinstance(result, int):
        value = result
    else:
        text = str(result)
        value = int(text, 16) if text.startswith(("0x", "0X")) else int(text)
    if value < 0:
        raise ValueError(f"negative quantity: {value}")
    return value


def expect_object(result: Any) -> Dict[str, Any]:
    if not isinstance(result, dict):
        raise TypeError(f"expected an object, got {type(result).__name__}")
    return result


def expect_optional_object(result: Any) -> Optional[Dict[str, Any]]:
    """An object, or None when the node does not know the item (yet)."""
    return None if result is None else expect_object(result)


def expect_list(result: Any) -> List[Any]:
    if not isinstance(result, list):
        raise TypeError(f"expected a list, got {type(result).__name__}")
    return result


class ChainClient(ABC):
    """
    Abstract base class for all chain clients.

    Each client must implement:
    1. get_height() - Current head block number
    2. get_block() - Block with transaction bodies
    3. get_logs() - Logs emitted by one address over a range
    4. get_transactions_by_hashes() - Hydrate transactions with receipts
    5. is_valid_address() / normalize_address() - Address rules of the chain
    """

    def __init__(self, spec: ChainSpec) -> None:
        self._spec = spec

    @property
    def spec(self) -> ChainSpec:
        return self._spec

    @property
    def chain(self) -> str:
        """Chain name, e.g. 'ethereum'."""
        return self._spec.chain.value

    @property
    def family(self) -> ChainFamily:
        return self._spec.family

    @abstractmethod
    async def get_height(self) -> int:
        """Get the current head block number."""
        pass

    @abstractmethod
    async def get_block(self, number: int) -> RawBlock:
        """
        Get a block with its transaction bodies.

        Transactions read this way carry no receipt data
        (`has_receipt` is False).
        """
        pass

    @abstractmethod
    async def get_logs(
        self,
        address: str,
        from_block: int,
        to_block: int,
    ) -> List[RawLog]:
        """
        Get logs emitted by `address` within [from_block, to_block].

        Returns:
            Logs in chain order (block, then log index)
        """
        pass

    @abstractmethod
    async def get_transactions_by_hashes(
        self,
        hashes: Sequence[str],
    ) -> List[RawTransaction]:
        """
        Hydrate transactions, receipts included.

        Raises:
            PartialFailure: Some hashes failed; carries the successes
        """
        pass

    @abstractmethod
    def is_valid_address(self, address: str) -> bool:
        """Check the chain's address format."""
        pass

    @abstractmethod
    def normalize_address(self, address: str) -> str:
        """
        Canonical form of `address`.

        Raises:
            InvalidAddress: If the address fails the format check
        """
        pass

    def require_address(self, address: str) -> str:
        """Validate and normalize an address in one step."""
        if not isinstance(address, str) or not self.is_valid_address(address):
            raise InvalidAddress(
                f"Invalid {self.chain} address: {address!r}",
                address=str(address),
                chain=self.chain,
            )
        return self.normalize_address(address)

    async def health_check(self) -> bool:
        """Check that the chain answers a head query."""
        try:
            height = await self.get_height()
            return height >= 0
        except IndexerError as e:
            logger.warning(f"[{self.chain}] Health check failed: {e}")
            return False

    async def close(self) -> None:
        """Release resources held by the client."""
        pass

    async def __aenter__(self) -> "ChainClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


class JsonRpcChainClient(ChainClient):
    """
    JSON-RPC 2.0 transport with endpoint failover.

    Features:
    - One aiohttp session per client (unless injected)
    - Health-aware endpoint selection through an EndpointPool
    - NetworkError: report and rotate to the next endpoint
    - ProtocolError: one retry on the same endpoint, then rotate
    - Attempts bounded by `max_attempts`; exhaustion -> ChainUnavailable
    """

    def __init__(
        self,
        spec: ChainSpec,
        endpoints: Optional[Sequence[str]] = None,
        pool: Optional[EndpointPool] = None,
        config: Optional[ChainClientConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
        clock: Optional[ClockProtocol] = None,
    ) -> None:
        super().__init__(spec)
        self._config = config or get_config()

        if pool is None:
            pool = EndpointPool(
                chain=spec.chain.value,
                family=spec.family,
                urls=list(endpoints or spec.default_endpoints),
                config=self._config.pool,
                clock=clock,
            )
        self._pool = pool

        self._session = session
        self._owns_session = session is None
        self._request_ids = itertools.count(1)

        # Call statistics
        self._calls = 0
        self._failed_calls = 0
        self._failovers = 0

    @property
    def pool(self) -> EndpointPool:
        return self._pool

    # ─────────────────────────────────────────────────────────────
    # HTTP Helpers
    # ─────────────────────────────────────────────────────────────

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._config.request_timeout_seconds),
                headers=self._get_default_headers(),
            )
            self._owns_session = True
        return self._session

    def _get_default_headers(self) -> dict[str, str]:
        """Get default HTTP headers."""
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": self._config.user_agent,
        }

    async def _post_json(self, endpoint: Endpoint, payload: dict[str, Any]) -> Any:
        """
        POST a JSON-RPC payload and decode the body.

        Raises:
            RateLimitError: HTTP 429
            NetworkError: Transport failure, timeout or HTTP error status
            ProtocolError: Body is not JSON
        """
        session = await self._get_session()
        method = payload.get("method")

        try:
            async with session.post(endpoint.url, json=payload) as response:
                if response.status == 429:
                    retry_after = response.headers.get("Retry-After")
                    raise RateLimitError(
                        message=f"Rate limit exceeded on {endpoint.name}",
                        retry_after_seconds=float(retry_after) if retry_after and retry_after.isdigit() else None,
                        endpoint=endpoint.name,
                        status_code=429,
                        chain=self.chain,
                    )

                if response.status >= 400:
                    body = await response.text()
                    raise NetworkError(
                        message=f"HTTP {response.status}: {body[:200]}",
                        endpoint=endpoint.name,
                        status_code=response.status,
                        chain=self.chain,
                    )

                text = await response.text()

        except aiohttp.ClientError as e:
            raise NetworkError(
                message=f"Connection error: {e}",
                endpoint=endpoint.name,
                chain=self.chain,
                cause=e,
            )
        except asyncio.TimeoutError as e:
            raise NetworkError(
                message=f"Request timed out after {self._config.request_timeout_seconds}s",
                endpoint=endpoint.name,
                chain=self.chain,
                cause=e,
            )

        try:
            return json.loads(text)
        except ValueError as e:
            raise ProtocolError(
                message=f"Invalid JSON response: {text[:120]!r}",
                endpoint=endpoint.name,
                method=method,
                chain=self.chain,
                cause=e,
            )

    async def _send(self, endpoint: Endpoint, method: str, params: Any) -> Any:
        """Send one request to one endpoint and unwrap the result."""
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": next(self._request_ids),
        }
        body = await self._post_json(endpoint, payload)

        if not isinstance(body, dict):
            raise ProtocolError(
                message=f"Unexpected response shape: {type(body).__name__}",
                endpoint=endpoint.name,
                method=method,
                chain=self.chain,
            )

        error = body.get("error")
        if error is not None:
            if isinstance(error, dict):
                raise RpcResponseError(
                    message=str(error.get("message", "RPC error")),
                    code=error.get("code"),
                    endpoint=endpoint.name,
                    method=method,
                    chain=self.chain,
                )
            raise RpcResponseError(
                message=str(error),
                endpoint=endpoint.name,
                method=method,
                chain=self.chain,
            )

        if "result" not in body:
            raise ProtocolError(
                message="Response has neither result nor error",
                endpoint=endpoint.name,
                method=method,
                chain=self.chain,
            )

        return body["result"]

    # ─────────────────────────────────────────────────────────────
    # Failover
    # ─────────────────────────────────────────────────────────────

    async def call(
        self,
        method: str,
        params: Any = None,
        parse: Optional[ResultParser] = None,
    ) -> Any:
        """
        Call a JSON-RPC method with endpoint failover.

        Args:
            method: RPC method name
            params: Positional (list) or named (dict) params
            parse: Shape check applied to the result; a result it
                rejects counts as a ProtocolError of that endpoint

        Returns:
            The `result` member of the response (parsed when `parse`
            is given)

        Raises:
            NoHealthyEndpoint: Every endpoint is cooling down
            ChainUnavailable: All attempts were exhausted
        """
        if params is None:
            params = []

        self._calls += 1
        tried: List[str] = []
        last_error: Optional[IndexerError] = None
        endpoint: Optional[Endpoint] = None
        same_endpoint_retry = False
        attempts = 0

        while attempts < self._config.max_attempts:
            if not same_endpoint_retry:
                try:
                    endpoint = self._pool.select(exclude=tried)
                except NoHealthyEndpoint:
                    if not tried:
                        self._failed_calls += 1
                        raise
                    break
                if tried:
                    self._failovers += 1
                tried.append(endpoint.url)

            attempts += 1
            started = time.monotonic()
            try:
                result = await self._send(endpoint, method, params)
                if parse is not None:
                    result = self._parse_result(endpoint, method, result, parse)
            except ProtocolError as e:
                self._pool.report(endpoint, EndpointOutcome.failed(e, self._elapsed_ms(started)))
                last_error = e
                # Retry a malformed answer once on the same endpoint
                same_endpoint_retry = not same_endpoint_retry
                logger.debug(f"[{self.chain}] {method} protocol error on {endpoint.name}: {e.message}")
                continue
            except NetworkError as e:
                self._pool.report(endpoint, EndpointOutcome.failed(e, self._elapsed_ms(started)))
                last_error = e
                same_endpoint_retry = False
                logger.debug(f"[{self.chain}] {method} network error on {endpoint.name}: {e.message}")
                continue

            self._pool.report(endpoint, EndpointOutcome.ok(self._elapsed_ms(started)))
            return result

        self._failed_calls += 1
        names = [ep.name for ep in self._pool.endpoints if ep.url in tried]
        logger.warning(
            f"[{self.chain}] {method} failed after {attempts} attempts "
            f"on {len(tried)} endpoint(s): {last_error}"
        )
        raise ChainUnavailable(
            message=f"{method} failed on all attempted endpoints",
            attempted_endpoints=names,
            chain=self.chain,
            cause=last_error,
        )

    def _parse_result(
        self,
        endpoint: Endpoint,
        method: str,
        result: Any,
        parse: ResultParser,
    ) -> Any:
        try:
            return parse(result)
        except (TypeError, ValueError) as e:
            raise ProtocolError(
                message=f"Malformed {method} result: {e}",
                endpoint=endpoint.name,
                method=method,
                chain=self.chain,
                cause=e,
            )

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return round((time.monotonic() - started) * 1000, 2)

    async def _hydrate_many(
        self,
        hashes: Sequence[str],
        fetch_one: Callable[[str], Awaitable[RawTransaction]],
    ) -> List[RawTransaction]:
        """
        Hydrate hashes one by one, tolerating transient per-hash failures.

        Raises:
            PartialFailure: Some succeeded and some failed
            IndexerError: Every hash failed (the last error) or a
                non-retryable error occurred
        """
        results: List[RawTransaction] = []
        failed: List[str] = []
        last_error: Optional[BaseException] = None

        for tx_hash in hashes:
            try:
                results.append(await fetch_one(tx_hash))
            except IndexerError as e:
                if not e.is_retryable:
                    raise
                failed.append(tx_hash)
                last_error = e

        if failed and not results:
            raise last_error

        if failed:
            raise PartialFailure(
                message=f"{len(failed)} of {len(hashes)} transactions could not be fetched",
                results=results,
                failed=failed,
                chain=self.chain,
            )

        return results

    # ─────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────

    async def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def get_stats(self) -> dict[str, Any]:
        """Get client statistics."""
        return {
            "chain": self.chain,
            "calls": self._calls,
            "failed_calls": self._failed_calls,
            "failovers": self._failovers,
            "pool": self._pool.get_stats(),
        }
