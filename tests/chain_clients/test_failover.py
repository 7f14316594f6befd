"""
Tests for JSON-RPC failover in JsonRpcChainClient.

The transport (`_post_json`) is patched per test; each fake
endpoint behaves according to a script keyed by url.
"""

from typing import Any, Callable, Dict, List
from unittest.mock import patch

import pytest

from chain_clients.config import ChainClientConfig, EndpointPoolConfig
from chain_clients.providers.evm import EvmChainClient
from chain_clients.registry import get_chain_spec
from core.exceptions import (
    ChainUnavailable,
    NetworkError,
    NoHealthyEndpoint,
    PartialFailure,
    ProtocolError,
)


URLS = ["https://one.example", "https://two.example", "https://three.example"]


def make_client(max_attempts: int = 4, failure_threshold: int = 3) -> EvmChainClient:
    config = ChainClientConfig(
        max_attempts=max_attempts,
        pool=EndpointPoolConfig(failure_threshold=failure_threshold),
    )
    return EvmChainClient(get_chain_spec("ethereum"), endpoints=URLS, config=config)


def scripted_transport(script: Dict[str, List[Any]]) -> Callable:
    """
    Build a `_post_json` replacement.

    Each url maps to a list of behaviours consumed in order (the last
    one repeats): an exception instance is raised, anything else is
    returned as the decoded body.
    """
    calls: Dict[str, int] = {}

    async def transport(endpoint, payload):
        index = calls.get(endpoint.url, 0)
        calls[endpoint.url] = index + 1
        steps = script[endpoint.url]
        step = steps[min(index, len(steps) - 1)]
        if isinstance(step, Exception):
            raise step
        if step == "result":
            return {"jsonrpc": "2.0", "id": payload["id"], "result": "0x10"}
        return step

    transport.calls = calls
    return transport


class TestFailover:

    @pytest.mark.asyncio
    async def test_network_errors_rotate_to_healthy_endpoint(self):
        client = make_client()
        transport = scripted_transport({
            URLS[0]: [NetworkError("refused")],
            URLS[1]: [NetworkError("reset")],
            URLS[2]: ["result"],
        })

        with patch.object(client, "_post_json", side_effect=transport):
            height = await client.get_height()

        assert height == 16
        first, second, third = client.pool.endpoints
        assert first.consecutive_failures == 1
        assert second.consecutive_failures == 1
        assert third.consecutive_failures == 0
        assert third.total_requests == 1
        assert client.get_stats()["failovers"] == 2

    @pytest.mark.asyncio
    async def test_protocol_error_retried_once_on_same_endpoint(self):
        client = make_client()
        transport = scripted_transport({
            URLS[0]: [{"jsonrpc": "2.0", "id": 1}, "result"],
            URLS[1]: ["result"],
            URLS[2]: ["result"],
        })

        with patch.object(client, "_post_json", side_effect=transport):
            assert await client.get_height() == 16

        assert transport.calls == {URLS[0]: 2}

    @pytest.mark.asyncio
    async def test_repeated_protocol_error_rotates(self):
        client = make_client()
        transport = scripted_transport({
            URLS[0]: [ProtocolError("garbage")],
            URLS[1]: ["result"],
            URLS[2]: ["result"],
        })

        with patch.object(client, "_post_json", side_effect=transport):
            assert await client.get_height() == 16

        assert transport.calls == {URLS[0]: 2, URLS[1]: 1}

    @pytest.mark.asyncio
    async def test_rpc_error_object_is_protocol_error(self):
        client = make_client()
        error_body = {"jsonrpc": "2.0", "id": 1, "error": {"code": -32005, "message": "limit exceeded"}}
        transport = scripted_transport({
            URLS[0]: [error_body],
            URLS[1]: ["result"],
            URLS[2]: ["result"],
        })

        with patch.object(client, "_post_json", side_effect=transport):
            assert await client.get_height() == 16

        assert client.pool.endpoints[0].consecutive_failures == 2
        assert "limit exceeded" in client.pool.endpoints[0].last_error

    @pytest.mark.asyncio
    async def test_exhaustion_raises_chain_unavailable(self):
        client = make_client()
        transport = scripted_transport({url: [NetworkError("down")] for url in URLS})

        with patch.object(client, "_post_json", side_effect=transport):
            with pytest.raises(ChainUnavailable) as exc_info:
                await client.get_height()

        error = exc_info.value
        assert error.is_retryable
        assert error.attempted_endpoints == ["one.example", "two.example", "three.example"]
        assert isinstance(error.cause, NetworkError)
        assert client.get_stats()["failed_calls"] == 1

    @pytest.mark.asyncio
    async def test_attempts_are_bounded(self):
        client = make_client(max_attempts=2)
        transport = scripted_transport({url: [NetworkError("down")] for url in URLS})

        with patch.object(client, "_post_json", side_effect=transport):
            with pytest.raises(ChainUnavailable):
                await client.get_height()

        assert sum(transport.calls.values()) == 2

    @pytest.mark.asyncio
    async def test_all_cooling_raises_no_healthy_endpoint(self):
        client = make_client(failure_threshold=1)
        transport = scripted_transport({url: [NetworkError("down")] for url in URLS})

        with patch.object(client, "_post_json", side_effect=transport):
            with pytest.raises(ChainUnavailable):
                await client.get_height()
            with pytest.raises(NoHealthyEndpoint):
                await client.get_height()

        assert client.pool.healthy_count() == 0


class TestHydration:

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_successes(self):
        client = make_client()

        async def fetch_one(tx_hash):
            if tx_hash == "0xbad":
                raise ChainUnavailable("gone")
            return tx_hash

        with pytest.raises(PartialFailure) as exc_info:
            await client._hydrate_many(["0x1", "0xbad", "0x2"], fetch_one)

        assert exc_info.value.results == ["0x1", "0x2"]
        assert exc_info.value.failed == ["0xbad"]

    @pytest.mark.asyncio
    async def test_all_failed_reraises_last_error(self):
        client = make_client()

        async def fetch_one(tx_hash):
            raise ChainUnavailable(f"gone {tx_hash}")

        with pytest.raises(ChainUnavailable, match="gone 0x2"):
            await client._hydrate_many(["0x1", "0x2"], fetch_one)
