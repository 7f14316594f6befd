"""
Tests for the Endpoint Pool.

============================================================
PURPOSE
============================================================
- Selection order (success rate, then priority)
- Exponential capped cooldown after repeated failures
- Recovery on success

============================================================
"""

from datetime import datetime, timezone

import pytest

from chain_clients.config import EndpointPoolConfig
from chain_clients.endpoint_pool import EndpointPool
from chain_clients.models import ChainFamily, EndpointOutcome
from core.clock import MockClock
from core.exceptions import ConfigurationError, NetworkError, NoHealthyEndpoint


URLS = [
    "https://rpc-a.example",
    "https://rpc-b.example",
    "https://rpc-c.example",
]


@pytest.fixture
def clock():
    return MockClock(datetime(2025, 6, 1, tzinfo=timezone.utc))


@pytest.fixture
def pool(clock):
    config = EndpointPoolConfig(
        failure_threshold=2,
        cooldown_base_seconds=10.0,
        cooldown_max_seconds=40.0,
        success_rate_alpha=0.5,
    )
    return EndpointPool("ethereum", ChainFamily.EVM, URLS, config=config, clock=clock)


def fail(pool, endpoint, times=1):
    for _ in range(times):
        pool.report(endpoint, EndpointOutcome.failed(NetworkError("down"), latency_ms=5.0))


class TestConstruction:

    def test_requires_endpoints(self):
        with pytest.raises(ConfigurationError):
            EndpointPool("lisk", ChainFamily.EVM, [])

    def test_duplicates_are_dropped(self):
        pool = EndpointPool("lisk", ChainFamily.EVM, [URLS[0], URLS[0], URLS[1]])
        assert len(pool) == 2
        assert [ep.priority for ep in pool.endpoints] == [0, 1]

    def test_name_is_host_only(self):
        pool = EndpointPool("ethereum", ChainFamily.EVM, ["https://mainnet.example/v3/secret-key"])
        assert pool.endpoints[0].name == "mainnet.example"


class TestSelection:

    def test_prefers_configured_order(self, pool):
        assert pool.select().url == URLS[0]

    def test_exclude(self, pool):
        assert pool.select(exclude=[URLS[0]]).url == URLS[1]

    def test_prefers_higher_success_rate(self, pool):
        first = pool.endpoints[0]
        fail(pool, first)

        assert first.success_rate == pytest.approx(0.5)
        assert pool.select().url == URLS[1]

    def test_all_excluded_raises(self, pool):
        with pytest.raises(NoHealthyEndpoint) as exc_info:
            pool.select(exclude=URLS)
        assert exc_info.value.is_retryable


class TestCooldown:

    def test_below_threshold_no_cooldown(self, pool, clock):
        endpoint = pool.endpoints[0]
        fail(pool, endpoint)

        assert endpoint.consecutive_failures == 1
        assert endpoint.cooldown_until is None
        assert not endpoint.is_cooling_down(clock.timestamp())

    def test_cooldown_grows_exponentially_and_caps(self, pool, clock):
        endpoint = pool.endpoints[0]
        now = clock.timestamp()

        fail(pool, endpoint, times=2)
        assert endpoint.cooldown_until == pytest.approx(now + 10.0)

        fail(pool, endpoint)
        assert endpoint.cooldown_until == pytest.approx(now + 20.0)

        fail(pool, endpoint)
        assert endpoint.cooldown_until == pytest.approx(now + 40.0)

        fail(pool, endpoint)
        assert endpoint.cooldown_until == pytest.approx(now + 40.0)

    def test_cooling_endpoint_is_skipped_until_expiry(self, pool, clock):
        endpoint = pool.endpoints[0]
        fail(pool, endpoint, times=2)

        assert pool.select().url != URLS[0]
        assert pool.healthy_count() == 2

        clock.advance(seconds=11)

        assert pool.healthy_count() == 3

    def test_all_cooling_reports_retry_after(self, pool, clock):
        for endpoint in pool.endpoints:
            fail(pool, endpoint, times=2)
        clock.advance(seconds=4)

        with pytest.raises(NoHealthyEndpoint) as exc_info:
            pool.select()

        assert exc_info.value.retry_after_seconds == pytest.approx(6.0)

    def test_success_resets_failures_and_cooldown(self, pool, clock):
        endpoint = pool.endpoints[0]
        fail(pool, endpoint, times=3)

        pool.report(endpoint, EndpointOutcome.ok(latency_ms=12.5))

        assert endpoint.consecutive_failures == 0
        assert endpoint.cooldown_until is None
        assert endpoint.last_latency_ms == 12.5
        assert endpoint.total_failures == 3
        assert endpoint.total_requests == 4


class TestIntrospection:

    def test_stats(self, pool):
        fail(pool, pool.endpoints[1])
        stats = pool.get_stats()

        assert stats["chain"] == "ethereum"
        assert stats["family"] == "evm"
        assert stats["configured"] == 3
        assert stats["endpoints"][1]["consecutive_failures"] == 1
        assert stats["endpoints"][1]["last_error"] is not None

    def test_reset(self, pool):
        for endpoint in pool.endpoints:
            fail(pool, endpoint, times=2)

        pool.reset()

        assert pool.healthy_count() == 3
        assert all(ep.success_rate == 1.0 for ep in pool.endpoints)
