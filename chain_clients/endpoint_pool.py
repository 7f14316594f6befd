"""
Endpoint Pool - Health-aware failover selection of RPC endpoints.

One pool per chain. Selection prefers the endpoint with the best
rolling success rate that is not cooling down; endpoints that keep
failing are excluded for an exponentially growing, capped window.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, Sequence

from chain_clients.config import EndpointPoolConfig
from chain_clients.models import ChainFamily, Endpoint, EndpointOutcome
from core.clock import ClockFactory, ClockProtocol
from core.exceptions import ConfigurationError, NoHealthyEndpoint


logger = logging.getLogger(__name__)


class EndpointPool:
    """
    Ordered set of RPC endpoints for one chain.

    Usage:
        pool = EndpointPool("ethereum", ChainFamily.EVM, urls)
        endpoint = pool.select()
        ...
        pool.report(endpoint, EndpointOutcome.ok(latency_ms))
    """

    def __init__(
        self,
        chain: str,
        family: ChainFamily,
        urls: Sequence[str],
        config: Optional[EndpointPoolConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ) -> None:
        if not urls:
            raise ConfigurationError(
                f"No RPC endpoints configured for {chain}",
                config_key=f"{chain.upper()}_RPC_URLS",
                chain=chain,
            )

        self._chain = chain
        self._family = family
        self._config = config or EndpointPoolConfig()
        self._clock = clock or ClockFactory.get_clock()

        # Configured order doubles as priority (lower = preferred)
        seen: set[str] = set()
        self._endpoints: List[Endpoint] = []
        for url in urls:
            if url in seen:
                continue
            seen.add(url)
            self._endpoints.append(
                Endpoint(url=url, chain_family=family, priority=len(self._endpoints))
            )

    @property
    def chain(self) -> str:
        return self._chain

    @property
    def endpoints(self) -> List[Endpoint]:
        """Endpoints in priority order."""
        return list(self._endpoints)

    def __len__(self) -> int:
        return len(self._endpoints)

    # ─────────────────────────────────────────────────────────────
    # Selection
    # ─────────────────────────────────────────────────────────────

    def select(self, exclude: Iterable[str] = ()) -> Endpoint:
        """
        Pick the healthiest endpoint.

        Args:
            exclude: Endpoint urls already tried for the current call

        Returns:
            Best endpoint not in cooldown and not excluded

        Raises:
            NoHealthyEndpoint: Every candidate is excluded or cooling down
        """
        excluded = set(exclude)
        now = self._clock.timestamp()

        candidates = [
            ep for ep in self._endpoints
            if ep.url not in excluded and not ep.is_cooling_down(now)
        ]

        if not candidates:
            raise NoHealthyEndpoint(
                f"No healthy endpoint for {self._chain} "
                f"({len(excluded)} excluded, {len(self._endpoints)} configured)",
                chain=self._chain,
                retry_after_seconds=self._next_recovery_in(now),
            )

        return min(candidates, key=lambda ep: (-ep.success_rate, ep.priority))

    def _next_recovery_in(self, now: float) -> Optional[float]:
        """Seconds until the first cooling endpoint becomes selectable again."""
        waits = [
            ep.cooldown_until - now
            for ep in self._endpoints
            if ep.cooldown_until is not None and ep.cooldown_until > now
        ]
        return round(min(waits), 3) if waits else None

    # ─────────────────────────────────────────────────────────────
    # Reporting
    # ─────────────────────────────────────────────────────────────

    def report(self, endpoint: Endpoint, outcome: EndpointOutcome) -> None:
        """Record the outcome of a call against `endpoint`."""
        alpha = self._config.success_rate_alpha

        with endpoint._lock:
            endpoint.total_requests += 1
            if outcome.latency_ms is not None:
                endpoint.last_latency_ms = outcome.latency_ms

            if outcome.success:
                recovered = endpoint.consecutive_failures > 0
                endpoint.consecutive_failures = 0
                endpoint.cooldown_until = None
                endpoint.success_rate = endpoint.success_rate * (1 - alpha) + alpha
                endpoint.last_success_at = datetime.now(timezone.utc)
                if recovered:
                    logger.info(f"[{self._chain}] Endpoint {endpoint.name} recovered")
                return

            endpoint.consecutive_failures += 1
            endpoint.total_failures += 1
            endpoint.success_rate = endpoint.success_rate * (1 - alpha)
            endpoint.last_error = str(outcome.error) if outcome.error else "unknown error"

            failures = endpoint.consecutive_failures
            if failures >= self._config.failure_threshold:
                cooldown = min(
                    self._config.cooldown_max_seconds,
                    self._config.cooldown_base_seconds
                    * (2 ** (failures - self._config.failure_threshold)),
                )
                endpoint.cooldown_until = self._clock.timestamp() + cooldown
                logger.warning(
                    f"[{self._chain}] Endpoint {endpoint.name} cooling down for "
                    f"{cooldown:.1f}s after {failures} consecutive failures"
                )

    # ─────────────────────────────────────────────────────────────
    # Introspection
    # ─────────────────────────────────────────────────────────────

    def healthy_count(self) -> int:
        """Number of endpoints currently selectable."""
        now = self._clock.timestamp()
        return sum(1 for ep in self._endpoints if not ep.is_cooling_down(now))

    def get_stats(self) -> dict[str, Any]:
        """Get pool statistics."""
        return {
            "chain": self._chain,
            "family": self._family.value,
            "configured": len(self._endpoints),
            "healthy": self.healthy_count(),
            "endpoints": [ep.to_dict() for ep in self._endpoints],
        }

    def reset(self) -> None:
        """Forget all health history."""
        for ep in self._endpoints:
            with ep._lock:
                ep.consecutive_failures = 0
                ep.success_rate = 1.0
                ep.cooldown_until = None
                ep.last_error = None
        logger.info(f"[{self._chain}] Endpoint pool reset")

    def __repr__(self) -> str:
        return f"<EndpointPool(chain={self._chain}, endpoints={len(self._endpoints)})>"
