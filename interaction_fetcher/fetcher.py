"""
Interaction Fetcher - Every interaction with one contract over a block range.

Strategy:
1. Events-first: logs over the range, then hydrate the emitting
   transactions in bounded batches
2. Direct scan: read block bodies to find calls that emitted no log
   (whole range up to `direct_scan_cap`; larger ranges fall back to a
   capped scan of the newest blocks, reported as block-scan)
3. Degradation: when whole-range log retrieval fails, salvage logs in
   chunks and block-scan the newest `block_scan_cap` blocks

Sub-fetch failures never abort a fetch: they mark the result partial.
Non-retryable errors always propagate.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, List, Optional, Sequence, Tuple, TypeVar, Union

from chain_clients.base import ChainClient
from chain_clients.models import Chain, RawBlock, RawLog, RawTransaction
from chain_clients.registry import ChainClientRegistry, get_default_registry
from core.exceptions import IndexerError, InvalidRange, PartialFailure
from interaction_fetcher.config import FetcherConfig, get_config
from interaction_fetcher.models import (
    FetchMethod,
    InteractionResult,
    InteractionSummary,
    InteractionType,
    NormalizedTransaction,
)
from interaction_fetcher.normalizer import AbiLike, AbiSelectorIndex, normalize, normalize_event


logger = logging.getLogger(__name__)


T = TypeVar("T")


@dataclass
class _FetchContext:
    """Mutable bookkeeping for one fetch."""
    chain: str
    from_block: int
    to_block: int
    failed_items: int = 0
    partial: bool = False

    def record_failure(self, count: int, error: BaseException) -> None:
        self.failed_items += count
        self.partial = True
        logger.warning(f"[{self.chain}] Sub-fetch failed ({count} item(s)): {error}")

    def in_range(self, block_number: int) -> bool:
        return self.from_block <= block_number <= self.to_block


class InteractionFetcher:
    """
    Fetches transactions and events addressed to a contract.

    Usage:
        fetcher = InteractionFetcher(registry)
        result = await fetcher.fetch(address, "ethereum", 1000, 1010, abi)
        print(result.summary.total_transactions)
    """

    def __init__(
        self,
        clients: Optional[ChainClientRegistry] = None,
        config: Optional[FetcherConfig] = None,
    ) -> None:
        self._clients = clients or get_default_registry()
        self._config = config or get_config()

    @property
    def config(self) -> FetcherConfig:
        return self._config

    def client_for(self, chain: Union[Chain, str]) -> ChainClient:
        """Chain client used for `chain`."""
        return self._clients.get(chain)

    async def fetch(
        self,
        address: str,
        chain: Union[Chain, str],
        from_block: int,
        to_block: int,
        abi: AbiLike = None,
    ) -> InteractionResult:
        """
        Fetch every interaction with `address` in [from_block, to_block].

        Raises:
            InvalidRange: Negative bound or from_block > to_block
            InvalidAddress: The chain rejects the address format
            UnsupportedChainError: Unknown chain
        """
        self._validate_range(from_block, to_block)

        client = self.client_for(chain)
        contract = client.require_address(address)
        index = abi if isinstance(abi, AbiSelectorIndex) else AbiSelectorIndex.from_abi(abi, client.family)

        ctx = _FetchContext(chain=client.chain, from_block=from_block, to_block=to_block)
        range_length = to_block - from_block + 1

        logs, logs_complete = await self._collect_logs(client, contract, ctx)
        # Chunked salvage and lenient providers can repeat a log
        unique_logs: Dict[Tuple[str, int], RawLog] = {}
        for log in logs:
            if ctx.in_range(log.block_number):
                unique_logs.setdefault((log.transaction_hash, log.log_index), log)
        logs = list(unique_logs.values())

        if logs_complete:
            scan_cap = self._config.direct_scan_cap
            # Past the cap the direct step degrades to a capped block scan
            method = FetchMethod.EVENTS_FIRST if range_length <= scan_cap else FetchMethod.BLOCK_SCAN
        else:
            scan_cap = self._config.block_scan_cap
            method = FetchMethod.HYBRID if logs else FetchMethod.BLOCK_SCAN

        scan_from = max(from_block, to_block - scan_cap + 1)
        truncated = scan_from > from_block

        # Events-first: hydrate emitting transactions in log order
        event_hashes = list(dict.fromkeys(log.transaction_hash for log in logs))
        event_txs = await self._hydrate(client, event_hashes, ctx)

        # Direct scan: calls that emitted no log
        blocks = await self._scan_blocks(client, scan_from, to_block, ctx) if scan_cap > 0 else []
        seen = set(event_hashes)
        direct_bodies: Dict[str, RawTransaction] = {}
        for block in blocks:
            for tx in block.transactions:
                if tx.hash in seen or tx.hash in direct_bodies:
                    continue
                if tx.is_addressed_to(contract):
                    direct_bodies[tx.hash] = tx

        direct_txs = await self._hydrate(client, list(direct_bodies), ctx, fallback=direct_bodies)

        transactions = self._normalize_transactions(
            client, contract, index, ctx,
            event_txs, InteractionType.EVENT,
        ) + self._normalize_transactions(
            client, contract, index, ctx,
            direct_txs, InteractionType.DIRECT,
        )
        events = [normalize_event(log, client.chain, index) for log in logs]

        event_count = sum(1 for tx in transactions if tx.interaction_type == InteractionType.EVENT.value)
        summary = InteractionSummary(
            total_transactions=len(transactions),
            event_transactions=event_count,
            direct_transactions=len(transactions) - event_count,
            total_events=len(events),
            blocks_scanned=range_length,
            blocks_inspected=len(blocks),
            partial=ctx.partial,
            failed_items=ctx.failed_items,
            direct_scan_truncated=truncated,
            method=method,
        )

        logger.info(
            f"[{client.chain}] Fetched [{from_block}, {to_block}] for {contract}: "
            f"{summary.total_transactions} txs ({summary.event_transactions} event, "
            f"{summary.direct_transactions} direct), {summary.total_events} events, "
            f"method={method.value}"
            + (f", partial ({ctx.failed_items} failed)" if ctx.partial else "")
        )

        return InteractionResult(
            transactions=tuple(sorted(transactions, key=lambda tx: tx.block_number)),
            events=tuple(events),
            summary=summary,
        )

    # ─────────────────────────────────────────────────────────────
    # Validation
    # ─────────────────────────────────────────────────────────────

    @staticmethod
    def _validate_range(from_block: Any, to_block: Any) -> None:
        if not isinstance(from_block, int) or not isinstance(to_block, int) \
                or isinstance(from_block, bool) or isinstance(to_block, bool):
            raise InvalidRange(
                f"Block bounds must be integers, got {from_block!r}..{to_block!r}",
                from_block=from_block,
                to_block=to_block,
            )
        if from_block < 0 or to_block < 0:
            raise InvalidRange(
                f"Block bounds must be non-negative: [{from_block}, {to_block}]",
                from_block=from_block,
                to_block=to_block,
            )
        if from_block > to_block:
            raise InvalidRange(
                f"from_block {from_block} is after to_block {to_block}",
                from_block=from_block,
                to_block=to_block,
            )

    # ─────────────────────────────────────────────────────────────
    # Logs
    # ─────────────────────────────────────────────────────────────

    async def _collect_logs(
        self,
        client: ChainClient,
        contract: str,
        ctx: _FetchContext,
    ) -> Tuple[List[RawLog], bool]:
        """
        Logs over the whole range.

        Returns:
            (logs, complete) where complete is False when the
            whole-range query failed and logs were salvaged in chunks
        """
        try:
            logs = await client.get_logs(contract, ctx.from_block, ctx.to_block)
            return logs, True
        except IndexerError as e:
            if not e.is_retryable:
                raise
            logger.warning(
                f"[{ctx.chain}] get_logs over [{ctx.from_block}, {ctx.to_block}] failed, "
                f"salvaging in chunks of {self._config.log_chunk_size}: {e}"
            )

        chunk = self._config.log_chunk_size
        ranges = [
            (start, min(start + chunk - 1, ctx.to_block))
            for start in range(ctx.from_block, ctx.to_block + 1, chunk)
        ]
        outcomes = await self._bounded([
            client.get_logs(contract, start, end) for start, end in ranges
        ])

        salvaged: List[RawLog] = []
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                self._raise_if_fatal(outcome)
                ctx.record_failure(1, outcome)
                continue
            salvaged.extend(outcome)

        return salvaged, False

    # ─────────────────────────────────────────────────────────────
    # Hydration & block scan
    # ─────────────────────────────────────────────────────────────

    async def _hydrate(
        self,
        client: ChainClient,
        hashes: Sequence[str],
        ctx: _FetchContext,
        fallback: Optional[Dict[str, RawTransaction]] = None,
    ) -> List[RawTransaction]:
        """
        Hydrate hashes in batches of `batch_size`.

        Hashes that fail are counted as failed items; when `fallback`
        holds a body-only record for a failed hash, that record is kept.
        """
        if not hashes:
            return []

        size = self._config.batch_size
        batches = [list(hashes[i:i + size]) for i in range(0, len(hashes), size)]
        outcomes = await self._bounded([
            client.get_transactions_by_hashes(batch) for batch in batches
        ])

        hydrated: Dict[str, RawTransaction] = {}
        failed: List[str] = []
        for batch, outcome in zip(batches, outcomes):
            if isinstance(outcome, PartialFailure):
                for tx in outcome.results:
                    hydrated[tx.hash] = tx
                failed.extend(outcome.failed)
                ctx.record_failure(len(outcome.failed), outcome)
            elif isinstance(outcome, BaseException):
                self._raise_if_fatal(outcome)
                failed.extend(batch)
                ctx.record_failure(len(batch), outcome)
            else:
                for tx in outcome:
                    hydrated[tx.hash] = tx

        result = []
        for tx_hash in hashes:
            if tx_hash in hydrated:
                result.append(hydrated[tx_hash])
            elif fallback and tx_hash in fallback:
                result.append(fallback[tx_hash])
        return result

    async def _scan_blocks(
        self,
        client: ChainClient,
        from_block: int,
        to_block: int,
        ctx: _FetchContext,
    ) -> List[RawBlock]:
        """Read block bodies in [from_block, to_block]; failed blocks are skipped."""
        numbers = list(range(from_block, to_block + 1))
        outcomes = await self._bounded([client.get_block(n) for n in numbers])

        blocks: List[RawBlock] = []
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                self._raise_if_fatal(outcome)
                ctx.record_failure(1, outcome)
                continue
            blocks.append(outcome)
        return blocks

    # ─────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────

    async def _bounded(self, coros: List[Awaitable[T]]) -> List[Union[T, BaseException]]:
        """Run coroutines with at most `max_concurrency` in flight."""
        semaphore = asyncio.Semaphore(self._config.max_concurrency)

        async def run(coro: Awaitable[T]) -> T:
            async with semaphore:
                return await coro

        return await asyncio.gather(*(run(c) for c in coros), return_exceptions=True)

    @staticmethod
    def _raise_if_fatal(error: BaseException) -> None:
        """Re-raise anything that is not a retryable indexer error."""
        if isinstance(error, IndexerError) and error.is_retryable:
            return
        raise error

    def _normalize_transactions(
        self,
        client: ChainClient,
        contract: str,
        index: AbiSelectorIndex,
        ctx: _FetchContext,
        raw_txs: Sequence[RawTransaction],
        interaction_type: InteractionType,
    ) -> List[NormalizedTransaction]:
        normalized = []
        for raw in raw_txs:
            if not ctx.in_range(raw.block_number):
                logger.debug(f"[{ctx.chain}] Dropping {raw.hash} at block {raw.block_number}, outside range")
                continue
            normalized.append(normalize(
                raw,
                client.chain,
                index,
                contract_address=contract,
                interaction_type=interaction_type.value,
            ))
        return normalized


__all__ = [
    "InteractionFetcher",
]
