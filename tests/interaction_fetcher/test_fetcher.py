"""
Tests for the Interaction Fetcher.

============================================================
PURPOSE
============================================================
Exercise strategy selection, degradation and partial results
against an in-memory chain.

TEST PRINCIPLES:
- Fake chain client, no network
- Sub-fetch failures mark the result partial, never abort it
- Non-retryable errors propagate

============================================================
"""

import re
from typing import Dict, List, Optional, Sequence, Set

import pytest

from chain_clients.base import ChainClient
from chain_clients.config import ChainClientConfig
from chain_clients.models import RawBlock, RawLog, RawTransaction
from chain_clients.registry import ChainClientRegistry, get_chain_spec
from core.exceptions import (
    ChainUnavailable,
    InvalidAddress,
    InvalidRange,
    NetworkError,
    PartialFailure,
    RpcResponseError,
)
from interaction_fetcher.config import FetcherConfig
from interaction_fetcher.fetcher import InteractionFetcher
from interaction_fetcher.models import FetchMethod


CONTRACT = "0x" + "ab" * 20
OTHER = "0x" + "cd" * 20
USER_A = "0x" + "a1" * 20
USER_B = "0x" + "b2" * 20


def tx_hash(n: int) -> str:
    return "0x" + format(n, "064x")


# ============================================================
# FAKE CHAIN
# ============================================================

class FakeChainClient(ChainClient):
    """
    In-memory EVM chain.

    - `logs_fail_over`: get_logs raises NetworkError for ranges longer
      than this many blocks
    - `fail_hashes`: hashes whose hydration fails
    - `fail_blocks`: blocks whose bodies cannot be read
    """

    _address_re = re.compile(r"^0x[0-9a-f]{40}$")

    def __init__(self) -> None:
        super().__init__(get_chain_spec("ethereum"))
        self.head = 2000
        self.logs: List[RawLog] = []
        self.transactions: Dict[str, RawTransaction] = {}
        self.block_bodies: Dict[int, List[RawTransaction]] = {}
        self.logs_fail_over: Optional[int] = None
        self.logs_always_fail = False
        self.fail_hashes: Set[str] = set()
        self.fail_blocks: Set[int] = set()
        self.blocks_read: List[int] = []
        self.log_queries: List[tuple] = []

    def add_transaction(self, tx: RawTransaction, in_body: bool = True) -> None:
        self.transactions[tx.hash] = tx
        if in_body:
            body = RawTransaction(
                hash=tx.hash,
                block_number=tx.block_number,
                from_address=tx.from_address,
                to_address=tx.to_address,
                value=tx.value,
                input=tx.input,
                calls=tx.calls,
            )
            self.block_bodies.setdefault(tx.block_number, []).append(body)

    async def get_height(self) -> int:
        return self.head

    async def get_block(self, number: int) -> RawBlock:
        self.blocks_read.append(number)
        if number in self.fail_blocks:
            raise ChainUnavailable(f"block {number} unavailable", chain=self.chain)
        return RawBlock(
            number=number,
            timestamp=1_700_000_000 + number,
            transactions=tuple(self.block_bodies.get(number, [])),
        )

    async def get_logs(self, address: str, from_block: int, to_block: int) -> List[RawLog]:
        self.log_queries.append((from_block, to_block))
        span = to_block - from_block + 1
        if self.logs_always_fail or (self.logs_fail_over is not None and span > self.logs_fail_over):
            raise RpcResponseError("query returned more than 10000 results", code=-32005, chain=self.chain)
        # Providers may return logs just outside the range
        return [log for log in self.logs if from_block - 1 <= log.block_number <= to_block + 1]

    async def get_transactions_by_hashes(self, hashes: Sequence[str]) -> List[RawTransaction]:
        found = [self.transactions[h] for h in hashes if h not in self.fail_hashes]
        failed = [h for h in hashes if h in self.fail_hashes]
        if failed and not found:
            raise NetworkError("hydration failed", chain=self.chain)
        if failed:
            raise PartialFailure("some hashes failed", results=found, failed=failed, chain=self.chain)
        return found

    def is_valid_address(self, address: str) -> bool:
        return isinstance(address, str) and bool(self._address_re.match(address.lower()))

    def normalize_address(self, address: str) -> str:
        return address.lower()


def make_tx(n: int, block: int, sender: str = USER_A, to: str = CONTRACT, selector: str = "0xa9059cbb") -> RawTransaction:
    tx_input = selector + "00" * 64 if selector else "0x"
    return RawTransaction(
        hash=tx_hash(n),
        block_number=block,
        from_address=sender,
        to_address=to,
        value=0 if selector else 10 ** 17,
        gas_used=50_000,
        gas_price=2_000_000_000,
        input=tx_input,
        calls=((to, tx_input[:10]),) if selector else ((to, ""),),
        block_timestamp=1_700_000_000 + block,
        has_receipt=True,
    )


def make_log(n: int, block: int, index: int = 0) -> RawLog:
    return RawLog(
        transaction_hash=tx_hash(n),
        log_index=index,
        address=CONTRACT,
        block_number=block,
        topics=("0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef",),
    )


@pytest.fixture
def chain():
    """Two event-emitting calls and one plain transfer in [1000, 1010]."""
    fake = FakeChainClient()
    fake.add_transaction(make_tx(1, 1002))
    fake.add_transaction(make_tx(2, 1005, sender=USER_B))
    fake.add_transaction(make_tx(3, 1008, selector=""))
    fake.add_transaction(make_tx(4, 1008, to=OTHER))
    fake.logs = [make_log(1, 1002), make_log(2, 1005)]
    return fake


def make_fetcher(client: ChainClient, **overrides) -> InteractionFetcher:
    registry = ChainClientRegistry(config=ChainClientConfig())
    registry.register(client)
    return InteractionFetcher(registry, FetcherConfig(**overrides))


# ============================================================
# TESTS
# ============================================================

class TestEventsFirst:

    @pytest.mark.asyncio
    async def test_small_range_scenario(self, chain):
        fetcher = make_fetcher(chain)

        result = await fetcher.fetch(CONTRACT, "ethereum", 1000, 1010, abi=["transfer(address,uint256)"])

        summary = result.summary
        assert summary.total_transactions == 3
        assert summary.event_transactions == 2
        assert summary.direct_transactions == 1
        assert summary.total_events == 2
        assert summary.method == FetchMethod.EVENTS_FIRST
        assert not summary.partial
        assert not summary.direct_scan_truncated
        assert summary.blocks_scanned == 11
        assert summary.blocks_inspected == 11

        by_hash = {tx.hash: tx for tx in result.transactions}
        assert by_hash[tx_hash(1)].function_name == "transfer"
        assert by_hash[tx_hash(3)].interaction_type == "direct"
        assert by_hash[tx_hash(3)].function_name == "unknown"
        assert tx_hash(4) not in by_hash
        assert [tx.block_number for tx in result.transactions] == [1002, 1005, 1008]

    @pytest.mark.asyncio
    async def test_mixed_case_address_is_accepted(self, chain):
        fetcher = make_fetcher(chain)
        result = await fetcher.fetch(CONTRACT.upper().replace("0X", "0x"), "ethereum", 1000, 1010)
        assert result.summary.total_transactions == 3

    @pytest.mark.asyncio
    async def test_records_stay_within_range(self, chain):
        # Provider returns logs one block outside the range, and a
        # hydrated transaction that disagrees with its log's block
        chain.logs.append(make_log(5, 999))
        chain.logs.append(make_log(6, 1011))
        chain.logs.append(make_log(7, 1004))
        chain.add_transaction(make_tx(5, 999))
        chain.add_transaction(make_tx(6, 1011))
        chain.add_transaction(make_tx(7, 1300), in_body=False)
        fetcher = make_fetcher(chain)

        result = await fetcher.fetch(CONTRACT, "ethereum", 1000, 1010)

        assert all(1000 <= tx.block_number <= 1010 for tx in result.transactions)
        assert all(1000 <= ev.block_number <= 1010 for ev in result.events)
        assert tx_hash(7) not in {tx.hash for tx in result.transactions}

    @pytest.mark.asyncio
    async def test_hydration_is_batched(self, chain):
        for n in range(10, 30):
            chain.add_transaction(make_tx(n, 1001))
            chain.logs.append(make_log(n, 1001))
        fetcher = make_fetcher(chain, batch_size=4, max_concurrency=2)

        result = await fetcher.fetch(CONTRACT, "ethereum", 1000, 1010)

        assert result.summary.event_transactions == 22
        assert len({tx.hash for tx in result.transactions}) == len(result.transactions)


class TestLargeRange:

    @pytest.mark.asyncio
    async def test_large_range_falls_back_to_capped_block_scan(self, chain):
        chain.add_transaction(make_tx(8, 1500, selector=""))
        fetcher = make_fetcher(chain, direct_scan_cap=50)

        result = await fetcher.fetch(CONTRACT, "ethereum", 1000, 1999)

        summary = result.summary
        assert summary.method == FetchMethod.BLOCK_SCAN
        assert summary.direct_scan_truncated
        assert summary.blocks_scanned == 1000
        assert summary.blocks_inspected == 50
        assert min(chain.blocks_read) == 1950
        # Event transactions are found anywhere in the range
        assert summary.event_transactions == 2
        # The plain transfer at 1500 lies outside the inspected tail
        assert tx_hash(8) not in {tx.hash for tx in result.transactions}


class TestDegradation:

    @pytest.mark.asyncio
    async def test_logs_salvaged_in_chunks(self, chain):
        chain.logs_fail_over = 5
        fetcher = make_fetcher(chain, log_chunk_size=5, block_scan_cap=20)

        result = await fetcher.fetch(CONTRACT, "ethereum", 1000, 1010)

        assert result.method == FetchMethod.HYBRID
        assert result.summary.total_events == 2
        assert result.summary.total_transactions == 3
        assert (1000, 1004) in chain.log_queries
        assert (1010, 1010) in chain.log_queries
        assert not result.partial

    @pytest.mark.asyncio
    async def test_block_scan_when_no_logs(self, chain):
        chain.logs_always_fail = True
        fetcher = make_fetcher(chain, log_chunk_size=100, block_scan_cap=5)

        result = await fetcher.fetch(CONTRACT, "ethereum", 1000, 1010)

        summary = result.summary
        assert summary.method == FetchMethod.BLOCK_SCAN
        assert summary.partial
        assert summary.total_events == 0
        assert summary.blocks_inspected == 5
        assert summary.direct_scan_truncated
        # Only the plain transfer at 1008 is in the scanned tail [1006, 1010]
        assert [tx.hash for tx in result.transactions] == [tx_hash(3)]
        assert result.transactions[0].interaction_type == "direct"


class TestPartialResults:

    @pytest.mark.asyncio
    async def test_failed_hydration_marks_partial(self, chain):
        chain.fail_hashes = {tx_hash(2)}
        fetcher = make_fetcher(chain)

        result = await fetcher.fetch(CONTRACT, "ethereum", 1000, 1010)

        assert result.partial
        assert result.summary.failed_items == 1
        assert result.summary.event_transactions == 1
        assert result.summary.total_events == 2

    @pytest.mark.asyncio
    async def test_failed_direct_hydration_keeps_body(self, chain):
        chain.fail_hashes = {tx_hash(3)}
        fetcher = make_fetcher(chain)

        result = await fetcher.fetch(CONTRACT, "ethereum", 1000, 1010)

        assert result.partial
        direct = [tx for tx in result.transactions if tx.interaction_type == "direct"]
        assert [tx.hash for tx in direct] == [tx_hash(3)]

    @pytest.mark.asyncio
    async def test_failed_block_marks_partial(self, chain):
        chain.fail_blocks = {1008}
        fetcher = make_fetcher(chain)

        result = await fetcher.fetch(CONTRACT, "ethereum", 1000, 1010)

        assert result.partial
        assert result.summary.blocks_inspected == 10
        assert result.summary.direct_transactions == 0


class TestValidation:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("from_block, to_block", [(10, 5), (-1, 5), (0, -3), (True, 5), ("1", 5)])
    async def test_invalid_range(self, chain, from_block, to_block):
        fetcher = make_fetcher(chain)
        with pytest.raises(InvalidRange):
            await fetcher.fetch(CONTRACT, "ethereum", from_block, to_block)

    @pytest.mark.asyncio
    async def test_invalid_address(self, chain):
        fetcher = make_fetcher(chain)
        with pytest.raises(InvalidAddress):
            await fetcher.fetch("0x1234", "ethereum", 1000, 1010)
        assert chain.log_queries == []

    @pytest.mark.asyncio
    async def test_single_block_range(self, chain):
        fetcher = make_fetcher(chain)
        result = await fetcher.fetch(CONTRACT, "ethereum", 1008, 1008)
        assert result.summary.direct_transactions == 1
        assert result.summary.blocks_scanned == 1

    @pytest.mark.asyncio
    async def test_non_retryable_block_error_propagates(self, chain):
        async def broken_block(number):
            raise InvalidRange("bad block", from_block=number, to_block=number)

        chain.get_block = broken_block
        fetcher = make_fetcher(chain)

        with pytest.raises(InvalidRange):
            await fetcher.fetch(CONTRACT, "ethereum", 1000, 1010)
