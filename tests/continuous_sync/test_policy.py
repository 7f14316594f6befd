"""
Tests for the sync policies: block window, idempotent merge and
phase transitions.
"""

import pytest

from continuous_sync.merge import integrity_score, merge_result
from continuous_sync.state_machine import ALLOWED_TRANSITIONS, SyncStateMachine
from continuous_sync.types import SyncConfig, SyncPhase, SyncState, SyncStatus
from continuous_sync.window import compute_window
from core.exceptions import InvalidRange, StateTransitionError
from interaction_fetcher.models import (
    FetchMethod,
    InteractionResult,
    InteractionSummary,
    NormalizedEvent,
    NormalizedTransaction,
)


CONTRACT = "0x" + "ab" * 20


def make_tx(name: str, block: int = 1005, sender: str = "0x" + "11" * 20, kind: str = "event") -> NormalizedTransaction:
    return NormalizedTransaction(
        hash=f"0x{name}",
        block_number=block,
        timestamp_utc=None,
        from_address=sender,
        to_address=CONTRACT,
        value_wei=0,
        gas_used=21_000,
        gas_price_wei=1,
        status=True,
        method_id=None,
        function_name="unknown",
        chain="ethereum",
        interaction_type=kind,
    )


def make_event(name: str, index: int = 0, block: int = 1005) -> NormalizedEvent:
    return NormalizedEvent(
        transaction_hash=f"0x{name}",
        log_index=index,
        unique_key=f"{name}-{index}",
        address=CONTRACT,
        topics=(),
        data=(),
        block_number=block,
        chain="ethereum",
    )


def make_result(txs=(), events=(), partial=False, blocks=11) -> InteractionResult:
    return InteractionResult(
        transactions=tuple(txs),
        events=tuple(events),
        summary=InteractionSummary(
            total_transactions=len(txs),
            total_events=len(events),
            blocks_scanned=blocks,
            partial=partial,
            method=FetchMethod.EVENTS_FIRST,
        ),
    )


@pytest.fixture
def state():
    return SyncState.for_config(SyncConfig(CONTRACT, "ethereum"))


# ============================================================
# WINDOW
# ============================================================

class TestComputeWindow:

    def test_first_cycle(self):
        assert compute_window(1, 5000, None, 1000, 100, 10_000) == (4000, 5000)

    def test_first_cycle_near_genesis(self):
        assert compute_window(1, 300, None, 1000, 100, 10_000) == (0, 300)

    def test_head_advanced(self):
        assert compute_window(2, 5010, 5000, 1000, 100, 10_000) == (5001, 5010)

    def test_catch_up_is_clamped(self):
        assert compute_window(2, 90_000, 5000, 1000, 100, 10_000) == (5001, 15_000)

    def test_idle_look_back_grows(self):
        assert compute_window(3, 5000, 5000, 1000, 100, 10_000) == (3700, 5000)

    def test_idle_from_block_strictly_decreases_until_zero(self):
        starts = [compute_window(n, 5000, 5000, 1000, 100, 10_000)[0] for n in range(2, 60)]

        nonzero = [s for s in starts if s > 0]
        assert all(a > b for a, b in zip(nonzero, nonzero[1:]))
        assert starts[-1] == 0

    def test_idle_look_back_is_capped(self):
        starts = [compute_window(n, 5000, 5000, 1000, 100, 10_000, 2000)[0] for n in range(2, 30)]

        assert starts[:8] == sorted(starts[:8], reverse=True)
        assert compute_window(9, 5000, 5000, 1000, 100, 10_000, 2000) == (3100, 5000)
        assert compute_window(10, 5000, 5000, 1000, 100, 10_000, 2000) == (3000, 5000)
        assert compute_window(500, 5000, 5000, 1000, 100, 10_000, 2000) == (3000, 5000)
        assert min(starts) == 3000

    def test_bounds_hold(self):
        for n, head, last in [(1, 0, None), (4, 10, 10), (2, 10, 3), (9, 7, 12)]:
            from_block, to_block = compute_window(n, head, last, 5, 3, 4)
            assert 0 <= from_block <= to_block <= head

    def test_negative_head(self):
        with pytest.raises(InvalidRange):
            compute_window(1, -1, None, 1000, 100, 10_000)


# ============================================================
# MERGE
# ============================================================

class TestMerge:

    def test_integrity_score(self):
        assert integrity_score(0, 0) == 100.0
        assert integrity_score(4, 1) == 75.0
        assert integrity_score(3, 3) == 0.0

    def test_first_merge(self, state):
        result = make_result(
            txs=[make_tx("a"), make_tx("b", sender="0x" + "22" * 20, kind="direct")],
            events=[make_event("a", 0), make_event("a", 1)],
        )

        report, new_txs, new_events = merge_result(state, result, 1, 1000, 1010)

        assert report.new_transactions == 2
        assert report.new_events == 2
        assert report.new_users == 2
        assert report.duplicates == 0
        assert report.data_integrity_score == 100.0
        assert len(new_txs) == 2 and len(new_events) == 2

        summary = state.accumulated_summary
        assert summary.total_transactions == 2
        assert summary.event_transactions == 1
        assert summary.direct_transactions == 1
        assert summary.total_events == 2
        assert summary.unique_users == 2
        assert summary.blocks_scanned == 11
        assert state.last_processed_block == 1010
        assert state.cycle_count == 1
        assert state.last_cycle == report

    def test_merging_twice_is_idempotent(self, state):
        result = make_result(txs=[make_tx("a"), make_tx("b")], events=[make_event("a")])
        merge_result(state, result, 1, 1000, 1010)
        totals = state.accumulated_summary.to_dict()

        report, new_txs, new_events = merge_result(state, result, 2, 1000, 1010)

        assert report.items == report.duplicates == 3
        assert report.data_integrity_score == 0.0
        assert new_txs == [] and new_events == []
        after = state.accumulated_summary.to_dict()
        for key in ("total_transactions", "total_events", "unique_users"):
            assert after[key] == totals[key]
        assert after["duplicates_skipped"] == 3

    def test_overlapping_cycles(self, state):
        merge_result(state, make_result(txs=[make_tx("a"), make_tx("b")]), 1, 1000, 1010)

        report, new_txs, _ = merge_result(
            state,
            make_result(txs=[make_tx("b"), make_tx("c"), make_tx("d"), make_tx("e")]),
            2, 1011, 1020,
        )

        assert [tx.hash for tx in new_txs] == ["0xc", "0xd", "0xe"]
        assert report.duplicate_transactions == 1
        assert report.data_integrity_score == 75.0
        assert state.accumulated_summary.total_transactions == 5

    def test_empty_cycle_scores_100(self, state):
        report, _, _ = merge_result(state, make_result(), 1, 1000, 1010)
        assert report.items == 0
        assert report.data_integrity_score == 100.0

    def test_last_processed_block_never_moves_back(self, state):
        merge_result(state, make_result(), 1, 1000, 1010)
        merge_result(state, make_result(), 2, 900, 1005)
        assert state.last_processed_block == 1010

    def test_partial_cycles_counted(self, state):
        merge_result(state, make_result(partial=True), 1, 1000, 1010)
        assert state.accumulated_summary.partial_cycles == 1

    def test_state_document_round_trip(self, state):
        merge_result(state, make_result(txs=[make_tx("b"), make_tx("a")], events=[make_event("a")]), 1, 1000, 1010)

        data = state.to_dict()
        restored = SyncState.from_dict(data)

        assert data["dedup_tx_hashes"] == ["0xa", "0xb"]
        assert restored.dedup_tx_hashes == state.dedup_tx_hashes
        assert restored.dedup_event_keys == {"0xa:0"}
        assert restored.last_cycle == state.last_cycle
        assert restored.accumulated_summary == state.accumulated_summary


# ============================================================
# STATE MACHINE
# ============================================================

class TestSyncStateMachine:

    def test_happy_path(self):
        machine = SyncStateMachine()
        for phase in (SyncPhase.FETCHING, SyncPhase.MERGING, SyncPhase.REPORTING,
                      SyncPhase.FETCHING, SyncPhase.MERGING, SyncPhase.REPORTING,
                      SyncPhase.COMPLETED):
            machine.transition(phase)

        assert machine.is_terminal
        assert machine.status_for() == SyncStatus.COMPLETED
        assert len(machine.history) == 7

    def test_cannot_skip_merge(self):
        machine = SyncStateMachine()
        machine.transition(SyncPhase.FETCHING)

        with pytest.raises(StateTransitionError):
            machine.transition(SyncPhase.REPORTING)

    def test_no_stop_mid_merge(self):
        assert SyncPhase.STOPPED not in ALLOWED_TRANSITIONS[SyncPhase.MERGING]

    @pytest.mark.parametrize("terminal", [SyncPhase.STOPPED, SyncPhase.FAILED, SyncPhase.COMPLETED])
    def test_terminal_phases_are_final(self, terminal):
        machine = SyncStateMachine(initial_phase=terminal)
        for phase in SyncPhase:
            assert not machine.can_transition(phase)

    def test_running_status_for_active_phases(self):
        machine = SyncStateMachine()
        for phase in (SyncPhase.INIT, SyncPhase.FETCHING, SyncPhase.MERGING, SyncPhase.REPORTING):
            assert machine.status_for(phase) == SyncStatus.RUNNING

    def test_history_is_bounded(self):
        machine = SyncStateMachine(max_history_size=3)
        machine.transition(SyncPhase.FETCHING)
        for _ in range(5):
            machine.transition(SyncPhase.FETCHING)
        assert len(machine.history) == 3
