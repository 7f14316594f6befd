"""
Continuous Sync - Idempotent merge of a fetch result into session state.

Transactions are keyed by hash, events by (transaction_hash,
log_index). Records already in the dedup sets are counted as
duplicates and discarded.

data_integrity_score = 100 * (1 - duplicates / items) for the cycle
(100 when the cycle produced no items).

The merge has no await points: a cycle's state update is never
interleaved with cancellation.
"""

import logging
from typing import List, Tuple

from continuous_sync.types import CycleReport, SyncState, event_key
from interaction_fetcher.models import (
    InteractionResult,
    InteractionType,
    NormalizedEvent,
    NormalizedTransaction,
)


logger = logging.getLogger(__name__)


def integrity_score(items: int, duplicates: int) -> float:
    """Share of non-duplicate items as a percentage."""
    if items <= 0:
        return 100.0
    return round(100.0 * (1 - duplicates / items), 2)


def merge_result(
    state: SyncState,
    result: InteractionResult,
    cycle_number: int,
    from_block: int,
    to_block: int,
    duration_seconds: float = 0.0,
) -> Tuple[CycleReport, List[NormalizedTransaction], List[NormalizedEvent]]:
    """
    Merge `result` into `state`.

    Returns:
        (cycle report, new transactions, new events)
    """
    summary = state.accumulated_summary

    new_txs: List[NormalizedTransaction] = []
    duplicate_txs = 0
    users_before = len(state.dedup_user_addresses)
    for tx in result.transactions:
        if tx.hash in state.dedup_tx_hashes:
            duplicate_txs += 1
            continue
        state.dedup_tx_hashes.add(tx.hash)
        new_txs.append(tx)
        if tx.from_address:
            state.dedup_user_addresses.add(tx.from_address)

    new_events: List[NormalizedEvent] = []
    duplicate_events = 0
    for ev in result.events:
        key = event_key(ev.transaction_hash, ev.log_index)
        if key in state.dedup_event_keys:
            duplicate_events += 1
            continue
        state.dedup_event_keys.add(key)
        new_events.append(ev)

    new_users = len(state.dedup_user_addresses) - users_before
    items = len(result.transactions) + len(result.events)
    duplicates = duplicate_txs + duplicate_events
    score = integrity_score(items, duplicates)

    event_new = sum(1 for tx in new_txs if tx.interaction_type == InteractionType.EVENT.value)
    summary.total_transactions += len(new_txs)
    summary.event_transactions += event_new
    summary.direct_transactions += len(new_txs) - event_new
    summary.total_events += len(new_events)
    summary.unique_users = len(state.dedup_user_addresses)
    summary.blocks_scanned += result.summary.blocks_scanned
    summary.duplicates_skipped += duplicates
    if result.summary.partial:
        summary.partial_cycles += 1

    previous = state.last_processed_block
    state.last_processed_block = to_block if previous is None else max(previous, to_block)
    state.cycle_count = cycle_number
    state.data_integrity_score = score

    report = CycleReport(
        cycle_number=cycle_number,
        from_block=from_block,
        to_block=to_block,
        method=result.summary.method.value,
        new_transactions=len(new_txs),
        duplicate_transactions=duplicate_txs,
        new_events=len(new_events),
        duplicate_events=duplicate_events,
        new_users=new_users,
        items=items,
        duplicates=duplicates,
        data_integrity_score=score,
        partial=result.summary.partial,
        duration_seconds=round(duration_seconds, 3),
    )
    state.last_cycle = report

    if duplicates:
        logger.debug(
            f"[merge] {state.subject_key} cycle {cycle_number}: "
            f"{duplicates}/{items} duplicates skipped"
        )

    return report, new_txs, new_events
