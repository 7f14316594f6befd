"""
Continuous Sync - Block window policy.

Cycle 1:              [max(0, head - base_range), head]
Head advanced:        [last + 1, head], at most max_window_blocks long
Head not advanced:    [max(0, head - min(base_range + N * increment, max_lookback)), head]

When idle, the look-back grows by `increment` blocks per cycle
number until it reaches `max_lookback_blocks`; records seen before
are discarded by the merge step.
"""

from typing import Optional, Tuple

from core.exceptions import InvalidRange


def compute_window(
    cycle_number: int,
    head: int,
    last_processed_block: Optional[int],
    base_range: int,
    increment: int,
    max_window_blocks: int,
    max_lookback_blocks: Optional[int] = None,
) -> Tuple[int, int]:
    """
    Block range for a cycle.

    Args:
        cycle_number: 1-based cycle number
        head: Current chain head
        last_processed_block: Highest block merged so far (None before
            the first successful cycle)
        base_range: Look-back of the first cycle
        increment: Extra look-back per cycle number when idle
        max_window_blocks: Longest catch-up window
        max_lookback_blocks: Longest idle look-back (unbounded if None)

    Returns:
        (from_block, to_block) with 0 <= from_block <= to_block <= head
    """
    if head < 0:
        raise InvalidRange(f"Chain head is negative: {head}", from_block=None, to_block=head)

    if last_processed_block is None:
        return max(0, head - base_range), head

    if head > last_processed_block:
        from_block = last_processed_block + 1
        return from_block, min(head, from_block + max_window_blocks - 1)

    look_back = base_range + cycle_number * increment
    if max_lookback_blocks is not None:
        look_back = min(look_back, max_lookback_blocks)
    return max(0, head - look_back), head
