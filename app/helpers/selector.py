from collections.abc import Iterable
from datetime import datetime, timedelta

from app.helpers.instants import ensure_aware
from app.models.block import QuietBlockStateModel


def select_due(
    now: datetime,
    lookahead_min: float,
    blocks: Iterable[QuietBlockStateModel],
) -> list[QuietBlockStateModel]:
    """
    Select the blocks to remind about now.

    A block is due if it has not been notified and starts in `[now, now + lookahead]`, both bounds included. Comparison is made on absolute instants, so a window crossing midnight or a day boundary behaves like any other.

    Returns the blocks sorted by start, then by identifier. Raises a `ValueError` if the lookahead is negative or if `now` has no timezone.
    """
    if lookahead_min < 0:
        raise ValueError(f"Lookahead must be positive, got {lookahead_min}")
    now = ensure_aware(now)
    window_end = now + timedelta(minutes=lookahead_min)
    return _sorted(
        block
        for block in blocks
        if not block.notified and now <= block.start <= window_end
    )


def select_overdue(
    now: datetime,
    grace_min: float,
    blocks: Iterable[QuietBlockStateModel],
) -> list[QuietBlockStateModel]:
    """
    Select the blocks whose reminder was missed, but can still be sent late.

    A block is overdue if it has not been notified and started in `[now - grace, now)`. A zero grace disables late reminders.

    Returns the blocks sorted by start, then by identifier.
    """
    if grace_min < 0:
        raise ValueError(f"Grace must be positive, got {grace_min}")
    now = ensure_aware(now)
    window_start = now - timedelta(minutes=grace_min)
    return _sorted(
        block
        for block in blocks
        if not block.notified and window_start <= block.start < now
    )


def _sorted(blocks: Iterable[QuietBlockStateModel]) -> list[QuietBlockStateModel]:
    return sorted(blocks, key=lambda block: (block.start, str(block.block_id)))
