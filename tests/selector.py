from datetime import UTC, datetime, timedelta

import pytest
import pytz
from pytest_assume.plugin import assume

from app.helpers.selector import select_due, select_overdue


def test_example_morning(make_block, now: datetime) -> None:
    """
    Only the block starting in the lookahead window is due.

    Blocks: one in 5 mins, one in 15 mins, one which started this morning.
    """
    in_window = make_block(now + timedelta(minutes=5))
    after_window = make_block(now + timedelta(minutes=15))
    past = make_block(datetime(2024, 1, 16, 8, 0, tzinfo=UTC))

    res = select_due(
        blocks=[after_window, past, in_window],
        lookahead_min=10,
        now=now,
    )

    assert res == [in_window]


def test_midnight(make_block) -> None:
    """
    A block starting just before midnight is due, whatever the day of the other blocks.
    """
    now = datetime(2024, 1, 16, 23, 55, tzinfo=UTC)
    spanning = make_block(
        datetime(2024, 1, 16, 23, 58, tzinfo=UTC),
        duration=timedelta(minutes=12),
    )
    # Same time of day as a due block, but on another day
    other_day_before = make_block(datetime(2024, 1, 16, 0, 5, tzinfo=UTC))
    other_day_after = make_block(datetime(2024, 1, 18, 0, 5, tzinfo=UTC))
    yesterday = make_block(datetime(2024, 1, 15, 23, 58, tzinfo=UTC))

    res = select_due(
        blocks=[other_day_before, other_day_after, spanning, yesterday],
        lookahead_min=10,
        now=now,
    )
    assume(res == [spanning])

    # Next day block starting in the window is due too
    next_day = make_block(datetime(2024, 1, 17, 0, 5, tzinfo=UTC))
    res = select_due(
        blocks=[next_day, other_day_before, spanning],
        lookahead_min=10,
        now=now,
    )
    assume(res == [spanning, next_day])


def test_window_bounds(make_block, now: datetime) -> None:
    """
    Both bounds of the window are included, anything outside is excluded.
    """
    at_now = make_block(now)
    at_end = make_block(now + timedelta(minutes=10))
    just_before = make_block(now - timedelta(seconds=1))
    just_after = make_block(now + timedelta(minutes=10, seconds=1))

    res = select_due(
        blocks=[just_after, at_end, just_before, at_now],
        lookahead_min=10,
        now=now,
    )

    assert res == [at_now, at_end]


def test_notified_excluded(make_block, now: datetime) -> None:
    block = make_block(now + timedelta(minutes=5), notified=True)

    assert select_due(blocks=[block], lookahead_min=10, now=now) == []


def test_sorted(make_block, now: datetime) -> None:
    """
    Results are sorted by start, then by identifier.
    """
    blocks = [
        make_block(now + timedelta(minutes=minutes)) for minutes in (9, 1, 5, 5, 3)
    ]

    res = select_due(blocks=blocks, lookahead_min=10, now=now)

    assume([block.start for block in res] == sorted(block.start for block in blocks))
    same_start = [block for block in res if block.start == now + timedelta(minutes=5)]
    assume(
        [str(block.block_id) for block in same_start]
        == sorted(str(block.block_id) for block in same_start)
    )


def test_zero_lookahead(make_block, now: datetime) -> None:
    """
    With no lookahead, only a block starting exactly now is due.
    """
    at_now = make_block(now)
    soon = make_block(now + timedelta(minutes=1))

    assert select_due(blocks=[soon, at_now], lookahead_min=0, now=now) == [at_now]


def test_empty(now: datetime) -> None:
    assert select_due(blocks=[], lookahead_min=10, now=now) == []


def test_idempotent(make_block, now: datetime) -> None:
    blocks = [make_block(now + timedelta(minutes=minutes)) for minutes in (2, 4, 20)]

    first = select_due(blocks=blocks, lookahead_min=10, now=now)
    second = select_due(blocks=blocks, lookahead_min=10, now=now)

    assume(first == second)
    assume(len(blocks) == 3)  # Input is left untouched


def test_other_timezone(make_block, now: datetime) -> None:
    """
    Instants are compared as absolute, whatever the timezone they are expressed in.
    """
    block = make_block(now + timedelta(minutes=5))
    # 15:20 in India is 09:50 UTC
    now_india = pytz.timezone("Asia/Kolkata").localize(datetime(2024, 1, 16, 15, 20))

    assert select_due(blocks=[block], lookahead_min=10, now=now_india) == [block]


def test_negative_lookahead(now: datetime) -> None:
    with pytest.raises(ValueError):
        select_due(blocks=[], lookahead_min=-1, now=now)


def test_naive_now() -> None:
    with pytest.raises(ValueError):
        select_due(blocks=[], lookahead_min=10, now=datetime(2024, 1, 16, 9, 50))


def test_overdue(make_block, now: datetime) -> None:
    """
    Blocks which started less than the grace period ago are overdue, not due.
    """
    started = make_block(now - timedelta(minutes=5))
    too_old = make_block(now - timedelta(minutes=31))
    at_limit = make_block(now - timedelta(minutes=30))
    upcoming = make_block(now)
    notified = make_block(now - timedelta(minutes=1), notified=True)

    res = select_overdue(
        blocks=[started, too_old, at_limit, upcoming, notified],
        grace_min=30,
        now=now,
    )

    assert res == [at_limit, started]


def test_overdue_disabled(make_block, now: datetime) -> None:
    block = make_block(now - timedelta(minutes=5))

    assert select_overdue(blocks=[block], grace_min=0, now=now) == []
