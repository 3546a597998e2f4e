import asyncio
from datetime import datetime, timedelta
from uuid import uuid4

import pytest
from pytest_assume.plugin import assume

from app.models.error import StoreUnavailableError


@pytest.mark.asyncio
async def test_sent(email_mock, make_block, make_dispatcher, now: datetime, store) -> None:
    """
    A due block is notified once, with an email rendered in the display timezone.
    """
    block = await store.block_create(make_block(now + timedelta(minutes=5)))
    provider = email_mock()

    report = await make_dispatcher(providers=[provider]).dispatch(now)

    assume(report.attempted == 1)
    assume(report.sent == 1)
    assume(report.late == 0)
    assume(not report.failures)
    assume(not report.skipped)
    assume(len(provider.sent) == 1)
    email = provider.sent[0]
    assume(email["to"] == "ada@example.com")
    # 09:55 UTC is 15:25 in India
    assume(email["subject"] == f'🤫 Quiet Hours: "{block.description}" starting at 3:25 PM')
    assume("Tuesday, January 16th, 2024 at 3:25 PM" in email["text"])
    assume("60 minutes" in email["html"])
    stored = await store.block_get(block.block_id)
    assume(stored and stored.notified)
    assume(stored and not stored.claim_id)

    # Nothing left for the next run
    report = await make_dispatcher(providers=[provider]).dispatch(now)
    assume(report.attempted == 0)
    assume(len(provider.sent) == 1)


@pytest.mark.asyncio
async def test_nothing_due(email_mock, make_block, make_dispatcher, now: datetime, store) -> None:
    await store.block_create(make_block(now + timedelta(minutes=15)))
    await store.block_create(make_block(now + timedelta(minutes=5), notified=True))
    # Missed long ago, out of the grace period
    await store.block_create(make_block(now - timedelta(hours=2)))
    provider = email_mock()

    report = await make_dispatcher(providers=[provider]).dispatch(now)

    assume(report.attempted == 0)
    assume(report.sent == 0)
    assume(not provider.sent)


@pytest.mark.asyncio
async def test_fallback(email_mock, make_block, make_dispatcher, now: datetime, store) -> None:
    """
    When the first provider fails, the next one is used and no failure is reported.
    """
    block = await store.block_create(make_block(now + timedelta(minutes=5)))
    failing = email_mock(name="failing", fail=True)
    working = email_mock(name="working")

    report = await make_dispatcher(providers=[failing, working]).dispatch(now)

    assume(report.sent == 1)
    assume(not report.failures)
    assume(not failing.sent)
    assume(len(working.sent) == 1)
    stored = await store.block_get(block.block_id)
    assume(stored and stored.notified)


@pytest.mark.asyncio
async def test_first_provider_wins(email_mock, make_block, make_dispatcher, now: datetime, store) -> None:
    """
    Providers after the first successful one are never called.
    """
    await store.block_create(make_block(now + timedelta(minutes=5)))
    first = email_mock(name="first")
    second = email_mock(name="second")

    await make_dispatcher(providers=[first, second]).dispatch(now)

    assume(len(first.sent) == 1)
    assume(not second.sent)


@pytest.mark.asyncio
async def test_all_fail_then_retry(email_mock, make_block, make_dispatcher, now: datetime, store) -> None:
    """
    When all providers fail, the block stays not notified and is retried on the next run.
    """
    block = await store.block_create(make_block(now + timedelta(minutes=5)))
    first = email_mock(name="first", fail=True)
    second = email_mock(name="second", fail=True)
    dispatcher = make_dispatcher(providers=[first, second])

    report = await dispatcher.dispatch(now)

    assume(report.sent == 0)
    assume(len(report.failures) == 1)
    assume(report.failures[0].block_id == block.block_id)
    assume("first" in report.failures[0].reason)
    assume("second" in report.failures[0].reason)
    stored = await store.block_get(block.block_id)
    assume(stored and not stored.notified)
    assume(stored and not stored.claim_id)  # Lease released

    # Same instant, the block is retried
    report = await dispatcher.dispatch(now)
    assume(report.attempted == 1)
    assume(len(report.failures) == 1)

    # Provider is back
    second.fail = False
    report = await dispatcher.dispatch(now)
    assume(report.sent == 1)
    assume(not report.failures)
    stored = await store.block_get(block.block_id)
    assume(stored and stored.notified)


@pytest.mark.asyncio
@pytest.mark.repeat(10)  # Catch multi-threading and concurrency issues
async def test_concurrent(email_mock, make_block, make_dispatcher, now: datetime, store) -> None:
    """
    Two runs at the same time on the same due block send a single email.
    """
    block = await store.block_create(make_block(now + timedelta(minutes=5)))
    provider = email_mock(delay_sec=0.05)

    reports = await asyncio.gather(
        make_dispatcher(providers=[provider]).dispatch(now),
        make_dispatcher(providers=[provider]).dispatch(now),
    )

    assume(len(provider.sent) == 1)
    assume(sum(report.sent for report in reports) == 1)
    assume(sum(len(report.skipped) for report in reports) == 1)
    assume(any(block.block_id in report.skipped for report in reports))
    assume(not any(report.failures for report in reports))
    stored = await store.block_get(block.block_id)
    assume(stored and stored.notified)


@pytest.mark.asyncio
async def test_many_blocks(email_mock, make_block, make_dispatcher, now: datetime, store) -> None:
    """
    Blocks of several users are all processed, with a bounded concurrency.
    """
    for i in range(6):
        await store.block_create(
            make_block(
                now + timedelta(minutes=i + 1),
                duration=timedelta(seconds=50),
                owner_id="user-1" if i % 2 else "user-2",
            )
        )
    provider = email_mock(delay_sec=0.01)

    report = await make_dispatcher(providers=[provider], concurrency=2).dispatch(now)

    assume(report.attempted == 6)
    assume(report.sent == 6)
    assume(sorted({email["to"] for email in provider.sent}) == ["ada@example.com", "grace@example.com"])


@pytest.mark.asyncio
async def test_late(email_mock, make_block, make_dispatcher, now: datetime, store) -> None:
    """
    A block which started within the grace period gets a late reminder.
    """
    block = await store.block_create(make_block(now - timedelta(minutes=5)))
    provider = email_mock()

    report = await make_dispatcher(providers=[provider], grace_min=30).dispatch(now)

    assume(report.attempted == 1)
    assume(report.sent == 1)
    assume(report.late == 1)
    assume(len(provider.sent) == 1)
    assume(" started at " in provider.sent[0]["subject"])
    assume("already started" in provider.sent[0]["text"])
    stored = await store.block_get(block.block_id)
    assume(stored and stored.notified)


@pytest.mark.asyncio
async def test_late_disabled(email_mock, make_block, make_dispatcher, now: datetime, store) -> None:
    await store.block_create(make_block(now - timedelta(minutes=5)))
    provider = email_mock()

    report = await make_dispatcher(providers=[provider], grace_min=0).dispatch(now)

    assume(report.attempted == 0)
    assume(not provider.sent)


@pytest.mark.asyncio
async def test_unknown_owner(email_mock, make_block, make_dispatcher, now: datetime, store) -> None:
    """
    A block of an unknown user fails alone, the others are still sent.
    """
    orphan = await store.block_create(
        make_block(now + timedelta(minutes=2), owner_id="user-unknown")
    )
    block = await store.block_create(make_block(now + timedelta(minutes=5)))
    provider = email_mock()

    report = await make_dispatcher(providers=[provider]).dispatch(now)

    assume(report.attempted == 2)
    assume(report.sent == 1)
    assume([failure.block_id for failure in report.failures] == [orphan.block_id])
    stored = await store.block_get(block.block_id)
    assume(stored and stored.notified)
    stored_orphan = await store.block_get(orphan.block_id)
    assume(stored_orphan and not stored_orphan.notified)


@pytest.mark.asyncio
async def test_identity_down(email_mock, identity_down, make_block, make_dispatcher, now: datetime, store) -> None:
    """
    Identity errors are reported per block, the run itself succeeds.
    """
    block = await store.block_create(make_block(now + timedelta(minutes=5)))
    provider = email_mock()

    report = await make_dispatcher(
        identity_override=identity_down,
        providers=[provider],
    ).dispatch(now)

    assume(report.sent == 0)
    assume(len(report.failures) == 1)
    assume("Identity" in report.failures[0].reason)
    assume(not provider.sent)
    stored = await store.block_get(block.block_id)
    assume(stored and not stored.notified)
    assume(stored and not stored.claim_id)


@pytest.mark.asyncio
async def test_timeout(email_mock, make_block, make_dispatcher, now: datetime, store) -> None:
    """
    A hanging provider is abandoned after the timeout, the next one is used.
    """
    await store.block_create(make_block(now + timedelta(minutes=5)))
    hanging = email_mock(name="hanging", delay_sec=5)
    working = email_mock(name="working")

    report = await make_dispatcher(
        providers=[hanging, working],
        timeout_sec=0.1,
    ).dispatch(now)

    assume(report.sent == 1)
    assume(not hanging.sent)
    assume(len(working.sent) == 1)


@pytest.mark.asyncio
async def test_lease(email_mock, make_block, make_dispatcher, now: datetime, store) -> None:
    """
    A block held by another run is skipped, until the lease expires.
    """
    block = await store.block_create(make_block(now + timedelta(minutes=5)))
    assert await store.block_try_claim(
        block=block,
        claim_id=uuid4(),
        expires_at=now + timedelta(minutes=1),
        now=now,
    )
    provider = email_mock()
    dispatcher = make_dispatcher(providers=[provider])

    report = await dispatcher.dispatch(now)
    assume(report.skipped == [block.block_id])
    assume(not provider.sent)

    # Lease expired, the other run probably crashed
    report = await dispatcher.dispatch(now + timedelta(minutes=2))
    assume(report.sent == 1)
    assume(len(provider.sent) == 1)


@pytest.mark.asyncio
async def test_store_unavailable(email_mock, make_dispatcher, monkeypatch, now: datetime, store) -> None:
    """
    The whole run fails if the blocks cannot be listed.
    """

    async def _unavailable():
        raise StoreUnavailableError("Mocked outage")

    monkeypatch.setattr(store, "block_list_not_notified", _unavailable)

    with pytest.raises(StoreUnavailableError):
        await make_dispatcher(providers=[email_mock()]).dispatch(now)


def test_no_provider(make_dispatcher) -> None:
    with pytest.raises(ValueError):
        make_dispatcher(providers=[])


@pytest.mark.asyncio
async def test_provider_crash(email_mock, make_block, make_dispatcher, now: datetime, store) -> None:
    """
    A provider raising an unexpected error is skipped like a failing one, the next provider is used.
    """
    block = await store.block_create(make_block(now + timedelta(minutes=5)))
    crashing = email_mock(name="crashing")

    async def _crash(**kwargs) -> None:
        raise RuntimeError("Connection reset by peer")

    crashing.send = _crash
    working = email_mock(name="working")

    report = await make_dispatcher(providers=[crashing, working]).dispatch(now)

    assume(report.sent == 1)
    assume(not report.failures)
    assume(len(working.sent) == 1)
    stored = await store.block_get(block.block_id)
    assume(stored and stored.notified)
