import asyncio

import pytest

from property_selection.errors import Cancelled
from property_selection.lifecycle import CancellationToken, RequestTracker, TokenPool


def test_token_pool_reuses_released_tokens():
    pool = TokenPool(size=2)
    token = pool.acquire()
    pool.release(token)
    assert pool.available == 1
    assert pool.acquire() is token
    assert pool.in_use == 1


def test_cancelled_tokens_are_not_returned_to_pool():
    pool = TokenPool(size=2)
    token = pool.acquire()
    token.cancel()
    pool.release(token)
    assert pool.available == 0
    assert pool.acquire() is not token


def test_pool_size_is_bounded():
    pool = TokenPool(size=2)
    tokens = [pool.acquire() for _ in range(4)]
    for token in tokens:
        pool.release(token)
    assert pool.available == 2


def test_cancel_all_aborts_tokens_in_use():
    pool = TokenPool()
    a, b = pool.acquire(), pool.acquire()
    pool.cancel_all()
    assert a.cancelled and b.cancelled
    assert pool.in_use == 0


def test_token_wait_resolves_on_cancel():
    async def scenario():
        token = CancellationToken()
        waiter = asyncio.ensure_future(token.wait())
        await asyncio.sleep(0)
        assert not waiter.done()
        token.cancel()
        await asyncio.wait_for(waiter, timeout=1)
        return token

    token = asyncio.run(scenario())
    with pytest.raises(Cancelled):
        token.raise_if_cancelled()
    token.reset()
    token.raise_if_cancelled()


def test_token_can_be_reused_across_event_loops():
    token = CancellationToken()

    async def cancel_and_wait():
        token.cancel()
        await token.wait()

    asyncio.run(cancel_and_wait())
    token.reset()
    asyncio.run(cancel_and_wait())


def test_request_ids_are_monotonic_and_stale_wins_over_cancelled():
    tracker = RequestTracker()
    first = tracker.begin()
    second = tracker.begin()
    assert second.request_id == first.request_id + 1
    assert tracker.check(second) == "active"
    first.token.cancel()
    assert tracker.check(first) == "stale"
    second.token.cancel()
    assert tracker.check(second) == "cancelled"
    assert tracker.is_current(second.request_id)
    assert not tracker.is_current(first.request_id)
