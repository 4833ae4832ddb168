import asyncio

import pytest

from romshelf.api.gate import (
    GateClosedError,
    RequestGate,
    RequestState,
    RequestTicket,
    TokenBucket,
)


def _returning(value):
    async def call():
        return value
    return call


@pytest.mark.unit
def test_token_bucket_refill_is_a_hard_reset():
    bucket = TokenBucket(2)
    assert bucket.try_acquire()
    assert bucket.try_acquire()
    assert not bucket.try_acquire()
    bucket.refill()
    assert bucket.tokens == 2
    bucket.refill()
    assert bucket.tokens == 2

    with pytest.raises(ValueError):
        TokenBucket(0)


@pytest.mark.unit
def test_ticket_history():
    ticket = RequestTicket(id=1)
    ticket.advance(RequestState.TOKEN_WAIT)
    ticket.advance(RequestState.ADMITTED)
    assert ticket.state == RequestState.ADMITTED
    assert ticket.history == [RequestState.QUEUED, RequestState.TOKEN_WAIT]


@pytest.mark.unit
def test_invalid_gate_settings():
    with pytest.raises(ValueError):
        RequestGate(max_concurrency=0)
    with pytest.raises(ValueError):
        RequestGate(refill_interval=0)


@pytest.mark.asyncio
async def test_calls_beyond_capacity_wait_for_refill():
    async with RequestGate(requests_per_second=2, refill_interval=60, max_concurrency=4) as gate:
        tasks = [asyncio.create_task(gate.submit(_returning(i))) for i in range(3)]
        await asyncio.sleep(0.05)
        assert sum(t.done() for t in tasks) == 2
        assert gate.get_stats()['token_waits'] >= 1

        await gate.refill()
        results = await asyncio.wait_for(asyncio.gather(*tasks), timeout=1)

    assert sorted(results) == [0, 1, 2]
    assert gate.get_stats()['completed'] == 3


@pytest.mark.asyncio
async def test_in_flight_never_exceeds_ceiling():
    release = asyncio.Event()
    active = 0
    peak = 0

    async def slow():
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await release.wait()
        active -= 1
        return True

    async with RequestGate(requests_per_second=10, refill_interval=60, max_concurrency=2) as gate:
        tasks = [asyncio.create_task(gate.submit(slow)) for _ in range(5)]
        await asyncio.sleep(0.05)
        assert gate.in_flight == 2
        release.set()
        results = await asyncio.wait_for(asyncio.gather(*tasks), timeout=1)

    assert results == [True] * 5
    assert peak == 2


@pytest.mark.asyncio
async def test_call_errors_reach_the_caller():
    async def failing():
        raise ValueError("boom")

    async with RequestGate(refill_interval=60) as gate:
        with pytest.raises(ValueError, match="boom"):
            await gate.submit(failing)
        assert await gate.submit(_returning("after")) == "after"

    stats = gate.get_stats()
    assert stats['failed'] == 1
    assert stats['completed'] == 1
    assert stats['in_flight'] == 0


@pytest.mark.asyncio
async def test_submit_after_stop_is_rejected():
    gate = RequestGate(refill_interval=60)
    await gate.submit(_returning(1))
    await gate.stop()
    assert gate.closed
    with pytest.raises(GateClosedError):
        await gate.submit(_returning(2))


@pytest.mark.asyncio
async def test_stop_cancels_waiting_calls():
    gate = RequestGate(requests_per_second=1, refill_interval=60, max_concurrency=2)
    first = asyncio.create_task(gate.submit(_returning("first")))
    second = asyncio.create_task(gate.submit(_returning("second")))
    await asyncio.sleep(0.05)

    assert await first == "first"
    assert not second.done()

    await gate.stop()
    with pytest.raises(asyncio.CancelledError):
        await second


@pytest.mark.unit
def test_repeated_rate_limits_halve_concurrency():
    gate = RequestGate(max_concurrency=8)
    assert gate.record_rate_limit(now=0.0) == 8
    assert gate.record_rate_limit(now=5.0) == 4
    assert gate.record_rate_limit(now=10.0) == 2
    # Outside the window: no change
    assert gate.record_rate_limit(now=100.0) == 2
    assert gate.record_rate_limit(now=101.0) == 1
    assert gate.record_rate_limit(now=102.0) == 1
    assert gate.get_stats()['rate_limit_hits'] == 6


@pytest.mark.unit
def test_non_adaptive_gate_keeps_ceiling():
    gate = RequestGate(max_concurrency=4, adaptive=False)
    gate.record_rate_limit(now=0.0)
    gate.record_rate_limit(now=1.0)
    assert gate.concurrency_limit == 4
