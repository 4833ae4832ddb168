"""
Rate-limited request gate for metadata API calls

Token bucket admission with a concurrency ceiling, in front of a bounded
channel drained by a fixed pool of workers. The ceiling halves when the
upstream service rejects requests for rate limiting twice within a short
window.
"""

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class RequestState(Enum):
    """Lifecycle of one outbound call"""
    QUEUED = "queued"
    TOKEN_WAIT = "token_wait"
    ADMITTED = "admitted"
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
    FAILED = "failed"


class GateClosedError(Exception):
    """Raised when work is submitted to a gate that has been stopped."""
    pass


class TokenBucket:
    """
    Fixed-capacity permit pool.

    Refill is a hard reset to capacity, not an additive trickle: tokens that
    were not used during an interval do not carry over.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError("Token bucket capacity must be at least 1")
        self.capacity = capacity
        self.tokens = capacity

    def try_acquire(self) -> bool:
        """Take one token if available."""
        if self.tokens > 0:
            self.tokens -= 1
            return True
        return False

    def refill(self) -> None:
        self.tokens = self.capacity


@dataclass
class RequestTicket:
    """Tracks one submitted call through the gate"""
    id: int
    label: str = ""
    state: RequestState = RequestState.QUEUED
    history: List[RequestState] = field(default_factory=list)

    def advance(self, state: RequestState) -> None:
        self.history.append(self.state)
        self.state = state


@dataclass
class _WorkItem:
    ticket: RequestTicket
    fn: Callable[[], Awaitable[Any]]
    future: asyncio.Future


class RequestGate:
    """
    Admission control for outbound API calls

    A call is admitted only when a token is available and fewer than
    ``concurrency_limit`` calls are in flight. Calls that cannot be admitted
    wait in FIFO order; admission is re-evaluated whenever a slot frees up
    or the refill timer fires.

    Features:
    - Token bucket refilled to capacity every refill interval
    - Concurrency ceiling, halved on repeated rate-limit rejections
    - Bounded channel so producers block when the backlog is full
    - Per-call state tracking and statistics

    Example:
        gate = RequestGate(requests_per_second=4, max_concurrency=4)

        async def call():
            return await http_client.post(url, content=body)

        response = await gate.submit(call, label='games')

        # Upstream answered 429
        gate.record_rate_limit()

        await gate.stop()
    """

    def __init__(
        self,
        requests_per_second: int = 4,
        refill_interval: float = 1.0,
        max_concurrency: int = 4,
        adaptive: bool = True,
        rate_limit_window: float = 30.0,
        queue_size: int = 256,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize request gate

        Args:
            requests_per_second: Token bucket capacity per refill interval
            refill_interval: Seconds between hard refills
            max_concurrency: Initial concurrency ceiling and worker pool size
            adaptive: Halve the ceiling on repeated rate-limit rejections
            rate_limit_window: Seconds within which a second rejection halves
                the ceiling
            queue_size: Capacity of the work channel
            clock: Monotonic time source
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if refill_interval <= 0:
            raise ValueError("refill_interval must be positive")

        self.bucket = TokenBucket(requests_per_second)
        self.refill_interval = refill_interval
        self.max_concurrency = max_concurrency
        self.adaptive = adaptive
        self.rate_limit_window = rate_limit_window
        self.queue_size = queue_size
        self._clock = clock

        self._concurrency_limit = max_concurrency
        self._in_flight = 0
        self._last_rate_limit: Optional[float] = None

        self._channel: Optional[asyncio.Queue] = None
        self._condition: Optional[asyncio.Condition] = None
        self._workers: List[asyncio.Task] = []
        self._refill_task: Optional[asyncio.Task] = None
        self._closed = False
        self._ids = itertools.count(1)

        # Metrics
        self._submitted = 0
        self._completed = 0
        self._failed = 0
        self._rate_limit_hits = 0
        self._token_waits = 0

        logger.debug(
            "Request gate initialized: %s requests per %.2fs, max %s concurrent",
            requests_per_second,
            refill_interval,
            max_concurrency
        )

    @property
    def concurrency_limit(self) -> int:
        return self._concurrency_limit

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        """Start the worker pool and refill timer (idempotent, needs a running loop)."""
        if self._workers or self._closed:
            return

        self._channel = asyncio.Queue(maxsize=self.queue_size)
        self._condition = asyncio.Condition()
        self._workers = [
            asyncio.create_task(self._worker(), name=f"gate-worker-{i}")
            for i in range(self.max_concurrency)
        ]
        self._refill_task = asyncio.create_task(self._refill_loop(), name="gate-refill")

    async def submit(self, fn: Callable[[], Awaitable[Any]], label: str = "") -> Any:
        """
        Run an async call once the gate admits it.

        Args:
            fn: Zero-argument coroutine function performing the call
            label: Short description for logging

        Returns:
            Whatever ``fn`` returns

        Raises:
            GateClosedError: If the gate has been stopped
            Exception: Anything ``fn`` raises is propagated to the caller
        """
        if self._closed:
            raise GateClosedError("Request gate is closed")
        self.start()

        future = asyncio.get_running_loop().create_future()
        ticket = RequestTicket(id=next(self._ids), label=label)
        self._submitted += 1

        # Blocks while the channel is full
        await self._channel.put(_WorkItem(ticket=ticket, fn=fn, future=future))
        return await future

    async def refill(self) -> None:
        """Reset the bucket to capacity and wake waiting calls."""
        self.bucket.refill()
        if self._condition is not None:
            async with self._condition:
                self._condition.notify_all()

    def record_rate_limit(self, now: Optional[float] = None) -> int:
        """
        Register a rate-limit rejection from upstream.

        If the previous rejection happened less than ``rate_limit_window``
        seconds ago, the concurrency ceiling is halved (floor 1).

        Args:
            now: Timestamp of the rejection (defaults to the gate clock)

        Returns:
            Concurrency ceiling after the update
        """
        now = self._clock() if now is None else now
        self._rate_limit_hits += 1

        if (
            self.adaptive
            and self._last_rate_limit is not None
            and now - self._last_rate_limit < self.rate_limit_window
        ):
            old_limit = self._concurrency_limit
            self._concurrency_limit = max(1, old_limit // 2)
            if self._concurrency_limit != old_limit:
                logger.warning(
                    f"Repeated rate limiting: concurrency {old_limit} -> {self._concurrency_limit}"
                )

        self._last_rate_limit = now
        return self._concurrency_limit

    async def stop(self) -> None:
        """
        Stop admitting work.

        Queued calls are cancelled, in-flight calls are abandoned and their
        callers see ``asyncio.CancelledError``.
        """
        if self._closed:
            return
        self._closed = True

        if self._channel is not None:
            while not self._channel.empty():
                item = self._channel.get_nowait()
                item.ticket.advance(RequestState.FAILED)
                if not item.future.done():
                    item.future.cancel()
                self._channel.task_done()

        tasks = list(self._workers)
        if self._refill_task is not None:
            tasks.append(self._refill_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._workers = []
        self._refill_task = None
        logger.debug("Request gate stopped")

    async def __aenter__(self) -> "RequestGate":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _refill_loop(self) -> None:
        while True:
            await asyncio.sleep(self.refill_interval)
            await self.refill()

    def _can_admit(self) -> bool:
        return self.bucket.tokens > 0 and self._in_flight < self._concurrency_limit

    async def _admit(self) -> None:
        async with self._condition:
            if not self._can_admit():
                self._token_waits += 1
                await self._condition.wait_for(self._can_admit)
            self.bucket.try_acquire()
            self._in_flight += 1

    async def _release(self) -> None:
        self._in_flight -= 1
        async with self._condition:
            self._condition.notify_all()

    async def _worker(self) -> None:
        while True:
            item = await self._channel.get()
            try:
                await self._run(item)
            finally:
                self._channel.task_done()

    async def _run(self, item: _WorkItem) -> None:
        ticket = item.ticket
        if item.future.done():
            # Caller gave up while queued
            ticket.advance(RequestState.FAILED)
            return

        admitted = False
        try:
            ticket.advance(RequestState.TOKEN_WAIT)
            await self._admit()
            admitted = True
            ticket.advance(RequestState.ADMITTED)

            if item.future.done():
                ticket.advance(RequestState.FAILED)
                return

            ticket.advance(RequestState.IN_FLIGHT)
            result = await item.fn()
        except asyncio.CancelledError:
            ticket.advance(RequestState.FAILED)
            if not item.future.done():
                item.future.cancel()
            raise
        except Exception as e:
            ticket.advance(RequestState.FAILED)
            self._failed += 1
            if not item.future.done():
                item.future.set_exception(e)
        else:
            ticket.advance(RequestState.COMPLETED)
            self._completed += 1
            if not item.future.done():
                item.future.set_result(result)
        finally:
            if admitted:
                await self._release()

    def get_stats(self) -> Dict[str, Any]:
        """
        Get gate statistics

        Returns:
            Dict with bucket, concurrency and throughput counters
        """
        return {
            'capacity': self.bucket.capacity,
            'tokens': self.bucket.tokens,
            'refill_interval': self.refill_interval,
            'concurrency_limit': self._concurrency_limit,
            'max_concurrency': self.max_concurrency,
            'in_flight': self._in_flight,
            'queued': self._channel.qsize() if self._channel is not None else 0,
            'submitted': self._submitted,
            'completed': self._completed,
            'failed': self._failed,
            'token_waits': self._token_waits,
            'rate_limit_hits': self._rate_limit_hits,
        }
