"""
SVGTrace Admission Gate.

Bounds how many CPU-bound conversions run at once. Callers past the limit
wait in a short FIFO queue; once the queue is full they are turned away
with a ``BusyError`` carrying a retry estimate.

The gate lives on one asyncio event loop. ``acquire`` checks and
increments the running count without suspending in between, and
``release`` hands a freed slot straight to the oldest waiter, so no two
acquirers can both slip past the limit and no waiter can be overtaken.

Usage:
    gate = AdmissionGate(max_concurrent=2, max_queued=8, estimated_job_ms=3000)

    async with gate.slot():
        ...  # CPU-bound work
"""

import asyncio
import itertools
import logging
import math
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Deque

from .config import ServiceConfig
from .errors import BusyError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GateSnapshot:
    running: int
    queued: int
    max_concurrent: int
    max_queued: int


class GateSlot:
    """Permission to run one job. Released exactly once; cannot be copied."""

    __slots__ = ("_gate", "_released", "id")

    def __init__(self, gate: "AdmissionGate", slot_id: int):
        self._gate = gate
        self._released = False
        self.id = slot_id

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        self._gate.release(self)

    def __copy__(self):
        raise TypeError("GateSlot cannot be copied")

    def __deepcopy__(self, memo):
        raise TypeError("GateSlot cannot be copied")

    def __repr__(self):
        state = "released" if self._released else "held"
        return f"<GateSlot #{self.id} {state}>"


class AdmissionGate:
    """
    Bounded-concurrency admission controller with a FIFO wait queue.

    Args:
        max_concurrent: Jobs allowed to hold a slot at the same time.
        max_queued: Callers allowed to wait for a slot.
        estimated_job_ms: Rough duration of one job, used for retry hints.
        retry_min_ms: Lower clamp of the retry hint.
        retry_max_ms: Upper clamp of the retry hint.
    """

    def __init__(
        self,
        max_concurrent: int,
        max_queued: int,
        estimated_job_ms: int,
        retry_min_ms: int = 1000,
        retry_max_ms: int = 15000,
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        if max_queued < 0:
            raise ValueError("max_queued must not be negative")
        self.max_concurrent = max_concurrent
        self.max_queued = max_queued
        self.estimated_job_ms = estimated_job_ms
        self.retry_min_ms = retry_min_ms
        self.retry_max_ms = retry_max_ms
        self._running = 0
        self._waiters: Deque[asyncio.Future] = deque()
        self._ids = itertools.count(1)

    @classmethod
    def from_config(cls, config: ServiceConfig) -> "AdmissionGate":
        return cls(
            max_concurrent=config.max_concurrent,
            max_queued=config.max_queued,
            estimated_job_ms=config.estimated_job_ms,
            retry_min_ms=config.retry_min_ms,
            retry_max_ms=config.retry_max_ms,
        )

    @property
    def running(self) -> int:
        return self._running

    @property
    def queued(self) -> int:
        return len(self._waiters)

    def snapshot(self) -> GateSnapshot:
        return GateSnapshot(self._running, len(self._waiters),
                            self.max_concurrent, self.max_queued)

    def estimate_retry_ms(self) -> int:
        """ceil((queued + 1) / max_concurrent) job durations, clamped."""
        waves = math.ceil((self.queued + 1) / self.max_concurrent)
        return min(self.retry_max_ms, max(self.retry_min_ms, waves * self.estimated_job_ms))

    def _grant(self) -> GateSlot:
        self._running += 1
        slot = GateSlot(self, next(self._ids))
        logger.debug("gate: granted slot #%d (running=%d, queued=%d)",
                     slot.id, self._running, self.queued)
        return slot

    async def acquire(self) -> GateSlot:
        """
        Take a slot, waiting in line if all slots are busy.

        Returns:
            A held GateSlot.

        Raises:
            BusyError: The wait queue is already full.
        """
        if self._running < self.max_concurrent and not self._waiters:
            return self._grant()

        if len(self._waiters) >= self.max_queued:
            retry_ms = self.estimate_retry_ms()
            logger.info("gate: rejecting request, queue full (running=%d, queued=%d, retry_after_ms=%d)",
                        self._running, self.queued, retry_ms)
            raise BusyError(retry_ms)

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        logger.debug("gate: queued request at position %d", len(self._waiters))
        try:
            return await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Granted just before the cancellation landed
                self.release(waiter.result())
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def release(self, slot: GateSlot) -> None:
        """Give a slot back. Releasing the same slot twice is a no-op."""
        if slot._gate is not self:
            raise ValueError("slot belongs to a different gate")
        if slot._released:
            return
        slot._released = True
        self._running = max(0, self._running - 1)
        logger.debug("gate: released slot #%d", slot.id)

        while self._waiters:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            waiter.set_result(self._grant())
            break

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[GateSlot]:
        """Hold a slot for the duration of the ``async with`` block."""
        held = await self.acquire()
        try:
            yield held
        finally:
            self.release(held)
