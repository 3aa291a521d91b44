"""
Admission gate bounding how many deliveries are processed at once.
"""

import asyncio
import logging


logger = logging.getLogger(__name__)


class AdmissionSlot:
    """
    One admitted unit of work.

    Releasing is idempotent and ``async with slot:`` releases on every exit
    path, including exceptions and cancellation.
    """

    def __init__(self, gate: "AdmissionGate"):
        self._gate = gate
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._gate._release()

    async def __aenter__(self) -> "AdmissionSlot":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


class AdmissionGate:
    """
    Counting gate of fixed capacity.

    The receive loop blocks in ``acquire()`` while ``capacity`` slots are
    held; together with the broker prefetch limit this is the backpressure
    on the queue.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError(f"Admission gate capacity must be positive, got {capacity}")

        self.capacity = capacity
        self._semaphore = asyncio.Semaphore(capacity)
        self._in_flight = 0
        self._peak_in_flight = 0
        self._admitted_total = 0
        self._released_total = 0
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def peak_in_flight(self) -> int:
        return self._peak_in_flight

    @property
    def admitted_total(self) -> int:
        return self._admitted_total

    @property
    def released_total(self) -> int:
        return self._released_total

    @property
    def available(self) -> int:
        return self.capacity - self._in_flight

    async def acquire(self) -> AdmissionSlot:
        """Wait for a free slot."""
        await self._semaphore.acquire()

        self._in_flight += 1
        self._admitted_total += 1
        self._peak_in_flight = max(self._peak_in_flight, self._in_flight)
        self._idle.clear()

        return AdmissionSlot(self)

    def _release(self) -> None:
        self._in_flight -= 1
        self._released_total += 1
        self._semaphore.release()

        if self._in_flight == 0:
            self._idle.set()

    async def wait_idle(self) -> None:
        """Wait until no slot is held."""
        await self._idle.wait()
