"""
Acknowledgment policy.

Maps the result of processing one delivery to a broker action and applies
it through a single writer, since the broker channel must not be used
concurrently.

    processing returned         -> ack
    DecodeError (poison)        -> reject, requeue=false
    anything else               -> reject, requeue=true

There is no retry inside the pipeline: retries are broker redeliveries.
"""

import asyncio
import logging
from typing import Optional, Tuple

from ..domain.dto import SettleOutcome
from ..domain.ports import DecodeError, DeliveryChannel


logger = logging.getLogger(__name__)


def classify_outcome(error: Optional[BaseException]) -> SettleOutcome:
    """
    Classify a processing result.

    Args:
        error: Exception raised by decode/processing, or None on success

    Returns:
        Broker action for the delivery
    """
    if error is None:
        return SettleOutcome.ACK
    if isinstance(error, DecodeError):
        return SettleOutcome.REJECT
    return SettleOutcome.REQUEUE


class DeliverySettler:
    """
    Single task that owns every ack/nack on the channel.

    Workers submit (handle, outcome) pairs and may await the result; the
    settler applies them one at a time in submission order.
    """

    def __init__(self, channel: DeliveryChannel):
        self.channel = channel
        self._queue: "asyncio.Queue[Tuple[int, SettleOutcome, asyncio.Future]]" = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(), name="imu-settler")

    def submit(self, handle: int, outcome: SettleOutcome) -> asyncio.Future:
        """
        Queue a broker action without waiting for it.

        Returns:
            Future resolving to True if the broker accepted the action
        """
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((handle, outcome, future))
        return future

    async def settle(self, handle: int, outcome: SettleOutcome) -> bool:
        return await self.submit(handle, outcome)

    async def _run(self) -> None:
        while True:
            handle, outcome, future = await self._queue.get()
            try:
                if outcome == SettleOutcome.ACK:
                    accepted = await self.channel.ack(handle)
                else:
                    accepted = await self.channel.nack(
                        handle,
                        requeue=outcome == SettleOutcome.REQUEUE
                    )
            except Exception as e:
                logger.error(
                    f"Error settling delivery: {e}",
                    extra={
                        "component": "delivery_settler",
                        "handle": handle,
                        "outcome": outcome.value
                    }
                )
                accepted = False
            finally:
                self._queue.task_done()

            if not future.done():
                future.set_result(accepted)

    async def stop(self) -> None:
        """Apply everything already submitted, then stop."""
        if self._task is None:
            return

        if not self._task.done():
            await self._queue.join()
            self._task.cancel()

        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
