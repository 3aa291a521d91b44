"""
Admission-controlled consumer: the main processing loop of the worker.
Receives deliveries, bounds concurrent processing and drives ack/nack.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, List, Optional, Tuple

from ..domain.dto import ConsumerStats, Delivery, SettleOutcome
from ..domain.ports import BatchProcessor, DeliveryChannel, EnvelopeDecoder
from ..telemetry.logger import MetricsLogger, correlation_scope
from .ack_policy import DeliverySettler, classify_outcome
from .admission import AdmissionGate, AdmissionSlot


logger = logging.getLogger(__name__)


@dataclass
class _WorkItem:
    delivery: Delivery
    slot: AdmissionSlot
    admitted_at: float


class TelemetryConsumer:
    """
    Bounded-concurrency consumer.

    Runtime layout:
    - one receive loop pulling deliveries from the channel
    - an admission gate of ``max_concurrency`` slots in front of
    - a fixed pool of ``max_concurrency`` workers, so the bound holds even
      without the gate
    - one settler task performing every ack/nack

    Completion order across deliveries is not preserved. Shutdown stops
    receiving immediately and lets admitted work finish before returning.
    """

    def __init__(
        self,
        channel: DeliveryChannel,
        decoder: EnvelopeDecoder,
        processor: BatchProcessor,
        max_concurrency: int = 5,
        stats_interval_seconds: float = 300.0
    ):
        """
        Initialize consumer.

        Args:
            channel: Broker channel to receive from and settle on
            decoder: Envelope decoder
            processor: Batch write path
            max_concurrency: Deliveries processed at the same time
            stats_interval_seconds: Period of stats logging, 0 disables it
        """
        self.channel = channel
        self.decoder = decoder
        self.processor = processor
        self.max_concurrency = max_concurrency
        self.stats_interval_seconds = stats_interval_seconds

        self.gate = AdmissionGate(max_concurrency)
        self.settler = DeliverySettler(channel)

        self._work_queue: "asyncio.Queue[_WorkItem]" = asyncio.Queue()
        self._stop_event = asyncio.Event()

        # Service state
        self._is_running = False
        self._stats = ConsumerStats(max_concurrency=max_concurrency)
        self._receive_error: Optional[BaseException] = None

        # Background tasks
        self._receive_task: Optional[asyncio.Task] = None
        self._workers: List[asyncio.Task] = []
        self._stats_task: Optional[asyncio.Task] = None

        self.metrics = MetricsLogger("consumer")

    @property
    def is_running(self) -> bool:
        return self._is_running

    async def start(self) -> None:
        if self._is_running:
            logger.warning("Consumer already running")
            return

        self._stop_event.clear()
        await self.settler.start()

        self._workers = [
            asyncio.create_task(self._worker(index), name=f"imu-worker-{index}")
            for index in range(self.max_concurrency)
        ]
        self._receive_task = asyncio.create_task(self._receive_loop(), name="imu-receive-loop")

        if self.stats_interval_seconds > 0:
            self._stats_task = asyncio.create_task(self._periodic_stats())

        self._is_running = True

        logger.info(
            "Consumer started",
            extra={
                "component": "consumer",
                "max_concurrency": self.max_concurrency
            }
        )

    async def stop(self) -> None:
        """
        Stop receiving, drain admitted work, then flush pending acks.
        """
        if not self._is_running:
            return

        logger.info(
            "Stopping consumer, draining in-flight deliveries",
            extra={"component": "consumer", "in_flight": self.gate.in_flight}
        )

        self._stop_event.set()
        await self.channel.stop_receiving()

        if self._receive_task is not None:
            await asyncio.gather(self._receive_task, return_exceptions=True)

        await self._work_queue.join()

        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        await self.settler.stop()

        if self._stats_task and not self._stats_task.done():
            self._stats_task.cancel()
            try:
                await self._stats_task
            except asyncio.CancelledError:
                pass

        self._is_running = False

        logger.info(
            "Consumer stopped",
            extra={"component": "consumer", "final_stats": self.get_stats().summary()}
        )

    async def _receive_loop(self) -> None:
        """Pull deliveries and hand them to the worker pool."""
        try:
            while not self._stop_event.is_set():
                received, delivery = await self._until_stopped(self.channel.receive())
                if not received or delivery is None:
                    break

                self._stats.deliveries_received += 1

                slot = await self._admit(delivery)
                if slot is None:
                    break

                self._work_queue.put_nowait(_WorkItem(delivery, slot, time.perf_counter()))

        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Unrecoverable channel fault: surfaces through health_check
            self._receive_error = e
            logger.error(
                f"Receive loop failed: {e}",
                exc_info=True,
                extra={"component": "consumer"}
            )
        finally:
            logger.info("Receive loop finished", extra={"component": "consumer"})

    async def _admit(self, delivery: Delivery) -> Optional[AdmissionSlot]:
        """
        Wait for a gate slot; a delivery that cannot be admitted before
        shutdown is handed back to the broker.
        """
        admitted, slot = await self._until_stopped(self.gate.acquire())
        if admitted:
            return slot

        self.settler.submit(delivery.handle, SettleOutcome.REQUEUE)
        self._stats.record_outcome(SettleOutcome.REQUEUE)
        logger.info(
            "Shutdown while waiting for admission, delivery requeued",
            extra={"component": "consumer", "handle": delivery.handle}
        )
        return None

    async def _until_stopped(self, awaitable: Awaitable[Any]) -> Tuple[bool, Any]:
        """
        Await ``awaitable`` unless shutdown starts first.

        Returns:
            (True, result) if it completed, (False, None) if shutdown won
        """
        task = asyncio.ensure_future(awaitable)
        stop_waiter = asyncio.ensure_future(self._stop_event.wait())

        try:
            done, _ = await asyncio.wait(
                {task, stop_waiter},
                return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            stop_waiter.cancel()

        if task in done:
            return True, task.result()

        task.cancel()
        try:
            result = await task
        except asyncio.CancelledError:
            return False, None
        # Finished before the cancellation landed
        return True, result

    async def _worker(self, index: int) -> None:
        while True:
            item = await self._work_queue.get()
            try:
                async with item.slot:
                    await self._handle_delivery(item)
            finally:
                self._work_queue.task_done()

    async def _handle_delivery(self, item: _WorkItem) -> None:
        with correlation_scope(f"delivery-{item.delivery.handle}"):
            await self._process_and_settle(item)

    async def _process_and_settle(self, item: _WorkItem) -> None:
        """Decode, process and settle one delivery."""
        delivery = item.delivery
        error: Optional[Exception] = None
        persisted = 0

        try:
            batch = self.decoder.decode(delivery.body)
            persisted = await self.processor.process(batch)
        except asyncio.CancelledError:
            self.settler.submit(delivery.handle, SettleOutcome.REQUEUE)
            self._stats.record_outcome(SettleOutcome.REQUEUE)
            logger.warning(
                "Processing cancelled, delivery requeued",
                extra={"component": "consumer", "handle": delivery.handle}
            )
            raise
        except Exception as e:
            error = e

        outcome = classify_outcome(error)

        if outcome == SettleOutcome.REJECT:
            logger.warning(
                f"Invalid message, rejecting without requeue: {error}",
                extra={"component": "consumer", "handle": delivery.handle}
            )
        elif outcome == SettleOutcome.REQUEUE:
            logger.error(
                f"Error processing message, rejecting with requeue for retry: {error}",
                exc_info=error,
                extra={
                    "component": "consumer",
                    "handle": delivery.handle,
                    "redelivered": delivery.redelivered
                }
            )

        accepted = await self.settler.settle(delivery.handle, outcome)

        self._stats.record_outcome(outcome)
        self._stats.points_persisted += persisted
        if not accepted:
            self._stats.settle_failures += 1

        self.metrics.log_delivery_settled(
            handle=delivery.handle,
            outcome=outcome.value,
            redelivered=delivery.redelivered,
            processing_time_ms=(time.perf_counter() - item.admitted_at) * 1000,
            success=accepted,
            error=str(error) if error else None
        )

    def get_stats(self) -> ConsumerStats:
        stats = self._stats.model_copy()
        stats.in_flight = self.gate.in_flight
        stats.peak_in_flight = self.gate.peak_in_flight
        return stats

    def health_check(self) -> Dict[str, Any]:
        receive_alive = self._receive_task is not None and not self._receive_task.done()
        workers_alive = sum(1 for worker in self._workers if not worker.done())

        health_status = {
            "service_healthy": self._is_running,
            "receive_loop_alive": receive_alive,
            "settler_alive": self.settler.is_running,
            "workers_alive": workers_alive,
            "in_flight": self.gate.in_flight
        }

        if self._receive_error is not None:
            health_status["error"] = str(self._receive_error)

        health_status["overall_healthy"] = (
            self._is_running and
            receive_alive and
            self.settler.is_running and
            workers_alive == self.max_concurrency
        )

        return health_status

    async def _periodic_stats(self) -> None:
        """Background task for periodic statistics logging."""
        while True:
            try:
                await asyncio.sleep(self.stats_interval_seconds)
                self.metrics.log_consumer_stats(self.get_stats().summary())
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in periodic stats: {e}")
