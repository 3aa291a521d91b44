"""
Batch processing service: the write path for one validated batch.
Appends to the session cache (best effort) and persists to the durable store (required).
"""

import logging
import time
from typing import List, Optional

from ..domain.dto import IMUDataRecord, TelemetryBatch, utc_now
from ..domain.ports import BatchProcessor, DurableSink, PersistenceError, SessionCache
from ..telemetry.logger import MetricsLogger


logger = logging.getLogger(__name__)


class TelemetryBatchProcessor(BatchProcessor):
    """
    Writes a batch to both sinks.

    Pipeline Flow:
    1. Append points to the session cache; failures are logged and dropped
    2. Map points to records (batch identity, fresh id, creation time)
    3. Bulk insert all records; failures propagate as PersistenceError
    4. Log throughput
    """

    def __init__(
        self,
        durable_sink: DurableSink,
        session_cache: Optional[SessionCache] = None
    ):
        self.durable_sink = durable_sink
        self.session_cache = session_cache
        self.metrics = MetricsLogger("batch_processor")

    async def process(self, batch: TelemetryBatch) -> int:
        started = time.perf_counter()

        logger.info(
            f"Processing {len(batch.data_points)} IMU data points",
            extra={
                "component": "batch_processor",
                "session_id": batch.session_id,
                "user_id": batch.user_id
            }
        )

        await self._append_to_cache(batch)

        records = self._build_records(batch)

        try:
            saved = await self.durable_sink.bulk_insert(records)
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(f"Durable write failed: {e}") from e

        self.metrics.log_batch_persisted(
            session_id=batch.session_id,
            records=saved,
            duration_ms=(time.perf_counter() - started) * 1000
        )

        return saved

    @staticmethod
    def _build_records(batch: TelemetryBatch) -> List[IMUDataRecord]:
        now = utc_now()
        return [
            IMUDataRecord.from_point(point, batch.session_id, batch.user_id, now)
            for point in batch.data_points
        ]

    async def _append_to_cache(self, batch: TelemetryBatch) -> None:
        if self.session_cache is None or not self.session_cache.enabled or not batch.session_id:
            return

        try:
            await self.session_cache.append(batch.session_id, batch.data_points)
        except Exception as e:
            # Cache is a convenience read path and must never decide the outcome
            logger.error(
                f"Session cache append failed: {e}",
                extra={"component": "batch_processor", "session_id": batch.session_id}
            )
