"""
Logging for the IMU ingestion worker.

Records are written to stdout, either as one JSON object per line or as
plain text. While a delivery is being handled its id is bound to the
current task, so every record emitted on its behalf (decode, bulk write,
cache append, settle) carries the same ``correlation_id``.
"""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional


NO_CORRELATION = "-"

_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Attributes every LogRecord has; anything else on a record came from ``extra``
_RECORD_ATTRIBUTES = frozenset(
    logging.LogRecord("", logging.NOTSET, "", 0, "", None, None).__dict__
) | {"message", "asctime"}

# Client libraries that log every frame or query at INFO/DEBUG
QUIET_LOGGERS = ("aio_pika", "aiormq", "asyncpg", "redis", "asyncio")


def current_correlation_id() -> Optional[str]:
    return _correlation_id.get()


@contextmanager
def correlation_scope(correlation_id: str) -> Iterator[str]:
    """
    Bind a correlation id to the running task for the duration of the block.

    Scopes nest; leaving one restores the id that was bound before it.
    """
    token = _correlation_id.set(correlation_id)
    try:
        yield correlation_id
    finally:
        _correlation_id.reset(token)


class CorrelationFilter(logging.Filter):
    """
    Stamps ``correlation_id`` on records that do not carry one already.

    The id comes from the enclosing :func:`correlation_scope`; outside any
    scope the record gets ``NO_CORRELATION``.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "correlation_id", None) is None:
            record.correlation_id = _correlation_id.get() or NO_CORRELATION
        return True


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record.

    Fixed keys come first, then every ``extra`` field passed by the caller.
    Values json cannot encode (datetimes, UUIDs, enums) are stringified.
    """

    def __init__(self, service_name: str = "imu-worker", include_extra: bool = True):
        super().__init__()
        self.service_name = service_name
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service_name,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}"
        }

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            entry["stack"] = self.formatStack(record.stack_info)

        if self.include_extra:
            entry.update(self._extra_fields(record))

        return json.dumps(entry, default=self._encode)

    @staticmethod
    def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
        return {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRIBUTES and not key.startswith("_")
        }

    @staticmethod
    def _encode(value: Any) -> str:
        if isinstance(value, datetime):
            return value.isoformat()
        return str(value)


def _text_formatter(enable_correlation: bool) -> logging.Formatter:
    fmt = "%(asctime)s %(levelname)-7s %(name)s"
    if enable_correlation:
        fmt += " [%(correlation_id)s]"
    return logging.Formatter(fmt=fmt + " %(message)s", datefmt="%Y-%m-%d %H:%M:%S")


def setup_logging(
        level: str = "INFO",
        service_name: str = "imu-worker",
        enable_json: bool = True,
        enable_correlation: bool = True
) -> None:
    """
    Route all logging to stdout with the configured format.

    Args:
        level: Root level name (DEBUG, INFO, WARNING, ERROR)
        service_name: Value of the ``service`` key in JSON records
        enable_json: JSON lines instead of plain text
        enable_correlation: Stamp per-delivery correlation ids on records

    Raises:
        ValueError: If ``level`` is not a logging level name
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {level}")

    handler = logging.StreamHandler(sys.stdout)
    if enable_json:
        handler.setFormatter(JSONFormatter(service_name=service_name))
    else:
        handler.setFormatter(_text_formatter(enable_correlation))
    if enable_correlation:
        handler.addFilter(CorrelationFilter())

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(numeric_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        f"Logging configured at {level.upper()}",
        extra={"component": "logger", "json_enabled": enable_json, "correlation_enabled": enable_correlation}
    )


class MetricsLogger:
    """Structured metric records, distinguished by ``metric_type``."""

    def __init__(self, logger_name: str = "metrics"):
        self.logger = logging.getLogger(logger_name)

    def _emit(self, metric_type: str, message: str, **fields: Any) -> None:
        self.logger.info(message, extra={"metric_type": metric_type, **fields})

    def log_batch_persisted(self, session_id: Optional[str], records: int, duration_ms: float) -> None:
        """Durable write throughput of one batch (mapping plus bulk write)."""
        throughput = records / (duration_ms / 1000.0) if duration_ms > 0 else float(records)
        self._emit(
            "batch_persisted",
            f"Saved {records} IMU data points in {duration_ms:.0f}ms ({throughput:.0f} records/sec)",
            session_id=session_id,
            records=records,
            duration_ms=round(duration_ms, 2),
            records_per_sec=round(throughput, 1)
        )

    def log_delivery_settled(
            self,
            handle: int,
            outcome: str,
            redelivered: bool,
            processing_time_ms: float,
            success: bool = True,
            error: Optional[str] = None
    ) -> None:
        """
        Broker outcome of one delivery.

        ``success`` is False when the broker did not accept the ack/nack,
        ``error`` is the processing failure behind a reject or requeue.
        """
        self._emit(
            "delivery_settled",
            f"Delivery settled: {outcome}",
            handle=handle,
            outcome=outcome,
            redelivered=redelivered,
            processing_time_ms=round(processing_time_ms, 2),
            success=success,
            error=error
        )

    def log_consumer_stats(self, stats: Dict[str, Any]) -> None:
        self._emit("consumer_stats", "Consumer statistics", **stats)
