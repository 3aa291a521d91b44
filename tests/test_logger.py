"""Tests for imu_worker.telemetry.logger."""

import asyncio
import json
import logging
from datetime import datetime, timezone

import pytest

from imu_worker.telemetry.logger import (
    NO_CORRELATION,
    CorrelationFilter,
    JSONFormatter,
    MetricsLogger,
    correlation_scope,
    current_correlation_id,
    setup_logging
)


def _record(msg="hello", **extra):
    record = logging.LogRecord("imu_worker.test", logging.INFO, __file__, 10, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_extra_fields():
    formatter = JSONFormatter(service_name="imu-worker")
    stamp = datetime(2024, 5, 1, tzinfo=timezone.utc)

    entry = json.loads(formatter.format(_record(component="consumer", handle=7, last_activity=stamp)))

    assert entry["service"] == "imu-worker"
    assert entry["level"] == "INFO"
    assert entry["message"] == "hello"
    assert entry["component"] == "consumer"
    assert entry["handle"] == 7
    assert entry["last_activity"] == "2024-05-01T00:00:00+00:00"


def test_correlation_filter_uses_bound_id_and_keeps_existing():
    log_filter = CorrelationFilter()

    unbound = _record()
    log_filter.filter(unbound)
    with correlation_scope("delivery-7"):
        bound = _record()
        tagged = _record(correlation_id="abc")
        log_filter.filter(bound)
        log_filter.filter(tagged)

    assert unbound.correlation_id == NO_CORRELATION
    assert bound.correlation_id == "delivery-7"
    assert tagged.correlation_id == "abc"


def test_correlation_scopes_nest_and_restore():
    assert current_correlation_id() is None

    with correlation_scope("outer"):
        with correlation_scope("inner"):
            assert current_correlation_id() == "inner"
        assert current_correlation_id() == "outer"

    assert current_correlation_id() is None


@pytest.mark.asyncio
async def test_concurrent_tasks_keep_their_own_correlation_id():
    async def handle(name):
        with correlation_scope(name):
            await asyncio.sleep(0.01)
            return current_correlation_id()

    assert await asyncio.gather(handle("delivery-1"), handle("delivery-2")) == ["delivery-1", "delivery-2"]


def test_setup_logging_rejects_unknown_level():
    with pytest.raises(ValueError):
        setup_logging(level="LOUD")


def test_metrics_logger_emits_structured_records(caplog):
    metrics = MetricsLogger("consumer")

    with caplog.at_level(logging.INFO, logger="consumer"):
        metrics.log_batch_persisted(session_id="s1", records=100, duration_ms=50.0)
        metrics.log_consumer_stats({"deliveries_received": 3, "in_flight": 1})

    persisted, stats = [r for r in caplog.records if hasattr(r, "metric_type")]
    assert persisted.metric_type == "batch_persisted"
    assert persisted.records_per_sec == 2000.0
    assert stats.metric_type == "consumer_stats"
    assert stats.deliveries_received == 3
