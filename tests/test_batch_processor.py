"""Tests for imu_worker.services.batch_processor."""

import pytest

from imu_worker.adapters.envelope_codec import JsonEnvelopeCodec
from imu_worker.domain.ports import PersistenceError
from imu_worker.services.batch_processor import TelemetryBatchProcessor
from tests.fakes import FakeSessionCache, FakeSink, envelope


def _batch(session_id="session-1", points=3):
    return JsonEnvelopeCodec().decode(envelope(session_id=session_id, points=points))


@pytest.mark.asyncio
async def test_batch_is_cached_and_persisted(sink, cache):
    """A valid batch lands in both sinks with batch identity on every record."""
    processor = TelemetryBatchProcessor(sink, cache)
    batch = _batch(points=3)

    saved = await processor.process(batch)

    assert saved == 3
    assert sink.calls == 1
    assert [r.timestamp for r in sink.records] == [p.timestamp for p in batch.data_points]
    assert all(r.session_id == "session-1" and r.user_id == "user-1" for r in sink.records)
    assert all(r.is_synced for r in sink.records)
    assert len({r.id for r in sink.records}) == 3
    assert len({r.created_at for r in sink.records}) == 1
    assert sink.records[0].created_at == sink.records[0].updated_at
    assert sink.records[1].accel_x == batch.data_points[1].accel_x

    assert await cache.count("session-1") == 3
    assert (await cache.read("session-1"))[0].timestamp == batch.data_points[0].timestamp


@pytest.mark.asyncio
async def test_cache_failure_does_not_block_persistence(sink):
    cache = FakeSessionCache(error=RuntimeError("redis down"))
    processor = TelemetryBatchProcessor(sink, cache)

    saved = await processor.process(_batch(points=2))

    assert saved == 2
    assert cache.append_calls == 1
    assert len(sink.records) == 2


@pytest.mark.asyncio
async def test_disabled_cache_is_skipped(sink):
    cache = FakeSessionCache(enabled=False)
    processor = TelemetryBatchProcessor(sink, cache)

    await processor.process(_batch())

    assert cache.append_calls == 0
    assert len(sink.records) == 3


@pytest.mark.asyncio
async def test_batch_without_session_skips_cache(sink, cache):
    processor = TelemetryBatchProcessor(sink, cache)

    await processor.process(_batch(session_id=None, points=1))

    assert cache.append_calls == 0
    assert sink.records[0].session_id is None


@pytest.mark.asyncio
async def test_works_without_any_cache(sink):
    processor = TelemetryBatchProcessor(sink)

    assert await processor.process(_batch(points=4)) == 4


@pytest.mark.asyncio
async def test_persistence_error_propagates(cache):
    sink = FakeSink(error=PersistenceError("table locked"))
    processor = TelemetryBatchProcessor(sink, cache)

    with pytest.raises(PersistenceError, match="table locked"):
        await processor.process(_batch())

    # cache write already happened; it is best effort and not rolled back
    assert cache.append_calls == 1


@pytest.mark.asyncio
async def test_unexpected_sink_error_is_wrapped():
    sink = FakeSink(error=ConnectionResetError("peer reset"))
    processor = TelemetryBatchProcessor(sink)

    with pytest.raises(PersistenceError) as exc_info:
        await processor.process(_batch())

    assert isinstance(exc_info.value.__cause__, ConnectionResetError)
