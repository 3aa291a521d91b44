"""Tests for imu_worker.adapters.rabbitmq_connection (no real broker)."""

import ssl

import aio_pika
import pytest

from imu_worker.adapters.rabbitmq_connection import RabbitMQConnectionManager, RabbitMQDeliveryChannel
from imu_worker.domain.ports import BrokerConnectionError

# pylint: disable=protected-access


class FakeMessage:
    def __init__(self, body, delivery_tag, redelivered=False, error=None):
        self.body = body
        self.delivery_tag = delivery_tag
        self.redelivered = redelivered
        self.error = error
        self.acked = False
        self.rejected = None

    async def ack(self):
        if self.error is not None:
            raise self.error
        self.acked = True

    async def reject(self, requeue=False):
        if self.error is not None:
            raise self.error
        self.rejected = requeue


class FakeQueueIterator:
    def __init__(self, messages):
        self.messages = list(messages)
        self.closed = False

    async def __anext__(self):
        if self.closed or not self.messages:
            raise StopAsyncIteration
        return self.messages.pop(0)

    async def close(self):
        self.closed = True


class FakeQueue:
    def __init__(self, messages=()):
        self._iterator = FakeQueueIterator(messages)

    def iterator(self):
        return self._iterator


class FakeAmqpChannel:
    def __init__(self, close_error=None):
        self.qos = None
        self.declared = None
        self.is_closed = False
        self.close_error = close_error

    async def set_qos(self, prefetch_count):
        self.qos = prefetch_count

    async def declare_queue(self, name, **kwargs):
        self.declared = (name, kwargs)
        return FakeQueue()

    async def close(self):
        if self.close_error is not None:
            raise self.close_error
        self.is_closed = True


class FakeConnection:
    def __init__(self, channel):
        self._channel = channel
        self.reconnect_callbacks = set()
        self.close_callbacks = set()
        self.is_closed = False

    async def channel(self):
        return self._channel

    async def close(self):
        self.is_closed = True


@pytest.fixture
def broker(monkeypatch):
    """Patch aio_pika.connect_robust and capture its arguments."""
    state = {"channel": FakeAmqpChannel(), "kwargs": None, "error": None}

    async def connect_robust(**kwargs):
        if state["error"] is not None:
            raise state["error"]
        state["kwargs"] = kwargs
        state["connection"] = FakeConnection(state["channel"])
        return state["connection"]

    monkeypatch.setattr(aio_pika, "connect_robust", connect_robust)
    return state


def _manager(port=5672, **kwargs):
    return RabbitMQConnectionManager(
        host="broker.local",
        port=port,
        username="worker",
        password="secret",
        queue_name="imu-data-queue",
        **kwargs
    )


# ---------------------------------------------------------------------------
# Connection manager
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_connect_configures_qos_and_durable_queue(broker):
    manager = _manager(prefetch_count=7, reconnect_interval=3.0)

    delivery_channel = await manager.connect()

    assert isinstance(delivery_channel, RabbitMQDeliveryChannel)
    assert manager.is_connected()
    assert broker["channel"].qos == 7
    assert broker["channel"].declared == (
        "imu-data-queue",
        {"durable": True, "exclusive": False, "auto_delete": False}
    )

    kwargs = broker["kwargs"]
    assert kwargs["host"] == "broker.local"
    assert kwargs["login"] == "worker"
    assert kwargs["virtualhost"] == "/"
    assert kwargs["reconnect_interval"] == 3.0
    assert kwargs["ssl"] is False
    assert kwargs["ssl_context"] is None


@pytest.mark.asyncio
async def test_port_5671_enables_tls(broker):
    manager = _manager(port=5671)

    await manager.connect()

    assert manager.use_ssl
    assert broker["kwargs"]["ssl"] is True
    context = broker["kwargs"]["ssl_context"]
    assert isinstance(context, ssl.SSLContext)
    assert context.verify_mode == ssl.CERT_REQUIRED


@pytest.mark.asyncio
async def test_tls_verification_can_be_disabled(broker):
    manager = _manager(port=5671, verify_ssl=False)

    await manager.connect()

    context = broker["kwargs"]["ssl_context"]
    assert context.verify_mode == ssl.CERT_NONE
    assert context.check_hostname is False


@pytest.mark.asyncio
async def test_unreachable_broker_raises_connection_error(broker):
    broker["error"] = ConnectionRefusedError("refused")
    manager = _manager()

    with pytest.raises(BrokerConnectionError):
        await manager.connect()

    assert not manager.is_connected()


@pytest.mark.asyncio
async def test_close_continues_after_channel_failure(broker):
    broker["channel"] = FakeAmqpChannel(close_error=RuntimeError("channel already closed"))
    manager = _manager()
    await manager.connect()
    connection = broker["connection"]

    await manager.close()

    assert connection.is_closed
    assert not manager.is_connected()


# ---------------------------------------------------------------------------
# Delivery channel
# ---------------------------------------------------------------------------


def _delivery_channel(*messages):
    queue = FakeQueue(messages)
    return RabbitMQDeliveryChannel(FakeAmqpChannel(), queue), queue


@pytest.mark.asyncio
async def test_receive_assigns_local_handles():
    first = FakeMessage(b"one", delivery_tag=1)
    second = FakeMessage(b"two", delivery_tag=1, redelivered=True)
    channel, _ = _delivery_channel(first, second)

    a = await channel.receive()
    b = await channel.receive()

    assert (a.handle, a.body, a.redelivered) == (1, b"one", False)
    assert (b.handle, b.body, b.redelivered) == (2, b"two", True)
    assert channel.pending_count == 2
    assert await channel.receive() is None


@pytest.mark.asyncio
async def test_ack_and_nack_settle_the_right_message():
    first = FakeMessage(b"one", delivery_tag=1)
    second = FakeMessage(b"two", delivery_tag=2)
    third = FakeMessage(b"three", delivery_tag=3)
    channel, _ = _delivery_channel(first, second, third)
    for _ in range(3):
        await channel.receive()

    assert await channel.ack(1) is True
    assert await channel.nack(2, requeue=False) is True
    assert await channel.nack(3, requeue=True) is True

    assert first.acked
    assert second.rejected is False
    assert third.rejected is True
    assert channel.pending_count == 0


@pytest.mark.asyncio
async def test_settling_unknown_or_twice_returns_false():
    channel, _ = _delivery_channel(FakeMessage(b"one", delivery_tag=1))
    await channel.receive()

    assert await channel.ack(1) is True
    assert await channel.ack(1) is False
    assert await channel.nack(99, requeue=True) is False


@pytest.mark.asyncio
async def test_settle_failure_returns_false():
    channel, _ = _delivery_channel(FakeMessage(b"one", delivery_tag=1, error=RuntimeError("channel closed")))
    await channel.receive()

    assert await channel.ack(1) is False


@pytest.mark.asyncio
async def test_stop_receiving_closes_iterator():
    channel, queue = _delivery_channel(FakeMessage(b"one", delivery_tag=1))

    await channel.stop_receiving()

    assert queue.iterator().closed
    assert await channel.receive() is None
