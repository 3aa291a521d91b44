"""
RabbitMQ connection management using aio-pika.
Owns the robust connection, the channel, queue declaration and QoS.
"""

import asyncio
import itertools
import logging
import ssl
from typing import Dict, Optional

import aio_pika
from aio_pika.abc import (
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractQueueIterator,
    AbstractRobustChannel,
    AbstractRobustConnection,
)
from aio_pika.exceptions import AMQPError, ChannelInvalidStateError, MessageProcessError

from ..domain.dto import Delivery
from ..domain.ports import BrokerConnection, BrokerConnectionError, DeliveryChannel


logger = logging.getLogger(__name__)

SSL_PORT = 5671

SETTLE_ERRORS = (AMQPError, ChannelInvalidStateError, MessageProcessError, ConnectionError, RuntimeError)


class RabbitMQDeliveryChannel(DeliveryChannel):
    """
    Delivery channel over one aio-pika channel and queue.

    Broker delivery tags restart after a reconnect, so every delivery gets a
    process-local handle and the message object is kept until it is settled.
    """

    def __init__(self, channel: AbstractRobustChannel, queue: AbstractQueue):
        self._channel = channel
        self._queue = queue
        self._iterator: AbstractQueueIterator = queue.iterator()
        self._pending: Dict[int, AbstractIncomingMessage] = {}
        self._handles = itertools.count(1)
        self._receiving = True

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def receive(self) -> Optional[Delivery]:
        if not self._receiving:
            return None

        try:
            message = await self._iterator.__anext__()
        except StopAsyncIteration:
            return None

        handle = next(self._handles)
        self._pending[handle] = message

        logger.debug(
            f"Received message from queue, size: {len(message.body)} bytes",
            extra={
                "component": "rabbitmq_channel",
                "handle": handle,
                "delivery_tag": message.delivery_tag,
                "redelivered": bool(message.redelivered)
            }
        )

        return Delivery(
            body=message.body,
            handle=handle,
            redelivered=bool(message.redelivered)
        )

    async def ack(self, handle: int) -> bool:
        message = self._pending.pop(handle, None)
        if message is None:
            logger.warning(f"Ack for unknown delivery handle {handle}")
            return False

        try:
            await message.ack()
            return True
        except SETTLE_ERRORS as e:
            logger.error(
                f"Failed to acknowledge message: {e}",
                extra={"component": "rabbitmq_channel", "handle": handle}
            )
            return False

    async def nack(self, handle: int, requeue: bool) -> bool:
        message = self._pending.pop(handle, None)
        if message is None:
            logger.warning(f"Nack for unknown delivery handle {handle}")
            return False

        try:
            await message.reject(requeue=requeue)
            return True
        except SETTLE_ERRORS as e:
            logger.error(
                f"Failed to reject message: {e}",
                extra={"component": "rabbitmq_channel", "handle": handle, "requeue": requeue}
            )
            return False

    async def stop_receiving(self) -> None:
        if not self._receiving:
            return
        self._receiving = False

        try:
            await self._iterator.close()
            logger.info("Stopped receiving from queue", extra={"component": "rabbitmq_channel"})
        except SETTLE_ERRORS as e:
            logger.warning(f"Error cancelling consumer: {e}")

    async def close(self) -> None:
        try:
            if not self._channel.is_closed:
                await self._channel.close()
            logger.info("RabbitMQ channel closed")
        except SETTLE_ERRORS as e:
            logger.error(f"Error closing RabbitMQ channel: {e}")


class RabbitMQConnectionManager(BrokerConnection):
    """
    Robust RabbitMQ connection.

    aio-pika re-establishes the connection, channel, QoS and consumer every
    ``reconnect_interval`` seconds after an unexpected link loss, for as long
    as the process lives.
    """

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        queue_name: str,
        virtual_host: str = "/",
        prefetch_count: int = 10,
        connect_timeout: float = 30.0,
        reconnect_interval: float = 10.0,
        verify_ssl: bool = True
    ):
        """
        Initialize connection manager.

        Args:
            host: Broker host name
            port: Broker port; 5671 enables TLS
            username: Broker user
            password: Broker password
            queue_name: Durable queue to consume from
            virtual_host: Broker virtual host
            prefetch_count: Max unacknowledged deliveries held by this consumer
            connect_timeout: Timeout of a single connect attempt in seconds
            reconnect_interval: Delay between recovery attempts in seconds
            verify_ssl: Verify the broker certificate chain and host name
        """
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.queue_name = queue_name
        self.virtual_host = virtual_host
        self.prefetch_count = prefetch_count
        self.connect_timeout = connect_timeout
        self.reconnect_interval = reconnect_interval
        self.verify_ssl = verify_ssl

        self._connection: Optional[AbstractRobustConnection] = None
        self._delivery_channel: Optional[RabbitMQDeliveryChannel] = None

    @property
    def use_ssl(self) -> bool:
        return self.port == SSL_PORT

    def _ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        if not self.verify_ssl:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    async def connect(self) -> RabbitMQDeliveryChannel:
        logger.info(
            f"Connecting to RabbitMQ at {self.host}:{self.port}",
            extra={
                "component": "rabbitmq_connection",
                "queue_name": self.queue_name,
                "prefetch_count": self.prefetch_count,
                "ssl": self.use_ssl
            }
        )

        try:
            self._connection = await aio_pika.connect_robust(
                host=self.host,
                port=self.port,
                login=self.username,
                password=self.password,
                virtualhost=self.virtual_host,
                ssl=self.use_ssl,
                ssl_context=self._ssl_context() if self.use_ssl else None,
                timeout=self.connect_timeout,
                reconnect_interval=self.reconnect_interval,
                client_properties={"connection_name": "imu-worker"}
            )
            self._connection.reconnect_callbacks.add(self._on_reconnect)
            self._connection.close_callbacks.add(self._on_connection_closed)

            channel = await self._connection.channel()
            await channel.set_qos(prefetch_count=self.prefetch_count)

            queue = await channel.declare_queue(
                self.queue_name,
                durable=True,
                exclusive=False,
                auto_delete=False
            )

        except (AMQPError, OSError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to connect to RabbitMQ: {e}")
            await self.close()
            raise BrokerConnectionError(f"RabbitMQ connection failed: {e}") from e

        self._delivery_channel = RabbitMQDeliveryChannel(channel, queue)

        logger.info(
            "Connected to RabbitMQ, waiting for messages",
            extra={"component": "rabbitmq_connection", "queue_name": self.queue_name}
        )

        return self._delivery_channel

    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed

    def _on_reconnect(self, sender, *args) -> None:
        logger.info(
            "RabbitMQ connection recovered",
            extra={"component": "rabbitmq_connection", "queue_name": self.queue_name}
        )

    def _on_connection_closed(self, sender, *args) -> None:
        reason = args[0] if args else None
        logger.warning(
            f"RabbitMQ connection lost, retrying every {self.reconnect_interval}s: {reason}",
            extra={"component": "rabbitmq_connection"}
        )

    async def close(self) -> None:
        if self._delivery_channel is not None:
            await self._delivery_channel.close()
            self._delivery_channel = None

        try:
            if self._connection is not None:
                self._connection.close_callbacks.discard(self._on_connection_closed)
                await self._connection.close()
                logger.info("RabbitMQ connection closed")
        except SETTLE_ERRORS as e:
            logger.error(f"Error closing RabbitMQ connection: {e}")
        finally:
            self._connection = None


def create_broker_connection(
    host: str,
    port: int,
    username: str,
    password: str,
    queue_name: str,
    virtual_host: str = "/",
    prefetch_count: int = 10,
    connect_timeout: float = 30.0,
    reconnect_interval: float = 10.0,
    verify_ssl: bool = True
) -> RabbitMQConnectionManager:
    return RabbitMQConnectionManager(
        host=host,
        port=port,
        username=username,
        password=password,
        queue_name=queue_name,
        virtual_host=virtual_host,
        prefetch_count=prefetch_count,
        connect_timeout=connect_timeout,
        reconnect_interval=reconnect_interval,
        verify_ssl=verify_ssl
    )
