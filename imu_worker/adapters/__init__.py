"""
Adapters layer for the IMU ingestion worker.

Contains implementations of domain interfaces using external systems:
RabbitMQ, PostgreSQL and Redis.
"""

from .envelope_codec import JsonEnvelopeCodec, create_envelope_codec
from .postgres_sink import PostgresDurableSink, create_durable_sink
from .rabbitmq_connection import (
    RabbitMQConnectionManager,
    RabbitMQDeliveryChannel,
    create_broker_connection
)
from .redis_session_cache import RedisSessionCache, create_session_cache

__all__ = [
    "JsonEnvelopeCodec",
    "create_envelope_codec",
    "PostgresDurableSink",
    "create_durable_sink",
    "RabbitMQConnectionManager",
    "RabbitMQDeliveryChannel",
    "create_broker_connection",
    "RedisSessionCache",
    "create_session_cache"
]
