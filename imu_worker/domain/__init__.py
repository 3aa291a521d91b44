"""
Domain layer for the IMU ingestion worker.

Contains data models and the interfaces the pipeline depends on.
"""

from .dto import (
    # Enums
    SettleOutcome,

    # Wire DTOs
    IMUDataPoint,
    TelemetryBatch,

    # Runtime DTOs
    Delivery,
    IMUDataRecord,
    ConsumerStats,
    RECORD_COLUMNS
)

from .ports import (
    # I/O Interfaces
    DeliveryChannel,
    BrokerConnection,
    DurableSink,
    SessionCache,

    # Core Interfaces
    EnvelopeDecoder,
    BatchProcessor,

    # Exceptions
    BrokerConnectionError,
    DecodeError,
    PersistenceError,
    CacheError
)

__all__ = [
    "SettleOutcome",
    "IMUDataPoint",
    "TelemetryBatch",
    "Delivery",
    "IMUDataRecord",
    "ConsumerStats",
    "RECORD_COLUMNS",
    "DeliveryChannel",
    "BrokerConnection",
    "DurableSink",
    "SessionCache",
    "EnvelopeDecoder",
    "BatchProcessor",
    "BrokerConnectionError",
    "DecodeError",
    "PersistenceError",
    "CacheError"
]
