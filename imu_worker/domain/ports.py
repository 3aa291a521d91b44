"""
Ports (interfaces) for the IMU ingestion worker.
Following Dependency Inversion Principle - the pipeline depends on abstractions,
adapters provide RabbitMQ, PostgreSQL and Redis implementations.
"""

from abc import ABC, abstractmethod
from datetime import timedelta
from typing import List, Optional, Sequence

from .dto import Delivery, IMUDataPoint, IMUDataRecord, TelemetryBatch


class DeliveryChannel(ABC):
    """
    Broker channel as seen by the consumer loop.

    The underlying transport channel is not safe for concurrent use, so the
    consumer funnels every ack/nack through a single task.
    """

    @abstractmethod
    async def receive(self) -> Optional[Delivery]:
        """
        Wait for the next delivery.

        Returns:
            Next delivery, or None once the channel stopped delivering
        """
        pass

    @abstractmethod
    async def ack(self, handle: int) -> bool:
        """
        Acknowledge a delivery (remove it from the queue).

        Returns:
            True if the broker accepted the acknowledgment
        """
        pass

    @abstractmethod
    async def nack(self, handle: int, requeue: bool) -> bool:
        """
        Negatively acknowledge a delivery.

        Args:
            handle: Delivery handle
            requeue: Hand the message back to the queue for another attempt

        Returns:
            True if the broker accepted the rejection
        """
        pass

    @abstractmethod
    async def stop_receiving(self) -> None:
        """Cancel the broker subscription; pending receive() calls return None."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the channel. Best effort, never raises."""
        pass


class BrokerConnection(ABC):
    """
    Owner of the broker connection lifecycle.
    """

    @abstractmethod
    async def connect(self) -> DeliveryChannel:
        """
        Connect, declare the queue and configure QoS.

        Returns:
            Channel ready to receive deliveries

        Raises:
            BrokerConnectionError: If the broker is unreachable within the timeout
        """
        pass

    @abstractmethod
    def is_connected(self) -> bool:
        """Whether the connection is currently usable."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close channel then connection, each step independently."""
        pass


class EnvelopeDecoder(ABC):
    """
    Interface for turning a raw payload into a validated batch.
    """

    @abstractmethod
    def decode(self, body: bytes) -> TelemetryBatch:
        """
        Decode and validate a queue payload.

        Raises:
            DecodeError: On malformed structure or an empty/missing point list
        """
        pass


class DurableSink(ABC):
    """
    Permanent storage reached through a bulk-write contract.
    """

    @abstractmethod
    async def bulk_insert(self, records: Sequence[IMUDataRecord]) -> int:
        """
        Write all records as one unit.

        Returns:
            Number of records written

        Raises:
            PersistenceError: On any persistence fault; nothing is written
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        pass


class SessionCache(ABC):
    """
    Ephemeral, best-effort, TTL-bound list of data points per session.

    Implementations never raise: failures are logged and reads degrade to
    an empty result.
    """

    @abstractmethod
    async def append(self, session_id: str, data_points: List[IMUDataPoint]) -> None:
        """Append points in order and reset the TTL to its full duration."""
        pass

    @abstractmethod
    async def read(self, session_id: str) -> Optional[List[IMUDataPoint]]:
        """All cached points of a session, or None when absent."""
        pass

    @abstractmethod
    async def count(self, session_id: str) -> int:
        pass

    @abstractmethod
    async def delete(self, session_id: str) -> None:
        pass

    @abstractmethod
    async def set_expiration(self, session_id: str, expiration: timedelta) -> None:
        pass

    @property
    @abstractmethod
    def enabled(self) -> bool:
        """Whether a backend is configured and reachable at startup."""
        pass


class BatchProcessor(ABC):
    """
    Write path for one validated batch.
    """

    @abstractmethod
    async def process(self, batch: TelemetryBatch) -> int:
        """
        Cache (best effort) and persist (required) a batch.

        Returns:
            Number of records persisted

        Raises:
            PersistenceError: If the durable write failed
        """
        pass


# Custom exceptions
class BrokerConnectionError(Exception):
    """Raised when the broker cannot be reached."""
    pass


class DecodeError(Exception):
    """Raised when a payload is malformed or carries no data points."""
    pass


class PersistenceError(Exception):
    """Raised when the durable write fails."""
    pass


class CacheError(Exception):
    """Raised inside the cache adapter; never escapes it."""
    pass
