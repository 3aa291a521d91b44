"""
Services layer for the IMU ingestion worker.

Contains the consumer runtime and the batch write path that coordinate
between adapters.
"""

from .admission import AdmissionGate, AdmissionSlot
from .ack_policy import DeliverySettler, classify_outcome
from .batch_processor import TelemetryBatchProcessor
from .consumer import TelemetryConsumer

__all__ = [
    "AdmissionGate",
    "AdmissionSlot",
    "DeliverySettler",
    "classify_outcome",
    "TelemetryBatchProcessor",
    "TelemetryConsumer"
]
