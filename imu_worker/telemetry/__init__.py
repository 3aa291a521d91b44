"""
Telemetry and observability for the IMU ingestion worker.

Contains logging and metrics utilities.
"""

from .logger import (
    CorrelationFilter,
    JSONFormatter,
    MetricsLogger,
    correlation_scope,
    current_correlation_id,
    setup_logging
)

__all__ = [
    "setup_logging",
    "JSONFormatter",
    "CorrelationFilter",
    "MetricsLogger",
    "correlation_scope",
    "current_correlation_id"
]
