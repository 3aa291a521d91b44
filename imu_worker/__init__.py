"""
IMU ingestion worker.

Consumes batched sensor telemetry from RabbitMQ, persists it to PostgreSQL
and keeps a TTL-bound per-session copy in Redis.
"""

__version__ = "1.0.0"
