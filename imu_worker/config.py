"""
Configuration management for the IMU ingestion worker.
Loads configuration from YAML files and environment variables.
"""

import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "./config.yml"


class RabbitMQConfig(BaseModel):
    """Broker connection and consumption settings."""
    model_config = ConfigDict(extra='forbid')

    host: str = Field(default="localhost", description="Broker host")
    port: int = Field(default=5672, ge=1, le=65535, description="Broker port, 5671 enables TLS")
    username: str = Field(default="guest", description="Broker user")
    password: str = Field(default="guest", description="Broker password")
    virtual_host: str = Field(default="/", description="Broker virtual host")
    queue_name: str = Field(default="imu-data-queue", description="Durable input queue")

    prefetch_count: int = Field(default=10, ge=1, le=65535, description="Unacked deliveries held by the broker for us")
    max_concurrency: int = Field(default=5, ge=1, le=256, description="Deliveries processed at once")

    connect_timeout: float = Field(default=30.0, gt=0, description="Single connect attempt timeout")
    reconnect_interval: float = Field(default=10.0, gt=0, description="Delay between recovery attempts")
    verify_ssl: bool = Field(default=True, description="Verify broker certificate when using TLS")
    startup_connect_attempts: int = Field(default=0, ge=0, description="Startup connect attempts, 0 = forever")


class RedisConfig(BaseModel):
    """Session cache settings. Without an endpoint the cache is disabled."""
    model_config = ConfigDict(extra='forbid')

    endpoint: Optional[str] = Field(None, description="host:port or redis URL")
    use_ssl: bool = Field(default=True, description="TLS for host:port endpoints")
    database: int = Field(default=0, ge=0, description="Logical database")
    key_prefix: str = Field(default="imu:session:", description="Prefix for session keys")
    expiration_hours: int = Field(default=24, ge=1, description="Session TTL, reset on every append")
    connect_timeout: float = Field(default=10.0, gt=0, description="Connection timeout")
    socket_timeout: float = Field(default=5.0, gt=0, description="Operation timeout")


class DatabaseConfig(BaseModel):
    """Durable store settings."""
    model_config = ConfigDict(extra='forbid')

    dsn: str = Field(..., description="PostgreSQL connection string")
    table: str = Field(default="imu_data", description="Target table")
    min_pool_size: int = Field(default=1, ge=1, description="Minimum pooled connections")
    max_pool_size: int = Field(default=10, ge=1, description="Maximum pooled connections")
    command_timeout: float = Field(default=60.0, gt=0, description="Bulk insert timeout")


class ConsumerConfig(BaseModel):
    """Consumer runtime settings."""
    model_config = ConfigDict(extra='forbid')

    stats_interval_seconds: float = Field(default=300.0, ge=0, description="Stats logging period, 0 disables")
    health_check_interval_seconds: float = Field(default=30.0, gt=0, description="Application health check period")


class LoggingConfig(BaseModel):
    """Logging configuration."""
    model_config = ConfigDict(extra='forbid')

    level: str = Field(default="INFO", description="Logging level")
    json_format: bool = Field(default=True, description="Enable JSON formatting")
    enable_correlation: bool = Field(default=True, description="Enable correlation IDs")

    @field_validator('level')
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()


class AppConfig(BaseModel):
    """Main application configuration."""
    model_config = ConfigDict(extra='forbid')

    service_name: str = Field(default="imu-worker", description="Name used in logs")

    rabbitmq: RabbitMQConfig = Field(default_factory=RabbitMQConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    database: DatabaseConfig = Field(..., description="Durable store configuration")
    consumer: ConsumerConfig = Field(default_factory=ConsumerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(config_path: Optional[str] = None) -> AppConfig:
    """
    Load configuration from YAML file with environment variable overrides.

    An explicitly requested file must exist. When falling back to the
    default path, a missing file means "configure from environment only".
    """
    explicit = config_path is not None or os.getenv('CONFIG_PATH') is not None
    if config_path is None:
        config_path = os.getenv('CONFIG_PATH', DEFAULT_CONFIG_PATH)

    config_file = Path(config_path)

    if config_file.exists():
        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                yaml_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            logger.error(f"Failed to parse YAML config: {e}")
            raise ValueError(f"Invalid YAML config: {e}") from e
        logger.info(f"Loaded config from: {config_file}")
    elif explicit:
        raise FileNotFoundError(f"Config file not found: {config_file}")
    else:
        logger.info("No config file, using environment only")
        yaml_data = {}

    if not isinstance(yaml_data, dict):
        raise ValueError(f"Config root must be a mapping: {config_file}")

    yaml_data = _apply_env_overrides(yaml_data)

    config = AppConfig(**yaml_data)

    logger.info(
        "Configuration loaded successfully",
        extra={
            "component": "config",
            "config_file": str(config_file),
            "queue_name": config.rabbitmq.queue_name,
            "max_concurrency": config.rabbitmq.max_concurrency,
            "cache_enabled": bool(config.redis.endpoint)
        }
    )

    return config


ENV_MAPPINGS = {
    # Broker
    'RABBITMQ_HOST': 'rabbitmq.host',
    'RABBITMQ_PORT': 'rabbitmq.port',
    'RABBITMQ_USERNAME': 'rabbitmq.username',
    'RABBITMQ_PASSWORD': 'rabbitmq.password',
    'RABBITMQ_VIRTUAL_HOST': 'rabbitmq.virtual_host',
    'RABBITMQ_QUEUE_NAME': 'rabbitmq.queue_name',
    'RABBITMQ_PREFETCH_COUNT': 'rabbitmq.prefetch_count',
    'RABBITMQ_MAX_CONCURRENCY': 'rabbitmq.max_concurrency',
    'RABBITMQ_VERIFY_SSL': 'rabbitmq.verify_ssl',

    # Session cache
    'REDIS_ENDPOINT': 'redis.endpoint',
    'REDIS_USE_SSL': 'redis.use_ssl',
    'REDIS_DATABASE': 'redis.database',
    'REDIS_KEY_PREFIX': 'redis.key_prefix',
    'REDIS_EXPIRATION_HOURS': 'redis.expiration_hours',

    # Durable store
    'DATABASE_DSN': 'database.dsn',
    'DATABASE_TABLE': 'database.table',

    # Logging
    'LOG_LEVEL': 'logging.level',
    'LOG_JSON': 'logging.json_format'
}


def _apply_env_overrides(config_data: dict) -> dict:
    """
    Apply environment variable overrides to config data.
    Values stay strings; pydantic coerces them to the field types.
    """
    for env_var, config_path in ENV_MAPPINGS.items():
        env_value = os.getenv(env_var)
        if env_value is not None:
            _set_nested_value(config_data, config_path, env_value)
            logger.debug(f"Applied env override: {env_var} -> {config_path}")

    return config_data


def _set_nested_value(data: dict, path: str, value: str) -> None:
    """Set a nested dictionary value using dot notation."""
    keys = path.split('.')
    current = data

    for key in keys[:-1]:
        if not isinstance(current.get(key), dict):
            current[key] = {}
        current = current[key]

    current[keys[-1]] = value
