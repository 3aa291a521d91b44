"""
Main application module for the IMU ingestion worker.
Wires the broker consumer, the session cache and the durable store.
"""

import asyncio
import logging
import signal
import sys
from contextlib import asynccontextmanager
from typing import Optional

from .adapters import (
    JsonEnvelopeCodec,
    PostgresDurableSink,
    RabbitMQConnectionManager,
    RedisSessionCache,
    create_broker_connection,
    create_durable_sink,
    create_envelope_codec,
    create_session_cache
)
from .config import AppConfig, load_config
from .domain.ports import BrokerConnectionError, DeliveryChannel
from .services import TelemetryBatchProcessor, TelemetryConsumer
from .telemetry.logger import setup_logging


logger = logging.getLogger(__name__)


class IMUWorkerApplication:
    """
    Main application for the IMU ingestion worker.
    """

    def __init__(self, config: AppConfig):
        """
        Initialize application with configuration.

        Args:
            config: Application configuration
        """
        self.config = config

        # Dependencies
        self.session_cache: Optional[RedisSessionCache] = None
        self.durable_sink: Optional[PostgresDurableSink] = None
        self.broker: Optional[RabbitMQConnectionManager] = None
        self.channel: Optional[DeliveryChannel] = None
        self.codec: Optional[JsonEnvelopeCodec] = None
        self.processor: Optional[TelemetryBatchProcessor] = None
        self.consumer: Optional[TelemetryConsumer] = None

        # Lifecycle management
        self._shutdown_event = asyncio.Event()

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum: int) -> None:
            logger.info(f"Received signal {signum}, initiating shutdown")
            self._shutdown_event.set()

        for signum in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(signum, signal_handler, signum)
            except (NotImplementedError, RuntimeError):
                # Not the main thread or platform without signal support
                logger.debug(f"Cannot install handler for signal {signum}")

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    async def setup(self) -> None:
        """
        Setup all service dependencies.
        """
        try:
            logger.info("Setting up IMU worker")

            await self._initialize_adapters()
            self._initialize_services()

            logger.info(
                "Application setup completed",
                extra={
                    "component": "app",
                    "queue_name": self.config.rabbitmq.queue_name,
                    "max_concurrency": self.config.rabbitmq.max_concurrency,
                    "cache_enabled": self.session_cache.enabled
                }
            )

        except Exception as e:
            logger.error(f"Application setup failed: {e}")
            await self.cleanup()
            raise

    async def _initialize_adapters(self) -> None:
        """Initialize all adapter components."""
        redis_config = self.config.redis
        self.session_cache = create_session_cache(
            endpoint=redis_config.endpoint,
            key_prefix=redis_config.key_prefix,
            expiration_hours=redis_config.expiration_hours,
            use_ssl=redis_config.use_ssl,
            database=redis_config.database,
            connect_timeout=redis_config.connect_timeout,
            socket_timeout=redis_config.socket_timeout
        )
        await self.session_cache.connect()

        database_config = self.config.database
        self.durable_sink = create_durable_sink(
            dsn=database_config.dsn,
            table=database_config.table,
            min_pool_size=database_config.min_pool_size,
            max_pool_size=database_config.max_pool_size,
            command_timeout=database_config.command_timeout
        )
        await self.durable_sink.connect()

        rabbitmq_config = self.config.rabbitmq
        self.broker = create_broker_connection(
            host=rabbitmq_config.host,
            port=rabbitmq_config.port,
            username=rabbitmq_config.username,
            password=rabbitmq_config.password,
            queue_name=rabbitmq_config.queue_name,
            virtual_host=rabbitmq_config.virtual_host,
            prefetch_count=rabbitmq_config.prefetch_count,
            connect_timeout=rabbitmq_config.connect_timeout,
            reconnect_interval=rabbitmq_config.reconnect_interval,
            verify_ssl=rabbitmq_config.verify_ssl
        )
        self.channel = await self._connect_broker()

    async def _connect_broker(self) -> DeliveryChannel:
        """
        Connect to the broker, retrying on the reconnect interval.

        Raises:
            BrokerConnectionError: When attempts are exhausted or shutdown was requested
        """
        max_attempts = self.config.rabbitmq.startup_connect_attempts
        interval = self.config.rabbitmq.reconnect_interval
        attempt = 0

        while True:
            attempt += 1
            try:
                return await self.broker.connect()
            except BrokerConnectionError as e:
                if max_attempts and attempt >= max_attempts:
                    raise

                logger.warning(
                    f"Broker unreachable, retrying in {interval}s",
                    extra={"component": "app", "attempt": attempt, "error": str(e)}
                )

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

            raise BrokerConnectionError("Shutdown requested before broker connection was established")

    def _initialize_services(self) -> None:
        """Initialize the write path and the consumer."""
        self.codec = create_envelope_codec()

        self.processor = TelemetryBatchProcessor(
            durable_sink=self.durable_sink,
            session_cache=self.session_cache
        )

        self.consumer = TelemetryConsumer(
            channel=self.channel,
            decoder=self.codec,
            processor=self.processor,
            max_concurrency=self.config.rabbitmq.max_concurrency,
            stats_interval_seconds=self.config.consumer.stats_interval_seconds
        )

    async def cleanup(self) -> None:
        """
        Cleanup application resources.
        Each step runs even if an earlier one failed.
        """
        logger.info("Cleaning up application resources")

        if self.consumer:
            try:
                await self.consumer.stop()
            except Exception as e:
                logger.error(f"Error stopping consumer: {e}")
            self.consumer = None

        if self.broker:
            await self.broker.close()
            self.broker = None
            self.channel = None

        if self.session_cache:
            await self.session_cache.close()
            self.session_cache = None

        if self.durable_sink:
            await self.durable_sink.close()
            self.durable_sink = None

        logger.info("Application cleanup completed")

    async def run(self) -> None:
        """
        Run the application until a shutdown signal or a consumer failure.
        """
        if not self.consumer:
            raise RuntimeError("Application not setup. Call setup() first.")

        self._setup_signal_handlers()

        try:
            await self.consumer.start()

            logger.info(
                "Application started successfully",
                extra={
                    "component": "app",
                    "queue_name": self.config.rabbitmq.queue_name
                }
            )

            await self._wait_for_shutdown()

        finally:
            await self.cleanup()

    async def _wait_for_shutdown(self) -> None:
        """
        Wait for shutdown signal or consumer failure.

        Raises:
            RuntimeError: If the consumer became unhealthy, so the process
                exits non-zero and the supervisor restarts it
        """
        interval = self.config.consumer.health_check_interval_seconds

        while not self._shutdown_event.is_set():
            health = self.consumer.health_check()
            if not health.get("overall_healthy", False):
                logger.error(
                    "Consumer unhealthy, stopping for restart",
                    extra={"component": "app", "health": health}
                )
                raise RuntimeError(f"Consumer unhealthy: {health.get('error', 'worker tasks stopped')}")

            if self.broker and not self.broker.is_connected():
                logger.warning("Broker connection down, waiting for recovery")

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

        logger.info("Shutdown signal received, stopping application")

    @asynccontextmanager
    async def lifespan(self):
        """
        Context manager for application lifecycle.
        """
        try:
            await self.setup()
            yield self
        finally:
            await self.cleanup()

    async def get_stats(self) -> dict:
        stats = {
            "application": self.config.service_name,
            "status": "running" if self.consumer and self.consumer.is_running else "stopped",
            "config": {
                "queue_name": self.config.rabbitmq.queue_name,
                "prefetch_count": self.config.rabbitmq.prefetch_count,
                "max_concurrency": self.config.rabbitmq.max_concurrency,
                "cache_enabled": bool(self.session_cache and self.session_cache.enabled)
            }
        }

        if self.consumer:
            stats["consumer"] = self.consumer.get_stats().summary()
            stats["health"] = self.consumer.health_check()

        if self.durable_sink:
            stats["durable_sink_healthy"] = await self.durable_sink.health_check()

        if self.session_cache and self.session_cache.enabled:
            stats["session_cache_healthy"] = await self.session_cache.health_check()

        return stats


async def main() -> None:
    """
    Main entry point for the application.
    """
    try:
        config = load_config()

        setup_logging(
            level=config.logging.level,
            service_name=config.service_name,
            enable_json=config.logging.json_format,
            enable_correlation=config.logging.enable_correlation
        )

        logger.info(
            "IMU worker starting up",
            extra={
                "component": "app",
                "queue_name": config.rabbitmq.queue_name
            }
        )

        async with IMUWorkerApplication(config).lifespan() as app:
            await app.run()

    except KeyboardInterrupt:
        logger.info("Service interrupted by user")
    except Exception as e:
        logger.error(f"Service failed: {e}", exc_info=True)
        sys.exit(1)


def health_check() -> bool:
    """
    Container health check: configuration must load and validate.
    """
    try:
        load_config()
        return True
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return False


def cli() -> None:
    if len(sys.argv) > 1 and sys.argv[1] == "healthcheck":
        sys.exit(0 if health_check() else 1)

    asyncio.run(main())


if __name__ == "__main__":
    cli()
