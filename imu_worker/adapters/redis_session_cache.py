"""
Redis implementation of the session cache.
Keeps the recent data points of each session in a TTL-bound Redis list.
"""

import logging
from datetime import timedelta
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..domain.dto import IMUDataPoint
from ..domain.ports import CacheError, SessionCache


logger = logging.getLogger(__name__)

# Connection-string options understood after ``host:port``
ENDPOINT_OPTIONS = {
    "password", "user", "ssl", "defaultdatabase", "connecttimeout", "synctimeout", "abortconnect"
}


def parse_endpoint(endpoint: str) -> Tuple[str, Dict[str, str]]:
    """
    Split ``host:port,key=value,...`` into the address and lower-cased options.

    Raises:
        ValueError: On an empty address or an option without ``=``
    """
    address, *parts = [part.strip() for part in endpoint.split(",")]
    if not address or "=" in address:
        raise ValueError("Redis endpoint must start with host:port")

    options = {}
    for part in parts:
        if not part:
            continue
        key, sep, value = part.partition("=")
        if not sep:
            raise ValueError(f"Redis endpoint option {part!r} is not key=value")
        options[key.strip().lower()] = value.strip()
    return address, options


class RedisSessionCache(SessionCache):
    """
    Best-effort session cache.

    Every append resets the TTL, so an active session never expires mid-stream
    while an abandoned one is reclaimed by Redis. Nothing here raises: the
    durable store is the source of truth and the cache is only a fast read path.
    """

    def __init__(
        self,
        endpoint: Optional[str],
        key_prefix: str = "imu:session:",
        expiration: timedelta = timedelta(hours=24),
        use_ssl: bool = True,
        database: int = 0,
        connect_timeout: float = 10.0,
        socket_timeout: float = 5.0,
        client: Optional[redis.Redis] = None
    ):
        """
        Initialize session cache.

        Args:
            endpoint: ``host:port[,option=value...]`` or redis URL; None disables the cache
            key_prefix: Prefix of session list keys
            expiration: TTL applied on every append
            use_ssl: Use TLS when endpoint is given as ``host:port``
            database: Redis logical database
            connect_timeout: Connection timeout in seconds
            socket_timeout: Per-operation timeout in seconds
            client: Pre-built client (tests, shared pools)
        """
        self.endpoint = endpoint
        self.key_prefix = key_prefix
        self.expiration = expiration
        self.use_ssl = use_ssl
        self.database = database

        self._pool_config = {
            "socket_connect_timeout": connect_timeout,
            "socket_timeout": socket_timeout,
            "retry_on_timeout": True,
            "health_check_interval": 30
        }

        self._client: Optional[redis.Redis] = client

    @property
    def enabled(self) -> bool:
        return self._client is not None

    @property
    def ttl_seconds(self) -> int:
        return int(self.expiration.total_seconds())

    def _is_configured(self) -> bool:
        return bool(self.endpoint) and not self.endpoint.startswith("__")

    def _address(self) -> str:
        # Endpoint without options or credentials, safe to log
        if "://" in self.endpoint:
            return self.endpoint.rsplit("@", 1)[-1]
        return self.endpoint.split(",", 1)[0].strip()

    def _build_url(self) -> str:
        """
        Turn the configured endpoint into a redis URL.

        Options given after ``host:port`` override ``use_ssl``, ``database``
        and the timeouts (milliseconds). Unknown options are logged and ignored.

        Raises:
            ValueError: If the endpoint or one of its options is malformed
        """
        if "://" in self.endpoint:
            return self.endpoint

        address, options = parse_endpoint(self.endpoint)

        unknown = sorted(set(options) - ENDPOINT_OPTIONS)
        if unknown:
            logger.warning(
                f"Ignoring unsupported Redis endpoint options: {', '.join(unknown)}",
                extra={"component": "session_cache"}
            )

        use_ssl = self.use_ssl
        if "ssl" in options:
            flag = options["ssl"].lower()
            if flag not in ("true", "false"):
                raise ValueError(f"Redis endpoint option ssl must be true or false, got {options['ssl']!r}")
            use_ssl = flag == "true"

        database = self.database
        if "defaultdatabase" in options:
            database = int(options["defaultdatabase"])

        if "connecttimeout" in options:
            self._pool_config["socket_connect_timeout"] = int(options["connecttimeout"]) / 1000
        if "synctimeout" in options:
            self._pool_config["socket_timeout"] = int(options["synctimeout"]) / 1000

        credentials = ""
        if "password" in options:
            user = quote(options.get("user", ""), safe="")
            credentials = f"{user}:{quote(options['password'], safe='')}@"

        scheme = "rediss" if use_ssl else "redis"
        return f"{scheme}://{credentials}{address}/{database}"

    async def connect(self) -> None:
        """
        Create the Redis client.

        An unconfigured endpoint disables the cache. An unreachable backend
        is only logged; operations keep degrading until it comes back.
        """
        if self._client is not None:
            return

        if not self._is_configured():
            logger.warning(
                "Redis not configured or placeholder not replaced, session caching disabled",
                extra={"component": "session_cache"}
            )
            return

        try:
            url = self._build_url()
        except ValueError as e:
            logger.error(
                f"Invalid Redis endpoint, session caching disabled: {e}",
                extra={"component": "session_cache"}
            )
            return

        pool = redis.ConnectionPool.from_url(url, **self._pool_config)
        self._client = redis.Redis(connection_pool=pool)

        try:
            await self._client.ping()
            logger.info(
                "Connected to Redis session cache",
                extra={
                    "component": "session_cache",
                    "endpoint": self._address(),
                    "ssl": url.startswith("rediss://"),
                    "key_prefix": self.key_prefix,
                    "ttl_seconds": self.ttl_seconds
                }
            )
        except (RedisError, OSError) as e:
            logger.error(
                f"Redis session cache unreachable, continuing without it: {e}",
                extra={"component": "session_cache", "endpoint": self._address()}
            )

    def _key(self, session_id: str) -> str:
        return f"{self.key_prefix}{session_id}"

    async def append(self, session_id: str, data_points: List[IMUDataPoint]) -> None:
        if not self._client or not session_id or not data_points:
            return

        key = self._key(session_id)

        try:
            try:
                values = [point.model_dump_json(by_alias=True) for point in data_points]
            except ValueError as e:
                raise CacheError(f"Cannot serialize data points: {e}") from e

            async with self._client.pipeline(transaction=True) as pipe:
                pipe.rpush(key, *values)
                pipe.expire(key, self.ttl_seconds)
                await pipe.execute()

            logger.debug(
                f"Appended {len(values)} data points to session cache",
                extra={"component": "session_cache", "session_id": session_id}
            )

        except (CacheError, RedisError, OSError) as e:
            logger.error(
                f"Error appending data to Redis for session {session_id}: {e}",
                extra={"component": "session_cache", "session_id": session_id}
            )

    async def read(self, session_id: str) -> Optional[List[IMUDataPoint]]:
        if not self._client or not session_id:
            return None

        try:
            values = await self._client.lrange(self._key(session_id), 0, -1)
            if not values:
                return None

            return [IMUDataPoint.model_validate_json(value) for value in values]

        except (RedisError, OSError, ValueError) as e:
            logger.error(
                f"Error retrieving data from Redis for session {session_id}: {e}",
                extra={"component": "session_cache", "session_id": session_id}
            )
            return None

    async def count(self, session_id: str) -> int:
        if not self._client or not session_id:
            return 0

        try:
            return int(await self._client.llen(self._key(session_id)))
        except (RedisError, OSError) as e:
            logger.error(
                f"Error getting count for session {session_id}: {e}",
                extra={"component": "session_cache", "session_id": session_id}
            )
            return 0

    async def delete(self, session_id: str) -> None:
        if not self._client or not session_id:
            return

        try:
            await self._client.delete(self._key(session_id))
            logger.debug(
                "Deleted session from cache",
                extra={"component": "session_cache", "session_id": session_id}
            )
        except (RedisError, OSError) as e:
            logger.error(
                f"Error deleting session {session_id} from Redis: {e}",
                extra={"component": "session_cache", "session_id": session_id}
            )

    async def set_expiration(self, session_id: str, expiration: timedelta) -> None:
        if not self._client or not session_id:
            return

        try:
            await self._client.expire(self._key(session_id), int(expiration.total_seconds()))
        except (RedisError, OSError) as e:
            logger.error(
                f"Error setting expiration for session {session_id}: {e}",
                extra={"component": "session_cache", "session_id": session_id}
            )

    async def health_check(self) -> bool:
        if not self._client:
            return False
        try:
            await self._client.ping()
            return True
        except (RedisError, OSError) as e:
            logger.warning(f"Redis health check failed: {e}")
            return False

    async def close(self) -> None:
        try:
            if self._client:
                await self._client.aclose()
                self._client = None
                logger.info("Redis session cache closed")
        except (RedisError, OSError) as e:
            logger.error(f"Error closing Redis connection: {e}")


def create_session_cache(
    endpoint: Optional[str],
    key_prefix: str = "imu:session:",
    expiration_hours: int = 24,
    use_ssl: bool = True,
    database: int = 0,
    connect_timeout: float = 10.0,
    socket_timeout: float = 5.0
) -> RedisSessionCache:
    return RedisSessionCache(
        endpoint=endpoint,
        key_prefix=key_prefix,
        expiration=timedelta(hours=expiration_hours),
        use_ssl=use_ssl,
        database=database,
        connect_timeout=connect_timeout,
        socket_timeout=socket_timeout
    )
