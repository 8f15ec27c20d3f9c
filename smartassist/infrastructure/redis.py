"""Redis pub/sub transport for change notifications.

Lets several API workers share one stream of change signals: each worker
publishes the signals for its own writes to Redis and fans out whatever it
reads back to its local listeners.

For Cloud Run with Memorystore:
- Set REDIS_HOST to the Memorystore instance IP
- Set REDIS_PASSWORD if authentication is enabled
- Ensure VPC connector is configured for Cloud Run
"""
import asyncio
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError

from smartassist.core.config import settings
from smartassist.core.logging import get_logger
from smartassist.domain.dashboard import ChangeEvent, ChangeKind
from smartassist.infrastructure.notifications import LocalNotificationChannel

logger = get_logger(__name__)

# Redis connection pool (lazy initialization)
_redis_pool: Optional[aioredis.ConnectionPool] = None
_redis_client: Optional[aioredis.Redis] = None


async def get_redis_client(
    host: Optional[str] = None,
    port: Optional[int] = None,
    db: Optional[int] = None,
    password: Optional[str] = None,
) -> Optional[aioredis.Redis]:
    """Get or create the shared Redis client.

    Uses settings from environment variables if not explicitly provided.
    Returns None if Redis is not available so callers can fall back to the
    in-process channel.
    """
    global _redis_pool, _redis_client

    host = host or settings.redis_host
    port = port or settings.redis_port
    db = db if db is not None else settings.redis_db
    password = password or settings.redis_password

    if _redis_client is None:
        logger.info(f"Initializing Redis connection pool: {host}:{port}")

        try:
            _redis_pool = aioredis.ConnectionPool(
                host=host,
                port=port,
                db=db,
                password=password,
                decode_responses=True,
                max_connections=50,
                socket_connect_timeout=5,
            )
            _redis_client = aioredis.Redis(connection_pool=_redis_pool)
            await _redis_client.ping()
            logger.info("Redis connection established successfully")

        except RedisConnectionError as e:
            logger.error(f"Failed to connect to Redis: {e}", exc_info=True)
            _redis_client = None
            return None
        except Exception as e:
            logger.error(f"Redis initialization error: {e}", exc_info=True)
            _redis_client = None
            return None

    return _redis_client


class RedisNotificationChannel(LocalNotificationChannel):
    """Change-signal channel bridged through Redis pub/sub.

    One Redis channel per table (``<prefix><table>``), JSON payloads.
    Subscribing and unsubscribing stay local and synchronous; only
    ``start`` and ``close`` touch the network for the listener side.

    If the pub/sub connection drops, the reader resubscribes with
    exponential backoff. Signals published while it was away are lost, so
    after resubscribing it delivers one table-wide signal per listened
    table and listeners re-read their state.

    Example:
        >>> channel = RedisNotificationChannel(client)
        >>> await channel.start()
        >>> handle = channel.subscribe(["help_requests"], print)
    """

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        channel_prefix: Optional[str] = None,
        reconnect_delay: float = 0.5,
        max_reconnect_delay: float = 30.0,
    ):
        super().__init__()
        self.redis = redis_client
        self.prefix = channel_prefix or settings.redis_channel_prefix
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self._pubsub = None
        self._reader: Optional[asyncio.Task] = None

    @property
    def listening(self) -> bool:
        """True while the reader runs on a live subscription."""
        return self._pubsub is not None and self._reader is not None and not self._reader.done()

    async def connect(self) -> aioredis.Redis:
        if self.redis is None:
            self.redis = await get_redis_client()
        if self.redis is None:
            raise RedisConnectionError("Redis is not available")
        return self.redis

    async def start(self) -> None:
        await self._subscribe()
        self._reader = asyncio.create_task(self._read_loop(), name="redis-change-reader")
        logger.info(f"Listening for change signals on {self.prefix}*")

    async def publish(self, event: ChangeEvent) -> None:
        client = await self.connect()
        await client.publish(f"{self.prefix}{event.table}", event.model_dump_json())

    def handle_message(self, message: dict) -> None:
        """Decode one pub/sub message and fan it out locally."""
        if message.get("type") not in ("message", "pmessage"):
            return
        try:
            event = ChangeEvent.model_validate_json(message["data"])
        except ValueError as exc:
            logger.warning(f"Dropping malformed change signal: {exc}")
            return
        self._deliver(event)

    async def _subscribe(self) -> None:
        client = await self.connect()
        pubsub = client.pubsub()
        await pubsub.psubscribe(f"{self.prefix}*")
        self._pubsub = pubsub

    async def _release(self) -> None:
        pubsub, self._pubsub = self._pubsub, None
        if pubsub is None:
            return
        try:
            await pubsub.punsubscribe()
            await pubsub.aclose()
        except Exception as exc:
            logger.warning(f"Error closing Redis pub/sub: {exc}")

    def _signal_catch_up(self) -> None:
        tables = set()
        for listened, _ in list(self._listeners.values()):
            tables.update(listened)
        for table in sorted(tables):
            self._deliver(ChangeEvent(table=table, event=ChangeKind.UPDATE))

    async def _read_loop(self) -> None:
        delay = self.reconnect_delay
        while True:
            try:
                if self._pubsub is None:
                    await self._subscribe()
                    logger.info(f"Resubscribed to {self.prefix}*")
                    self._signal_catch_up()
                async for message in self._pubsub.listen():
                    delay = self.reconnect_delay
                    self.handle_message(message)
                logger.warning("Redis change stream ended")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"Redis change reader lost its subscription: {exc}", exc_info=True)
            await self._release()
            logger.info(f"Reconnecting to Redis pub/sub in {delay:.1f}s")
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.max_reconnect_delay)

    async def close(self) -> None:
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        await self._release()
        await super().close()
