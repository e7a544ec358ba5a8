# shipbuilder_mcp/storage/redis_base.py
import logging
from typing import Any, Dict, Optional

import redis.asyncio as aioredis

from ..settings import Settings

logger = logging.getLogger(__name__)


def build_redis_client(settings: Settings) -> aioredis.Redis:
    """
    Builds an asyncio Redis client from settings. A configured redis_url wins
    over the discrete host/port/db fields.
    """
    if settings.redis_url:
        logger.info("Building Redis client from configured REDIS_URL.")
        return aioredis.Redis.from_url(settings.redis_url, decode_responses=False)

    connection_params: Dict[str, Any] = {
        "host": settings.redis_host,
        "port": settings.redis_port,
        "db": settings.redis_db,
        "decode_responses": False,  # Keep as bytes for explicit encoding control
    }
    if settings.redis_password:
        connection_params["password"] = settings.redis_password
    if settings.redis_ssl:
        connection_params["ssl"] = True

    logger.info(
        f"Building Redis client for {connection_params['host']}:"
        f"{connection_params['port']}, DB: {connection_params['db']}"
    )
    return aioredis.Redis(**connection_params)


class RedisBackedStore:
    """
    Connection lifecycle shared by every Redis-backed store.

    A store either receives a ready client (shared across stores, or a fake in
    tests) or builds one from settings during initialize(). Only clients the
    store built itself are closed on shutdown.
    """

    store_name: str = "RedisBackedStore"

    def __init__(
        self,
        client: Optional[aioredis.Redis] = None,
        settings: Optional[Settings] = None,
    ):
        if client is None and settings is None:
            raise ValueError(f"{self.store_name} requires either a Redis client or settings.")
        self._redis_client: Optional[aioredis.Redis] = client
        self._settings = settings
        self._owns_client = client is None

    async def initialize(self) -> None:
        if self._redis_client is None:
            self._redis_client = build_redis_client(self._settings)  # type: ignore[arg-type]
        try:
            await self._redis_client.ping()
            logger.info(f"{self.store_name}: Successfully connected to Redis and pinged.")
        except Exception as e:
            logger.error(f"{self.store_name}: Failed to connect to Redis: {e}", exc_info=True)
            if self._owns_client:
                self._redis_client = None
            raise

    async def shutdown(self) -> None:
        if self._redis_client is not None and self._owns_client:
            logger.info(f"{self.store_name}: Closing Redis connection.")
            await self._redis_client.aclose()
            self._redis_client = None
        else:
            logger.debug(f"{self.store_name}: No owned Redis connection to close.")

    def _get_client(self) -> aioredis.Redis:
        if self._redis_client is None:
            logger.error(f"{self.store_name}: Redis client not initialized. Call initialize() first.")
            raise RuntimeError(f"{self.store_name} not initialized. Call initialize() first.")
        return self._redis_client
