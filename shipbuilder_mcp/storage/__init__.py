# shipbuilder_mcp/storage/__init__.py
from .redis_base import RedisBackedStore, build_redis_client

__all__ = ["RedisBackedStore", "build_redis_client"]
