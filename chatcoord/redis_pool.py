"""
Shared Redis connection pools for the Redis lease backend.
"""

import logging
from typing import Dict, Optional

import redis

from .config import Config, config as default_config

logger = logging.getLogger(__name__)


class RedisPoolManager:
    """One ``ConnectionPool`` per Redis URL, created on first use."""

    def __init__(self):
        self._pools: Dict[str, redis.ConnectionPool] = {}

    def get_pool(self, cfg: Optional[Config] = None) -> redis.ConnectionPool:
        cfg = cfg or default_config
        pool = self._pools.get(cfg.REDIS_URL)
        if pool is None:
            pool = redis.ConnectionPool.from_url(
                cfg.REDIS_URL,
                max_connections=cfg.REDIS_MAX_CONNECTIONS,
                socket_connect_timeout=cfg.REDIS_SOCKET_CONNECT_TIMEOUT,
                socket_timeout=cfg.REDIS_SOCKET_TIMEOUT,
                retry_on_timeout=cfg.REDIS_RETRY_ON_TIMEOUT,
                decode_responses=True
            )
            self._pools[cfg.REDIS_URL] = pool
            logger.debug(f"Created Redis pool for {cfg.REDIS_URL}")
        return pool

    def get_client(self, cfg: Optional[Config] = None) -> redis.Redis:
        return redis.Redis(connection_pool=self.get_pool(cfg))

    def close_all(self) -> None:
        for pool in self._pools.values():
            pool.disconnect()
        self._pools.clear()


redis_pool_manager = RedisPoolManager()
