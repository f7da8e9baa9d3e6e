"""
Shared async Redis connection pool.

Used by the change-notification feed. Pub/sub subscribers sit idle on a socket
for as long as a client stays connected, so the pool sets no read timeout; only
connecting is bounded.
"""

import logging
from typing import Optional

import redis.asyncio as redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import (
    BusyLoadingError,
    ConnectionError,
    TimeoutError,
)

from kinship.core.config import settings

log = logging.getLogger(__name__)

_redis_pool: Optional[redis.ConnectionPool] = None

POOL_MAX_CONNECTIONS = 50
SOCKET_CONNECT_TIMEOUT = 5.0    # seconds
HEALTH_CHECK_INTERVAL = 30      # seconds between liveness pings
RETRY_ATTEMPTS = 3


def _create_pool() -> redis.ConnectionPool:
    return redis.ConnectionPool.from_url(
        settings.REDIS_URL,
        max_connections=POOL_MAX_CONNECTIONS,
        socket_connect_timeout=SOCKET_CONNECT_TIMEOUT,
        health_check_interval=HEALTH_CHECK_INTERVAL,
        decode_responses=True,
    )


def _create_retry() -> Retry:
    """Exponential backoff (cap 0.5s) for network blips, Redis restarts and dataset loading."""
    return Retry(
        retries=RETRY_ATTEMPTS,
        backoff=ExponentialBackoff(cap=0.5, base=0.1),
        supported_errors=(ConnectionError, TimeoutError, BusyLoadingError),
    )


async def get_redis() -> redis.Redis:
    """
    Returns a lightweight client that borrows connections from the shared pool.
    The pool is created on first use.
    """
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = _create_pool()
        log.info(
            "Redis connection pool initialized (max_connections=%d, health_check_interval=%ds)",
            POOL_MAX_CONNECTIONS, HEALTH_CHECK_INTERVAL,
        )

    return redis.Redis(
        connection_pool=_redis_pool,
        retry=_create_retry(),
    )


async def close_redis():
    """Closes pooled connections; called from the application lifespan."""
    global _redis_pool
    if _redis_pool:
        await _redis_pool.disconnect()
        _redis_pool = None
        log.info("Redis connection pool closed")
