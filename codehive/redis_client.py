"""Async Redis client for event publishing."""

from redis.asyncio import ConnectionPool, Redis


def create_redis_client(url: str, max_connections: int = 20) -> Redis:
    """Create an async Redis client with its own connection pool."""
    pool = ConnectionPool.from_url(url, max_connections=max_connections, decode_responses=True)
    return Redis(connection_pool=pool)
