"""Redis client bootstrap for the per-tournament lock."""

from redis.asyncio import ConnectionPool, Redis

from entry_engine.config import Settings

redis_pool: ConnectionPool | None = None
redis_client: Redis | None = None


async def init_redis(settings: Settings) -> Redis:
    """Initialize Redis connection with a shared connection pool."""
    global redis_pool, redis_client

    redis_pool = ConnectionPool.from_url(
        settings.redis_url,
        socket_timeout=settings.redis_socket_timeout,
        socket_connect_timeout=settings.redis_socket_connect_timeout,
        retry_on_timeout=True,
        encoding="utf-8",
        decode_responses=True,
    )
    redis_client = Redis(connection_pool=redis_pool)

    # Test connection
    await redis_client.ping()
    return redis_client


async def close_redis() -> None:
    """Close Redis connection and pool."""
    global redis_pool, redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None
    if redis_pool:
        await redis_pool.disconnect()
        redis_pool = None
