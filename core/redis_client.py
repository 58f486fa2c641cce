import redis
import redis.asyncio as aioredis
from .config import settings

# Used by the control plane: status reads, heartbeat discovery.
redis_sync = redis.Redis(
    host=settings.REDIS_HOST, port=settings.REDIS_PORT,
    password=settings.REDIS_PASSWORD, db=0, decode_responses=True
)


def get_redis() -> redis.Redis:
    """
    Default FastAPI dependency.
    Synchronous client shared by every request of the control plane.
    """
    return redis_sync

# ================ to get the async redis client ====================

def get_async_redis_client() -> aioredis.Redis:
    """
    Returns an ASYNC Redis connection.
    Used by the worker (and the controller's bus) for pub/sub, the central
    store, heartbeats and popping events without blocking the loop.
    """
    auth = f":{settings.REDIS_PASSWORD}@" if settings.REDIS_PASSWORD else ""
    url = f"redis://{auth}{settings.REDIS_HOST}:{settings.REDIS_PORT}/0"
    return aioredis.from_url(url, decode_responses=True)
