import asyncio, logging
import redis

logger = logging.getLogger(__name__)

HEARTBEAT_PATTERN = "shard:worker:*:heartbeat"


def heartbeat_key(worker_id: str) -> str:
    return f"shard:worker:{worker_id}:heartbeat"


def worker_id_from_key(key: str) -> str:
    return key.split(":")[2]


class HeartbeatService:
    def __init__(self, redis_client, worker_id: str, ttl_seconds: int = 10, interval: int = 3):
        self.redis = redis_client
        self.worker_id = worker_id
        self.ttl_seconds = ttl_seconds
        self.interval = interval
        self.running = True
        self._task = None

    async def start(self):
        """ Starts the background hearbeat loop """
        self._task = asyncio.create_task(self._loop())

    async def _loop(self):
        logger.info(f"Started the heartbeat of the worker:{self.worker_id} asyncronously")
        key = heartbeat_key(self.worker_id)

        while self.running:
            try:
                await self.redis.set(key, "alive", ex=self.ttl_seconds)
            except redis.RedisError as e:
                logger.error(f"Heartbeat failed: {e}")

            await asyncio.sleep(self.interval)

    async def stop(self):
        """ Stops the heartbeat and drops the key so the controller stops routing here """
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        try:
            await self.redis.delete(heartbeat_key(self.worker_id))
        except redis.RedisError as e:
            logger.error(f"Could not remove heartbeat key: {e}")
        logger.info(f"Heartbeat of worker:{self.worker_id} stopped")
