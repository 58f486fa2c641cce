import logging, os, uuid, json, signal, asyncio
from typing import Optional, Sequence

import redis

from core.bus import CommandBus, RedisCommandBus
from core.config import settings
from core.logging_config import configure_logging
from core.redis_client import get_async_redis_client
from core.store import RedisStore, SharedStore
from .audio import AudioBackend
from .broadcast import BroadcastManager, BroadcastState, load_rotation_pool
from .catalog import Catalog
from .event_handler import EventHandler
from .heartbeat import HeartbeatService
from .loader import MODULES_DIR, ModuleLoader
from .reloader import ReloadCoordinator
from .status import RedisStatusSink, StatusSink

logger = logging.getLogger(__name__)

SHUTDOWN_STATUS = "Restarting/shutting down..."


def new_worker_id() -> str:
    return f"cluster-{os.getpid()}-{uuid.uuid4().hex[:8]}"


class ShardWorker:
    """
    One member of the pool: loads the handler modules, answers bus commands,
    rotates its status and consumes its share of inbound events.
    Collaborators can be injected; anything left out is built on redis.
    """

    def __init__(self, worker_id: Optional[str] = None, redis_client=None,
                 bus: Optional[CommandBus] = None, store: Optional[SharedStore] = None,
                 sink: Optional[StatusSink] = None, audio: Optional[AudioBackend] = None,
                 modules_dir: Optional[str] = None, rotation_pool: Optional[Sequence[str]] = None,
                 rotation_interval: Optional[float] = None):
        self.worker_id = worker_id or settings.WORKER_ID or new_worker_id()
        self.running = True
        self.redis = redis_client
        self.bus = bus
        self.store = store
        self.sink = sink
        self.audio = audio or AudioBackend()
        self.modules_dir = modules_dir or settings.MODULES_DIR or MODULES_DIR
        self.rotation_pool = rotation_pool
        self.rotation_interval = rotation_interval

        self.catalog = Catalog()
        self.loader = ModuleLoader(self.catalog, audio_available=self.audio.available)
        self.reloader = ReloadCoordinator(self.catalog, self.loader, self.worker_id)
        self.events = EventHandler(self.worker_id, self.catalog)
        self.broadcast: Optional[BroadcastManager] = None
        self.heartbeat: Optional[HeartbeatService] = None

    def _wire(self):
        if self.redis is None:
            self.redis = get_async_redis_client()
        if self.bus is None:
            self.bus = RedisCommandBus(self.redis, self.worker_id, timeout=settings.COMMAND_TIMEOUT_SECONDS)
        if self.store is None:
            self.store = RedisStore(self.redis)
        if self.sink is None:
            self.sink = RedisStatusSink(self.redis, self.worker_id, settings.BOT_USERNAME)

        pool = load_rotation_pool() if self.rotation_pool is None else tuple(self.rotation_pool)
        self.broadcast = BroadcastManager(BroadcastState(rotation_pool=pool), self.sink, self.store,
                                          interval=self.rotation_interval)
        self.heartbeat = HeartbeatService(self.redis, self.worker_id,
                                          ttl_seconds=settings.HEARTBEAT_TTL_SECONDS,
                                          interval=settings.HEARTBEAT_INTERVAL_SECONDS)

        self.reloader.register(self.bus)
        self.audio.register(self.bus, self.worker_id, on_reloaded=self.reloader.retry_deferred)
        self.broadcast.register(self.bus)

    async def init(self):
        await self.audio.check_status()
        # imports are blocking, run the scan off the loop
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.loader.load_all, self.modules_dir)
        await self.bus.start()

    async def launch(self):
        self._wire()
        try:
            await self.init()
        except Exception:
            logger.exception("Might have failed to register some things")

        if not self.audio.status and not self.audio.connected:
            await self.audio.connect()

        # hydrates the override before the first rotation tick
        await self.broadcast.start()
        await self.heartbeat.start()
        logger.info(f"Started cluster {self.worker_id}.")

    async def run(self):
        await self.launch()

        queue = f"{settings.EVENT_QUEUE_PREFIX}:{self.worker_id}"
        logger.info(f"Worker:{self.worker_id} listening on {queue}.")
        while self.running:
            try:
                # Timeout allows loop to check self.running periodically.
                result = await self.redis.brpop(queue, timeout=1.0)
                if result:
                    _, raw_data = result
                    try:
                        event = json.loads(raw_data)
                    except json.JSONDecodeError:
                        logger.error(f"worker:{self.worker_id} failed to decode event to json")
                        continue
                    await self.events.handle_event(event)
            except redis.RedisError as e:
                # Prevent CPU spin if Redis connection drops
                if self.running:
                    logger.error(f"Worker {self.worker_id} Loop Error: {e}")
                    await asyncio.sleep(2)

        await self.shutdown()

    async def shutdown(self):
        logger.warning(f"Worker:{self.worker_id} shutting down...")
        # off the bus and out of rotation first, nothing may replace the shutdown status
        await self.bus.stop()
        if self.broadcast is not None:
            await self.broadcast.stop()
        try:
            await self.sink.set_status(SHUTDOWN_STATUS, decorate=False)
        except redis.RedisError as e:
            logger.error(f"Could not publish the shutdown status: {e}")

        for identifier in self.catalog.identifiers():
            self.loader.unload(identifier)

        await self.audio.release()
        if self.heartbeat is not None:
            await self.heartbeat.stop()
        await self.redis.aclose()
        logger.info(f"Worker:{self.worker_id} stopped")

    def request_shutdown(self):
        logger.info("Shutdown signal received.")
        self.running = False


async def main():
    configure_logging("worker")
    worker = ShardWorker()
    # Handle Signals for graceful shutdown
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, worker.request_shutdown)

    await worker.run()

if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
