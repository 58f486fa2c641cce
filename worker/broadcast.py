"""
Playing status of the worker: rotates through a message pool on a timer,
unless some worker of the pool started an override. The override lives in
the central store (key "broadcast") so late joiners pick it up, and is
pushed to running workers with override_began / override_ended broadcasts.

Concurrent overrides are not fenced: last writer wins in the store and
receivers converge on the last broadcast they get.
"""
import asyncio, json, logging, os, random
from dataclasses import dataclass
from typing import Optional, Tuple

import redis

from core.bus import BEGIN_OVERRIDE, END_OVERRIDE, OVERRIDE_BEGAN, OVERRIDE_ENDED, CommandBus
from core.config import settings
from core.errors import CommandFailed
from core.store import SharedStore
from .status import StatusSink

logger = logging.getLogger(__name__)

BROADCAST_KEY = "broadcast"
MESSAGES_FILE = os.path.join(os.path.dirname(os.path.abspath(__file__)), "messages.json")


def load_rotation_pool(path: Optional[str] = None) -> Tuple[str, ...]:
    path = path or settings.MESSAGES_FILE or MESSAGES_FILE
    try:
        with open(path, encoding="utf-8") as f:
            messages = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"Could not read rotation messages from {path}: {e}")
        return ()
    if not isinstance(messages, list):
        logger.error(f"{path} must hold a JSON array of strings")
        return ()
    return tuple(str(m) for m in messages if m)


@dataclass
class BroadcastState:
    rotation_pool: Tuple[str, ...]
    override_value: Optional[str] = None
    displayed: Optional[str] = None

    @property
    def overridden(self) -> bool:
        return self.override_value is not None


class BroadcastManager:
    def __init__(self, state: BroadcastState, sink: StatusSink, store: SharedStore,
                 interval: Optional[float] = None, rng: Optional[random.Random] = None):
        self.state = state
        self.sink = sink
        self.store = store
        self.interval = interval if interval is not None else settings.ROTATION_INTERVAL_SECONDS
        self.rng = rng or random.Random()
        self.bus: Optional[CommandBus] = None
        self._task: Optional[asyncio.Task] = None

    async def _display(self, value: str):
        self.state.displayed = value
        await self.sink.set_status(value)

    # ===================== LOCAL TRANSITIONS =====================

    async def tick(self) -> Optional[str]:
        """Shows a random pool entry, or does nothing while overridden."""
        if self.state.overridden:
            return None
        if not self.state.rotation_pool:
            logger.warning("Rotation pool is empty, keeping the current status")
            return None
        value = self.rng.choice(self.state.rotation_pool)
        await self._display(value)
        return value

    async def apply_override(self, value: str):
        # idempotent: a repeated or late override_began just shows the value again
        self.state.override_value = value
        await self._display(value)

    async def clear_override(self):
        self.state.override_value = None
        await self.tick()

    async def hydrate(self) -> Optional[str]:
        """Adopts an override that is already active in the pool."""
        try:
            value = await self.store.get(BROADCAST_KEY)
        except redis.RedisError as e:
            logger.error(f"Could not read the broadcast state, starting in rotation: {e}")
            return None
        if value:
            logger.info(f"Override '{value}' is active in the pool, showing it")
            await self.apply_override(value)
        return value

    # ===================== POOL-WIDE TRANSITIONS =====================

    async def begin_override(self, value: str) -> str:
        try:
            await self.store.set(BROADCAST_KEY, value)
        except redis.RedisError as e:
            raise CommandFailed(f"Could not store the override: {e}") from e
        await self.apply_override(value)
        # the value is already stored: restarted workers hydrate it even if siblings miss this
        if not await self.bus.announce(OVERRIDE_BEGAN, {"value": value}):
            logger.warning(f"Override '{value}' is stored but running workers were not notified")
        return value

    async def end_override(self):
        try:
            await self.store.delete(BROADCAST_KEY)
        except redis.RedisError as e:
            raise CommandFailed(f"Could not clear the override: {e}") from e
        await self.clear_override()
        if not await self.bus.announce(OVERRIDE_ENDED):
            logger.warning("Override is cleared but running workers were not notified")

    # ===================== BUS WIRING =====================

    def register(self, bus: CommandBus):
        self.bus = bus
        bus.register_command(BEGIN_OVERRIDE, self._handle_begin)
        bus.register_command(END_OVERRIDE, self._handle_end)
        bus.on_broadcast(OVERRIDE_BEGAN, self._on_began)
        bus.on_broadcast(OVERRIDE_ENDED, self._on_ended)

    async def _handle_begin(self, payload: dict) -> str:
        value = payload.get("value")
        if not value or not isinstance(value, str):
            raise CommandFailed("begin_override needs a non-empty 'value'")
        return await self.begin_override(value)

    async def _handle_end(self, payload: dict):
        await self.end_override()

    async def _on_began(self, payload: dict):
        await self.apply_override(payload["value"])

    async def _on_ended(self, payload: dict):
        await self.clear_override()

    # ===================== TIMER =====================

    async def start(self):
        """Hydrates first so a restarted worker never flashes a rotated status."""
        await self.hydrate()
        self._task = asyncio.create_task(self._run())

    async def _run(self):
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Status rotation failed, trying again next period")
            await asyncio.sleep(self.interval)

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
