import asyncio, logging, uuid
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional

import redis
from pydantic import BaseModel, Field

from .errors import BusDeliveryError, CommandFailed

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "shard"
BROADCAST_CHANNEL = f"{CHANNEL_PREFIX}:broadcast"
CENTRAL_NODE = "central"
# backoff before resubscribing after the pub/sub connection dropped
RESUBSCRIBE_DELAY_SECONDS = 2

# Command names
RELOAD = "reload"
RELOAD_AUDIO = "reload_audio"
BEGIN_OVERRIDE = "begin_override"
END_OVERRIDE = "end_override"

# Broadcast names
RELOAD_SUCCEEDED = "reload_succeeded"
RELOAD_FAILED = "reload_failed"
AUDIO_RELOAD_SUCCEEDED = "audio_reload_succeeded"
AUDIO_RELOAD_FAILED = "audio_reload_failed"
OVERRIDE_BEGAN = "override_began"
OVERRIDE_ENDED = "override_ended"

CommandHandler = Callable[[Dict[str, Any]], Awaitable[Any]]
BroadcastListener = Callable[[Dict[str, Any]], Awaitable[None]]

# ===================== WIRE ENVELOPES =====================

class CommandEnvelope(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    sender: str
    reply_to: Optional[str] = None


class ReplyEnvelope(BaseModel):
    id: str
    ok: bool
    result: Any = None
    error: Optional[str] = None
    # False when the target had no handler registered for the command name
    delivered: bool = True


class BroadcastEnvelope(BaseModel):
    name: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    sender: str
    include_self: bool = False


# ===================== TRANSPORT-INDEPENDENT BUS =====================

class CommandBus:
    """
    Request -> single reply to one node, and broadcast -> every node.
    Subclasses only move envelopes around; handler lookup, failure
    replies and broadcast filtering live here.
    """

    def __init__(self, node_id: str, timeout: float = 10):
        self.node_id = node_id
        self.timeout = timeout
        self._commands: Dict[str, CommandHandler] = {}
        self._listeners: Dict[str, List[BroadcastListener]] = defaultdict(list)

    def register_command(self, name: str, handler: CommandHandler):
        if name in self._commands:
            logger.warning(f"Command '{name}' re-registered on node {self.node_id}")
        self._commands[name] = handler

    def on_broadcast(self, name: str, listener: BroadcastListener):
        self._listeners[name].append(listener)

    async def start(self):
        pass

    async def stop(self):
        pass

    async def request(self, target: str, name: str, payload: Optional[dict] = None) -> ReplyEnvelope:
        """Sends one command and waits for its reply. Raises BusDeliveryError."""
        raise NotImplementedError

    async def broadcast(self, name: str, payload: Optional[dict] = None, include_self: bool = False):
        raise NotImplementedError

    async def announce(self, name: str, payload: Optional[dict] = None, include_self: bool = False) -> bool:
        """Broadcast that only logs a delivery failure, for notifications nobody waits on."""
        try:
            await self.broadcast(name, payload, include_self=include_self)
            return True
        except BusDeliveryError as e:
            logger.error(f"Broadcast '{name}' from {self.node_id} was not delivered: {e}")
            return False

    def _check(self, reply: ReplyEnvelope) -> ReplyEnvelope:
        if not reply.delivered:
            raise BusDeliveryError(reply.error or "command was not delivered")
        return reply

    async def _dispatch_command(self, envelope: CommandEnvelope) -> ReplyEnvelope:
        handler = self._commands.get(envelope.name)
        if handler is None:
            logger.error(f"Node {self.node_id} has no handler for command '{envelope.name}'")
            return ReplyEnvelope(id=envelope.id, ok=False, delivered=False,
                                 error=f"Node {self.node_id} has no handler for '{envelope.name}'")
        try:
            if asyncio.iscoroutinefunction(handler):
                result = await handler(envelope.payload)
            else:
                result = handler(envelope.payload)
        except CommandFailed as e:
            return ReplyEnvelope(id=envelope.id, ok=False, error=e.reason)
        except Exception as e:
            logger.exception(f"Command '{envelope.name}' crashed on node {self.node_id}")
            return ReplyEnvelope(id=envelope.id, ok=False, error=f"internal error: {e}")
        return ReplyEnvelope(id=envelope.id, ok=True, result=result)

    async def _dispatch_broadcast(self, envelope: BroadcastEnvelope):
        if envelope.sender == self.node_id and not envelope.include_self:
            return
        for listener in list(self._listeners.get(envelope.name, ())):
            try:
                await listener(envelope.payload)
            except Exception:
                logger.exception(f"Listener for broadcast '{envelope.name}' failed on node {self.node_id}")


# ===================== REDIS PUB/SUB TRANSPORT =====================

def command_channel(node_id: str) -> str:
    return f"{CHANNEL_PREFIX}:cmd:{node_id}"


def reply_channel(node_id: str) -> str:
    return f"{CHANNEL_PREFIX}:reply:{node_id}"


class RedisCommandBus(CommandBus):
    """
    Every node listens on its own command and reply channels plus the shared
    broadcast channel. A single broadcast channel keeps one sender's
    broadcasts in send order for every receiver.
    """

    def __init__(self, redis_client, node_id: str, timeout: float = 10):
        super().__init__(node_id, timeout)
        self.redis = redis_client
        self.pubsub = None
        self._listener: Optional[asyncio.Task] = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._serving = set()
        self.resubscribe_delay = RESUBSCRIBE_DELAY_SECONDS

    async def _subscribe(self):
        self.pubsub = self.redis.pubsub(ignore_subscribe_messages=True)
        await self.pubsub.subscribe(command_channel(self.node_id),
                                    reply_channel(self.node_id),
                                    BROADCAST_CHANNEL)

    async def _drop_pubsub(self):
        pubsub, self.pubsub = self.pubsub, None
        if pubsub is None:
            return
        try:
            await pubsub.aclose()
        except redis.RedisError as e:
            logger.debug(f"Closing a broken pub/sub of node {self.node_id} failed: {e}")

    async def start(self):
        await self._subscribe()
        self._listener = asyncio.create_task(self._listen())
        logger.info(f"Node {self.node_id} joined the command bus")

    async def stop(self):
        if self._listener:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        for future in self._pending.values():
            if not future.done():
                future.set_exception(BusDeliveryError(f"Node {self.node_id} left the bus"))
        self._pending.clear()
        if self.pubsub is not None:
            try:
                await self.pubsub.unsubscribe()
                await self.pubsub.aclose()
            except redis.RedisError as e:
                logger.error(f"Error leaving the bus: {e}")
            self.pubsub = None
        logger.info(f"Node {self.node_id} left the command bus")

    async def _listen(self):
        # runs until stop() cancels it; a dropped connection only pauses it
        while True:
            try:
                if self.pubsub is None:
                    await self._subscribe()
                    logger.info(f"Node {self.node_id} rejoined the command bus")
                async for message in self.pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    try:
                        await self._handle_message(message["channel"], message["data"])
                    except Exception:
                        logger.exception(f"Node {self.node_id} dropped a malformed bus message")
                logger.warning(f"Pub/sub of node {self.node_id} ended, resubscribing")
            except redis.RedisError as e:
                logger.error(f"Node {self.node_id} lost the command bus: {e}")
            await self._drop_pubsub()
            await asyncio.sleep(self.resubscribe_delay)

    async def _handle_message(self, channel: str, data: str):
        if channel == reply_channel(self.node_id):
            reply = ReplyEnvelope.model_validate_json(data)
            future = self._pending.pop(reply.id, None)
            if future is not None and not future.done():
                future.set_result(reply)
        elif channel == command_channel(self.node_id):
            envelope = CommandEnvelope.model_validate_json(data)
            # served in its own task so a slow handler never stalls the listener
            task = asyncio.create_task(self._serve(envelope))
            self._serving.add(task)
            task.add_done_callback(self._serving.discard)
        elif channel == BROADCAST_CHANNEL:
            await self._dispatch_broadcast(BroadcastEnvelope.model_validate_json(data))

    async def _serve(self, envelope: CommandEnvelope):
        reply = await self._dispatch_command(envelope)
        if not envelope.reply_to:
            return
        try:
            await self.redis.publish(reply_channel(envelope.reply_to), reply.model_dump_json())
        except redis.RedisError as e:
            logger.error(f"Could not reply to {envelope.reply_to} for '{envelope.name}': {e}")

    async def request(self, target: str, name: str, payload: Optional[dict] = None) -> ReplyEnvelope:
        envelope = CommandEnvelope(name=name, payload=payload or {},
                                   sender=self.node_id, reply_to=self.node_id)
        future = asyncio.get_running_loop().create_future()
        self._pending[envelope.id] = future
        try:
            receivers = await self.redis.publish(command_channel(target), envelope.model_dump_json())
            if not receivers:
                raise BusDeliveryError(f"No process is listening for commands on '{target}'")
            reply = await asyncio.wait_for(future, timeout=self.timeout)
        except asyncio.TimeoutError:
            raise BusDeliveryError(f"'{target}' did not answer '{name}' within {self.timeout}s") from None
        except redis.RedisError as e:
            raise BusDeliveryError(f"Could not send '{name}' to '{target}': {e}") from e
        finally:
            self._pending.pop(envelope.id, None)
        return self._check(reply)

    async def broadcast(self, name: str, payload: Optional[dict] = None, include_self: bool = False):
        envelope = BroadcastEnvelope(name=name, payload=payload or {},
                                     sender=self.node_id, include_self=include_self)
        try:
            await self.redis.publish(BROADCAST_CHANNEL, envelope.model_dump_json())
        except redis.RedisError as e:
            raise BusDeliveryError(f"Could not broadcast '{name}': {e}") from e


# ===================== IN-PROCESS TRANSPORT =====================

class LocalHub:
    """Joins several LocalCommandBus nodes living in one event loop."""

    def __init__(self):
        self.nodes: Dict[str, "LocalCommandBus"] = {}


class LocalCommandBus(CommandBus):
    """
    Same contract as the redis transport without a server.
    Envelopes still go through JSON so handlers only ever see wire data.
    """

    def __init__(self, hub: LocalHub, node_id: str, timeout: float = 10):
        super().__init__(node_id, timeout)
        self.hub = hub

    async def start(self):
        self.hub.nodes[self.node_id] = self

    async def stop(self):
        self.hub.nodes.pop(self.node_id, None)

    async def request(self, target: str, name: str, payload: Optional[dict] = None) -> ReplyEnvelope:
        node = self.hub.nodes.get(target)
        if node is None:
            raise BusDeliveryError(f"No process is listening for commands on '{target}'")
        envelope = CommandEnvelope(name=name, payload=payload or {},
                                   sender=self.node_id, reply_to=self.node_id)
        wire = CommandEnvelope.model_validate_json(envelope.model_dump_json())
        # the target keeps running after a timeout, like a remote process would
        task = asyncio.ensure_future(node._dispatch_command(wire))
        try:
            reply = await asyncio.wait_for(asyncio.shield(task), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise BusDeliveryError(f"'{target}' did not answer '{name}' within {self.timeout}s") from None
        return self._check(ReplyEnvelope.model_validate_json(reply.model_dump_json()))

    async def broadcast(self, name: str, payload: Optional[dict] = None, include_self: bool = False):
        envelope = BroadcastEnvelope(name=name, payload=payload or {},
                                     sender=self.node_id, include_self=include_self)
        data = envelope.model_dump_json()
        for node in list(self.hub.nodes.values()):
            await node._dispatch_broadcast(BroadcastEnvelope.model_validate_json(data))
