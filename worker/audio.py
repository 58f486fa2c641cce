import asyncio, logging
from typing import Awaitable, Callable, Dict, List, Optional

import aiohttp

from core.bus import AUDIO_RELOAD_FAILED, AUDIO_RELOAD_SUCCEEDED, RELOAD_AUDIO, CommandBus
from core.config import settings
from core.errors import BackendUnavailable, CommandFailed

logger = logging.getLogger(__name__)

CLIENT_NAME = "shardkeeper"


class AudioBackend:
    """
    Connection manager for the audio nodes (host:port each).

    `status` is True while the backend is unavailable, `connected` once at
    least one node socket is open. The loader reads both before registering
    modules that need audio.
    """

    def __init__(self, nodes: Optional[List[str]] = None, password: Optional[str] = None,
                 timeout: Optional[float] = None, user_id: str = CLIENT_NAME):
        self.nodes = list(settings.AUDIO_NODES if nodes is None else nodes)
        self.password = password if password is not None else settings.AUDIO_PASSWORD
        self.timeout = timeout or settings.AUDIO_CHECK_TIMEOUT_SECONDS
        self.user_id = user_id
        self.status = False
        self.connected = False
        self._connecting = False
        self._session: Optional[aiohttp.ClientSession] = None
        self._sockets: Dict[str, aiohttp.ClientWebSocketResponse] = {}
        self._readers: Dict[str, asyncio.Task] = {}
        self.worker_id = ""
        self.bus: Optional[CommandBus] = None
        self.on_reloaded: Optional[Callable[[], Awaitable[int]]] = None

    def available(self) -> bool:
        return not self.status

    def _headers(self) -> dict:
        return {"Authorization": self.password, "User-Id": self.user_id, "Client-Name": CLIENT_NAME}

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self._session

    async def _ping(self, node: str) -> bool:
        try:
            async with self._get_session().get(f"http://{node}/version",
                                               headers={"Authorization": self.password}) as response:
                return response.status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Audio node {node} is unreachable: {e}")
            return False

    async def check_status(self) -> bool:
        """Returns True when no node answers, i.e. the backend is unavailable."""
        if not self.nodes:
            logger.warning("No audio nodes configured, audio modules will be held back")
            self.status = True
            return self.status
        results = await asyncio.gather(*(self._ping(node) for node in self.nodes))
        self.status = not any(results)
        if self.status:
            logger.error("Could not reach any audio node, audio modules will be held back")
        return self.status

    async def _open(self, node: str) -> bool:
        try:
            ws = await self._get_session().ws_connect(f"ws://{node}/v4/websocket", headers=self._headers())
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to connect to audio node {node}: {e}")
            return False
        self._sockets[node] = ws
        self._readers[node] = asyncio.create_task(self._read(node, ws))
        logger.info(f"Connected to audio node {node}")
        return True

    async def _read(self, node: str, ws: aiohttp.ClientWebSocketResponse):
        # node stats/events are not used here, reading keeps pings answered
        async for message in ws:
            if message.type == aiohttp.WSMsgType.ERROR:
                logger.error(f"Audio node {node} socket error: {ws.exception()}")
                break
        if self._sockets.get(node) is ws:
            del self._sockets[node]
            self._readers.pop(node, None)
            logger.warning(f"Lost connection to audio node {node}")
            if not self._sockets:
                self.connected = False

    async def connect(self):
        """Opens every node socket. No-op while connected or already connecting."""
        if self.connected or self._connecting:
            return
        self._connecting = True
        try:
            results = await asyncio.gather(*(self._open(node) for node in self.nodes))
            self.connected = any(results)
            self.status = not self.connected
        finally:
            self._connecting = False

    async def _close_sockets(self):
        readers = list(self._readers.values())
        sockets = list(self._sockets.values())
        self._readers.clear()
        self._sockets.clear()
        for ws in sockets:
            await ws.close()
        for task in readers:
            task.cancel()
        await asyncio.gather(*readers, return_exceptions=True)
        self.connected = False

    async def reload(self) -> int:
        """Re-establishes all node connections, returns how many came back."""
        await self._close_sockets()
        results = await asyncio.gather(*(self._open(node) for node in self.nodes))
        count = sum(1 for ok in results if ok)
        self.connected = count > 0
        self.status = not self.connected
        return count

    async def release(self):
        await self._close_sockets()
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
        logger.info("Audio backend released")

    # ===================== BUS WIRING =====================

    def register(self, bus: CommandBus, worker_id: str = "",
                 on_reloaded: Optional[Callable[[], Awaitable[int]]] = None):
        self.bus = bus
        self.worker_id = worker_id
        self.on_reloaded = on_reloaded
        bus.register_command(RELOAD_AUDIO, self.handle_reload)

    async def handle_reload(self, payload: dict) -> dict:
        try:
            count = await self.reload()
            if not count:
                raise BackendUnavailable("No audio node could be reached")
        except BackendUnavailable as e:
            await self.bus.announce(AUDIO_RELOAD_FAILED, {"worker": self.worker_id})
            raise CommandFailed(str(e)) from e

        await self.bus.announce(AUDIO_RELOAD_SUCCEEDED, {"count": count, "worker": self.worker_id})
        if self.on_reloaded is not None:
            registered = await self.on_reloaded()
            if registered:
                logger.info(f"Registered {registered} audio modules after the backend came back")
        return {"reloaded": count}
