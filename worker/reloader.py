import asyncio, logging
from typing import Optional

from core.bus import CommandBus, RELOAD, RELOAD_FAILED, RELOAD_SUCCEEDED
from core.errors import CommandFailed, LoadError, ModuleNotFound, ReloadError, ReloadFailed
from .catalog import Catalog
from .loader import ModuleLoader

logger = logging.getLogger(__name__)


class ReloadCoordinator:
    """
    Re-imports exactly one module and swaps it into the catalog.
    A reload is transactional: on any failure the previous unit stays active.
    """

    def __init__(self, catalog: Catalog, loader: ModuleLoader, worker_id: str = ""):
        self.catalog = catalog
        self.loader = loader
        self.worker_id = worker_id
        self.bus: Optional[CommandBus] = None

    async def reload(self, identifier: str) -> str:
        current = self.catalog.get(identifier)
        if current is not None:
            identifier = current.identifier  # an alias was given

        path = self.catalog.path_for(identifier)
        if path is None:
            raise ModuleNotFound(identifier)

        # importing runs user code and hits the disk, keep it off the event loop
        loop = asyncio.get_running_loop()
        try:
            unit = await loop.run_in_executor(None, self.loader.load_file, path)
        except LoadError as e:
            logger.error(f"Reload of '{identifier}' from {path} failed: {e.cause}")
            raise ReloadFailed(identifier, e.cause) from e

        if unit.identifier != identifier:
            raise ReloadFailed(identifier, f"{path} now declares module '{unit.identifier}'")
        # the audio gate is checked inside register, a held back unit swaps nothing in
        if not self.loader.register(unit).registered:
            raise ReloadFailed(identifier, "audio backend unavailable")
        logger.info(f"Reloaded module '{identifier}' from {path}")
        return identifier

    async def retry_deferred(self) -> int:
        """Registers every audio module held back at startup. Returns how many made it."""
        count = 0
        for identifier in self.catalog.deferred():
            try:
                await self.reload(identifier)
                count += 1
            except ReloadError as e:
                logger.warning(f"Deferred module '{identifier}' still not loaded: {e}")
        return count

    # ===================== BUS WIRING =====================

    def register(self, bus: CommandBus):
        self.bus = bus
        bus.register_command(RELOAD, self.handle_reload)

    async def handle_reload(self, payload: dict) -> str:
        identifier = payload.get("identifier")
        if not identifier:
            raise CommandFailed("reload needs an 'identifier'")
        try:
            await self.reload(identifier)
        except ReloadError as e:
            await self.bus.announce(RELOAD_FAILED, {"identifier": identifier,
                                                    "reason": e.reason,
                                                    "worker": self.worker_id})
            raise CommandFailed(e.reason) from e
        await self.bus.announce(RELOAD_SUCCEEDED, {"identifier": identifier, "worker": self.worker_id})
        return identifier
