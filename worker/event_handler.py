import asyncio, logging
from typing import Any, Dict

from .catalog import Catalog

logger = logging.getLogger(__name__)


class EventHandler:
    """Runs one inbound event against whichever unit the catalog holds right now."""

    def __init__(self, worker_id: str, catalog: Catalog):
        self.worker_id = worker_id
        self.catalog = catalog

    async def handle_event(self, event: Dict[str, Any]):
        identifier = event.get("module")
        payload = event.get("payload") or {}

        # one lookup per event: a concurrent reload swaps the entry, never edits it
        unit = self.catalog.get(identifier) if identifier else None
        if unit is None:
            logger.error(f"No module found for key: '{identifier}'")
            return None

        loop = asyncio.get_running_loop()
        try:
            if asyncio.iscoroutinefunction(unit.handler):
                result = await unit.handler(payload)
            else:
                result = await loop.run_in_executor(None, unit.handler, payload)
        except Exception:
            logger.exception(f"Module '{unit.identifier}' crashed while handling an event")
            return None
        logger.debug(f"Module '{unit.identifier}' handled an event on worker:{self.worker_id}")
        return result
