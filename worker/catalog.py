import logging, threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HandlerUnit:
    """
    One loaded handler module. Frozen: a reload builds a new unit and swaps
    it in, nothing ever edits a registered one.
    """
    identifier: str
    path: str
    handler: Callable[..., Any]
    requires_audio: bool = False
    description: str = ""
    aliases: Tuple[str, ...] = ()
    teardown: Optional[Callable[[], Any]] = field(default=None, compare=False)


class Catalog:
    """
    identifier -> HandlerUnit, plus the identifier -> path index used for
    reloads and the aliases each unit brought with it.

    Every mutation happens under one lock and replaces dict entries in a
    single assignment, so readers see either the old unit or the new one.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._units: Dict[str, HandlerUnit] = {}
        self._paths: Dict[str, str] = {}
        self._aliases: Dict[str, str] = {}
        # audio units skipped while the backend was down
        self._deferred: Dict[str, str] = {}

    def put(self, unit: HandlerUnit) -> Optional[HandlerUnit]:
        """Registers or swaps a unit. Returns the unit it replaced, if any."""
        with self._lock:
            previous = self._units.get(unit.identifier)
            if previous is not None:
                self._drop_aliases(previous)
            self._units[unit.identifier] = unit
            self._paths[unit.identifier] = unit.path
            self._deferred.pop(unit.identifier, None)
            for alias in unit.aliases:
                owner = self._aliases.get(alias)
                if owner and owner != unit.identifier:
                    logger.warning(f"Alias '{alias}' moved from '{owner}' to '{unit.identifier}'")
                self._aliases[alias] = unit.identifier
            return previous

    def get(self, identifier: str) -> Optional[HandlerUnit]:
        with self._lock:
            unit = self._units.get(identifier)
            if unit is None and identifier in self._aliases:
                unit = self._units.get(self._aliases[identifier])
            return unit

    def remove(self, identifier: str) -> Optional[HandlerUnit]:
        """Unregisters a unit together with its path and aliases."""
        with self._lock:
            unit = self._units.pop(identifier, None)
            self._paths.pop(identifier, None)
            if unit is not None:
                self._drop_aliases(unit)
            return unit

    def defer(self, identifier: str, path: str):
        with self._lock:
            if identifier not in self._units:
                self._deferred[identifier] = str(path)

    def deferred(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._deferred)

    def path_for(self, identifier: str) -> Optional[str]:
        with self._lock:
            return self._paths.get(identifier) or self._deferred.get(identifier)

    def identifiers(self):
        with self._lock:
            return list(self._units)

    def _drop_aliases(self, unit: HandlerUnit):
        for alias in unit.aliases:
            if self._aliases.get(alias) == unit.identifier:
                del self._aliases[alias]

    def __contains__(self, identifier: str) -> bool:
        return self.get(identifier) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._units)
