import importlib.util
import os
import re
import logging
import sys
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional, Union

from core.errors import LoadError
from .catalog import Catalog, HandlerUnit

logger = logging.getLogger(__name__)

# Use absolute path - handler modules ship next to the worker at /app/worker/modules/
BASE_DIR = os.path.dirname(os.path.abspath(__file__))  # /app/worker/
MODULES_DIR = os.path.join(BASE_DIR, "modules")  # /app/worker/modules/

AUDIO_REQUIREMENT = "audio"


@dataclass(frozen=True)
class Loaded:
    identifier: str
    path: str
    # False when an audio unit was held back because the backend is down
    registered: bool = True


@dataclass(frozen=True)
class Failed:
    path: str
    cause: str


LoadResult = Union[Loaded, Failed]


def is_loadable(path: str) -> bool:
    name = os.path.basename(path)
    return name.endswith(".py") and not name.startswith("_")


def iter_files(root: str) -> Iterator[str]:
    """Depth-first listing of every file under root. Symlink loops are not guarded."""
    try:
        with os.scandir(root) as it:
            entries = sorted(it, key=lambda entry: entry.name)
    except OSError as e:
        logger.error(f"Could not list {root}: {e}")
        return
    for entry in entries:
        if entry.is_dir():
            yield from iter_files(entry.path)
        else:
            yield entry.path


def retire(unit: HandlerUnit):
    """Runs the unit's teardown hook; a failing hook is logged, never raised."""
    if unit.teardown is None:
        return
    try:
        unit.teardown()
    except Exception:
        logger.exception(f"Teardown of module '{unit.identifier}' failed")


class ModuleLoader:
    def __init__(self, catalog: Catalog, audio_available: Callable[[], bool] = lambda: True):
        self.catalog = catalog
        self.audio_available = audio_available
        # set by scan, names imported modules after their path under it
        self.root: Optional[str] = None

    def module_name_for(self, path: str) -> str:
        """sys.modules key of a handler file, unique per path under the modules root."""
        root = self.root or os.path.dirname(path)
        rel = os.path.relpath(path, root)
        if rel.startswith(os.pardir):
            rel = os.path.basename(path)
        parts = os.path.splitext(rel)[0].split(os.sep)
        return "shard_module_" + "__".join(re.sub(r"\W", "_", part) for part in parts)

    def load_file(self, path: str) -> HandlerUnit:
        """
        Imports one file and validates its shape. Touches nothing but sys.modules,
        and on failure puts back whatever entry was there before.
        """
        path = os.path.abspath(path)
        stem = os.path.splitext(os.path.basename(path))[0]
        module_name = self.module_name_for(path)

        if not os.path.isfile(path):
            raise LoadError(path, "File not found")

        previous = sys.modules.get(module_name)
        try:
            module = self._execute(module_name, path)
            return self._build_unit(module, path, stem)
        except LoadError:
            if previous is not None:
                sys.modules[module_name] = previous
            else:
                sys.modules.pop(module_name, None)
            raise

    def _execute(self, module_name: str, path: str):
        try:
            spec = importlib.util.spec_from_file_location(module_name, path)
            if spec is None or spec.loader is None:
                raise LoadError(path, "Not an importable python file")
            module = importlib.util.module_from_spec(spec)
            # dataclasses, pickling and get_type_hints look the module up while it runs
            sys.modules[module_name] = module
            spec.loader.exec_module(module)
        except LoadError:
            raise
        except ImportError as e:
            raise LoadError(path, f"Dependency Error: {e}") from e
        except Exception as e:
            raise LoadError(path, f"Runtime Error: {e}") from e
        return module

    def _build_unit(self, module, path: str, stem: str) -> HandlerUnit:
        handler = getattr(module, "handler", None)
        if not callable(handler):
            raise LoadError(path, "No handler function found")

        identifier = getattr(module, "NAME", None) or stem
        if not isinstance(identifier, str):
            raise LoadError(path, "NAME must be a string")

        requires = getattr(module, "REQUIRES", None)
        if requires not in (None, AUDIO_REQUIREMENT):
            raise LoadError(path, f"Unknown requirement '{requires}'")

        aliases = getattr(module, "ALIASES", ())
        if isinstance(aliases, str) or not all(isinstance(a, str) for a in aliases):
            raise LoadError(path, "ALIASES must be a list of strings")

        teardown = getattr(module, "teardown", None)
        if teardown is not None and not callable(teardown):
            raise LoadError(path, "teardown must be callable")

        return HandlerUnit(
            identifier=identifier,
            path=path,
            handler=handler,
            requires_audio=requires == AUDIO_REQUIREMENT,
            description=str(getattr(module, "DESCRIPTION", "") or ""),
            aliases=tuple(aliases),
            teardown=teardown,
        )

    def register(self, unit: HandlerUnit) -> Loaded:
        if unit.requires_audio and not self.audio_available():
            logger.warning(f"Audio backend unavailable, holding back module '{unit.identifier}'")
            # no-op for a unit already registered, the old entry stays active
            self.catalog.defer(unit.identifier, unit.path)
            return Loaded(unit.identifier, unit.path, registered=False)

        previous = self.catalog.put(unit)
        if previous is not None:
            if previous.path != unit.path:
                logger.warning(f"Module '{unit.identifier}' from {unit.path} replaced the one from {previous.path}")
            retire(previous)
        return Loaded(unit.identifier, unit.path)

    def scan(self, root: str) -> Iterator[LoadResult]:
        """
        Lazily loads every handler file under root, depth first.
        Each loadable file yields exactly one result; a bad file never stops the scan.
        """
        self.root = os.path.abspath(root)
        for path in iter_files(root):
            if not is_loadable(path):
                continue
            logger.debug(f"Loading module from {path}...")
            try:
                unit = self.load_file(path)
            except LoadError as e:
                logger.error(f"Failed to register module from {path}: {e.cause}")
                yield Failed(path, e.cause)
                continue
            yield self.register(unit)

    def load_all(self, root: Optional[str] = None) -> List[LoadResult]:
        root = root or MODULES_DIR
        logger.info(f"Attempting to load modules from {root}...")
        results = list(self.scan(root))
        failed = sum(1 for r in results if isinstance(r, Failed))
        held = sum(1 for r in results if isinstance(r, Loaded) and not r.registered)
        logger.info(f"Loaded {len(results) - failed - held} modules ({held} held back, {failed} failed)")
        return results

    def unload(self, identifier: str) -> Optional[HandlerUnit]:
        unit = self.catalog.remove(identifier)
        if unit is not None:
            retire(unit)
        return unit
