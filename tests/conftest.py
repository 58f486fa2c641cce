import sys
import textwrap
from pathlib import Path

import pytest

from core.bus import LocalHub
from core.store import MemoryStore
from worker.status import StatusSink


class RecordingSink(StatusSink):
    """Keeps every status a worker tried to show."""

    def __init__(self):
        self.history = []

    async def set_status(self, text, state="dnd", decorate=True):
        self.history.append(text)

    @property
    def current(self):
        return self.history[-1] if self.history else None


@pytest.fixture(autouse=True)
def no_bytecode(monkeypatch):
    # modules get rewritten within the same second, stale .pyc files would hide the change
    monkeypatch.setattr(sys, "dont_write_bytecode", True)


@pytest.fixture
def modules_dir(tmp_path):
    root = tmp_path / "modules"
    root.mkdir()
    return root


@pytest.fixture
def write_module(modules_dir):
    def _write(relpath: str, source: str) -> Path:
        path = modules_dir / relpath
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(source))
        return path
    return _write


@pytest.fixture
def hub():
    return LocalHub()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def sink():
    return RecordingSink()
