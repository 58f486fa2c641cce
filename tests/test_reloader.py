import asyncio

import pytest

from core.bus import LocalCommandBus, RELOAD, RELOAD_FAILED, RELOAD_SUCCEEDED
from core.errors import ModuleNotFound, ReloadFailed
from worker.catalog import Catalog
from worker.event_handler import EventHandler
from worker.loader import ModuleLoader
from worker.reloader import ReloadCoordinator


def version(value, extra=""):
    return f'{extra}\ndef handler(payload):\n    return "{value}"\n'


@pytest.fixture
def setup(modules_dir, write_module):
    write_module("echo.py", version("v1", 'ALIASES = ["say"]'))
    write_module("ping.py", version("pong"))
    catalog = Catalog()
    loader = ModuleLoader(catalog)
    loader.load_all(str(modules_dir))
    return catalog, loader, ReloadCoordinator(catalog, loader, worker_id="w1")


class TestReload:

    @pytest.mark.asyncio
    async def test_success_swaps_only_the_target(self, setup, write_module):
        catalog, _, coordinator = setup
        untouched = catalog.get("ping")
        write_module("echo.py", version("version-two", 'ALIASES = ["say"]'))

        assert await coordinator.reload("echo") == "echo"
        assert catalog.get("echo").handler({}) == "version-two"
        assert catalog.get("ping") is untouched

    @pytest.mark.asyncio
    async def test_failure_keeps_previous_unit(self, setup, write_module):
        catalog, _, coordinator = setup
        before = catalog.get("echo")
        write_module("echo.py", "def handler(payload)\n    broken")

        with pytest.raises(ReloadFailed) as exc:
            await coordinator.reload("echo")
        assert exc.value.identifier == "echo"
        assert catalog.get("echo") is before
        assert catalog.get("say") is before

    @pytest.mark.asyncio
    async def test_unknown_identifier(self, setup):
        catalog, _, coordinator = setup
        before = {i: catalog.get(i) for i in catalog.identifiers()}

        with pytest.raises(ModuleNotFound):
            await coordinator.reload("missing")
        assert {i: catalog.get(i) for i in catalog.identifiers()} == before

    @pytest.mark.asyncio
    async def test_file_declaring_another_name_is_refused(self, setup, write_module):
        catalog, _, coordinator = setup
        before = catalog.get("echo")
        write_module("echo.py", version("v3", 'NAME = "shout"'))

        with pytest.raises(ReloadFailed):
            await coordinator.reload("echo")
        assert catalog.get("echo") is before
        assert catalog.get("shout") is None

    @pytest.mark.asyncio
    async def test_alias_reloads_owner(self, setup, write_module):
        catalog, _, coordinator = setup
        write_module("echo.py", version("aliased", 'ALIASES = ["say"]'))
        assert await coordinator.reload("say") == "echo"
        assert catalog.get("say").handler({}) == "aliased"

    @pytest.mark.asyncio
    async def test_deleted_file_keeps_previous_unit(self, setup, modules_dir):
        catalog, _, coordinator = setup
        before = catalog.get("ping")
        (modules_dir / "ping.py").unlink()
        with pytest.raises(ReloadFailed):
            await coordinator.reload("ping")
        assert catalog.get("ping") is before


class TestDeferredAudioUnits:

    @pytest.mark.asyncio
    async def test_retry_registers_once_backend_is_back(self, modules_dir, write_module):
        write_module("play.py", 'REQUIRES = "audio"\n' + version("playing"))
        backend = {"up": False}
        catalog = Catalog()
        loader = ModuleLoader(catalog, audio_available=lambda: backend["up"])
        loader.load_all(str(modules_dir))
        coordinator = ReloadCoordinator(catalog, loader)

        with pytest.raises(ReloadFailed):
            await coordinator.reload("play")
        assert await coordinator.retry_deferred() == 0

        backend["up"] = True
        assert await coordinator.retry_deferred() == 1
        assert catalog.get("play").handler({}) == "playing"
        assert catalog.deferred() == {}

    @pytest.mark.asyncio
    async def test_backend_lost_before_swap_keeps_previous_unit(self, modules_dir, write_module):
        write_module("play.py", 'REQUIRES = "audio"\n' + version("v1"))
        backend = {"up": True}
        catalog = Catalog()
        loader = ModuleLoader(catalog, audio_available=lambda: backend["up"])
        loader.load_all(str(modules_dir))
        before = catalog.get("play")

        write_module("play.py", 'REQUIRES = "audio"\n' + version("version-two"))
        backend["up"] = False
        with pytest.raises(ReloadFailed):
            await ReloadCoordinator(catalog, loader).reload("play")
        assert catalog.get("play") is before
        assert catalog.deferred() == {}


class TestReloadDoesNotBlockEvents:

    @pytest.mark.asyncio
    async def test_other_module_served_while_import_is_slow(self, modules_dir, write_module):
        write_module("slow.py", version("v1"))
        write_module("fast.py", "async def handler(payload):\n    return 'fast'\n")
        catalog = Catalog()
        loader = ModuleLoader(catalog)
        loader.load_all(str(modules_dir))
        coordinator = ReloadCoordinator(catalog, loader)
        events = EventHandler("w1", catalog)

        write_module("slow.py", "import time\ntime.sleep(0.5)\n" + version("v2"))
        reload = asyncio.create_task(coordinator.reload("slow"))
        await asyncio.sleep(0.05)

        assert await events.handle_event({"module": "fast"}) == "fast"
        # the old unit keeps serving until the swap
        assert await events.handle_event({"module": "slow"}) == "v1"
        assert not reload.done()

        assert await reload == "slow"
        assert catalog.get("slow").handler({}) == "v2"


class TestReloadCommand:

    @pytest.mark.asyncio
    async def test_reply_and_broadcasts(self, setup, hub, write_module):
        _, _, coordinator = setup
        worker = LocalCommandBus(hub, "w1")
        central = LocalCommandBus(hub, "central")
        coordinator.register(worker)
        await worker.start()
        await central.start()

        seen = []

        async def record(payload):
            seen.append(payload)

        central.on_broadcast(RELOAD_SUCCEEDED, record)
        central.on_broadcast(RELOAD_FAILED, record)

        reply = await central.request("w1", RELOAD, {"identifier": "ping"})
        assert reply.ok is True
        assert reply.result == "ping"

        reply = await central.request("w1", RELOAD, {"identifier": "missing"})
        assert reply.ok is False
        assert "missing" in reply.error

        assert seen[0] == {"identifier": "ping", "worker": "w1"}
        assert seen[1]["identifier"] == "missing"
        assert seen[1]["reason"] == reply.error

    @pytest.mark.asyncio
    async def test_payload_without_identifier(self, setup, hub):
        _, _, coordinator = setup
        worker = LocalCommandBus(hub, "w1")
        coordinator.register(worker)
        await worker.start()
        reply = await worker.request("w1", RELOAD, {})
        assert reply.ok is False
