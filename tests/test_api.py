import asyncio
import json
from unittest.mock import MagicMock

import pytest
import redis
from fastapi.testclient import TestClient

from api.main import app
from api.utils import get_bus
from core.bus import BEGIN_OVERRIDE, END_OVERRIDE, RELOAD, RELOAD_AUDIO, LocalCommandBus
from core.errors import CommandFailed
from core.redis_client import get_redis


def fake_redis(workers=("w1",), statuses=None, broadcast=None):
    client = MagicMock()
    client.scan_iter.side_effect = lambda match=None: iter(f"shard:worker:{w}:heartbeat" for w in workers)
    values = {f"shard:worker:{w}:status": json.dumps({"state": "dnd", "name": s})
              for w, s in (statuses or {}).items()}
    if broadcast:
        values["shard:store:broadcast"] = broadcast
    client.get.side_effect = values.get
    return client


def simulated_worker(hub, node_id="w1"):
    node = LocalCommandBus(hub, node_id)
    calls = []

    def reload(payload):
        calls.append((RELOAD, payload))
        if payload["identifier"] == "missing":
            raise CommandFailed("Module 'missing' is not loaded")
        return payload["identifier"]

    def override(payload):
        calls.append((BEGIN_OVERRIDE, payload))
        return payload["value"]

    def end(payload):
        calls.append((END_OVERRIDE, payload))

    node.register_command(RELOAD, reload)
    node.register_command(BEGIN_OVERRIDE, override)
    node.register_command(END_OVERRIDE, end)
    asyncio.run(node.start())
    return calls


@pytest.fixture
def client(hub):
    central = LocalCommandBus(hub, "central", timeout=1)
    redis_client = fake_redis()
    app.dependency_overrides[get_bus] = lambda: central
    app.dependency_overrides[get_redis] = lambda: redis_client
    # no `with`: the lifespan would join the real redis bus
    yield TestClient(app)
    app.dependency_overrides.clear()


def use_redis(client_redis):
    app.dependency_overrides[get_redis] = lambda: client_redis


def test_root(client):
    assert client.get("/").json() == {"message": "Welcome to shardkeeper"}


class TestReload:

    def test_single_worker(self, client, hub):
        calls = simulated_worker(hub)
        res = client.post("/modules/echo/reload", params={"worker": "w1"})
        assert res.status_code == 200
        body = res.json()
        assert body["identifier"] == "echo"
        assert body["outcomes"] == [{"worker": "w1", "delivered": True, "ok": True,
                                     "result": "echo", "error": None}]
        assert calls == [(RELOAD, {"identifier": "echo"})]

    def test_every_live_worker(self, client, hub):
        simulated_worker(hub, "w1")
        simulated_worker(hub, "w2")
        use_redis(fake_redis(workers=("w1", "w2")))
        res = client.post("/modules/echo/reload")
        assert res.status_code == 200
        assert [o["worker"] for o in res.json()["outcomes"]] == ["w1", "w2"]

    def test_failed_reload_is_a_conflict(self, client, hub):
        simulated_worker(hub)
        res = client.post("/modules/missing/reload", params={"worker": "w1"})
        assert res.status_code == 409
        assert "missing" in res.json()["detail"]

    def test_failures_are_reported_per_worker(self, client, hub):
        simulated_worker(hub)
        res = client.post("/modules/missing/reload")
        assert res.status_code == 200
        outcome = res.json()["outcomes"][0]
        assert outcome["delivered"] is True
        assert outcome["ok"] is False

    def test_unreachable_worker(self, client, hub):
        res = client.post("/modules/echo/reload", params={"worker": "ghost"})
        assert res.status_code == 502

    def test_no_live_worker(self, client, hub):
        use_redis(fake_redis(workers=()))
        res = client.post("/modules/echo/reload")
        assert res.status_code == 503

    def test_worker_discovery_runs_off_the_event_loop(self, client, hub):
        simulated_worker(hub)
        client_redis = fake_redis()
        scans = []

        def scan_iter(match=None):
            try:
                asyncio.get_running_loop()
                scans.append("event loop")
            except RuntimeError:
                scans.append("thread")
            return iter(["shard:worker:w1:heartbeat"])

        client_redis.scan_iter.side_effect = scan_iter
        use_redis(client_redis)
        assert client.post("/modules/echo/reload").status_code == 200
        assert client.put("/broadcast", json={"message": "SALE"}).status_code == 200
        assert scans == ["thread", "thread"]

    def test_audio_command_not_handled(self, client, hub):
        simulated_worker(hub)
        res = client.post("/audio/reload", params={"worker": "w1"})
        # the simulated worker has no audio backend
        assert res.status_code == 502
        assert RELOAD_AUDIO in res.json()["detail"]


class TestBroadcast:

    def test_begin(self, client, hub):
        calls = simulated_worker(hub)
        res = client.put("/broadcast", json={"message": "SALE"})
        assert res.status_code == 200
        assert res.json()["message"] == "SALE"
        assert calls == [(BEGIN_OVERRIDE, {"value": "SALE"})]

    def test_empty_message_is_rejected(self, client, hub):
        calls = simulated_worker(hub)
        res = client.put("/broadcast", json={"message": ""})
        assert res.status_code == 422
        assert calls == []

    def test_end(self, client, hub):
        calls = simulated_worker(hub)
        res = client.delete("/broadcast")
        assert res.status_code == 200
        assert calls == [(END_OVERRIDE, {})]

    def test_no_live_worker(self, client):
        use_redis(fake_redis(workers=()))
        assert client.put("/broadcast", json={"message": "SALE"}).status_code == 503


class TestStatus:

    def test_lists_workers_and_broadcast(self, client):
        use_redis(fake_redis(workers=("w2", "w1"), statuses={"w1": "SALE | @shardkeeper help"},
                             broadcast="SALE"))
        res = client.get("/status")
        assert res.status_code == 200
        body = res.json()
        assert body["status"] == "ok"
        assert body["broadcast"] == "SALE"
        assert body["workers"] == [
            {"worker_id": "w1", "status": "SALE | @shardkeeper help"},
            {"worker_id": "w2", "status": None},
        ]

    def test_redis_down(self, client):
        broken = fake_redis()
        broken.ping.side_effect = redis.ConnectionError("down")
        use_redis(broken)
        res = client.get("/status")
        assert res.status_code == 503
        assert res.json()["detail"]["status"] == "error"
