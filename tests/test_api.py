import asyncio

import pytest
from fastapi.testclient import TestClient

from mcbuilder.core.config import BuilderSettings
from mcbuilder.core.models import MinecraftServerStatus, Phase, ResourceKey
from mcbuilder.main import create_app
from tests.conftest import InMemoryClient, make_server


class Recorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, key):
        self.calls.append(key)
        return 3600.0, None


@pytest.fixture
def kube():
    server = make_server()
    server.status = MinecraftServerStatus(
        phase=Phase.ready, last_fingerprint="fp", java_version="17", observed_generation=1
    )
    return InMemoryClient(server)


@pytest.fixture
def app_client(kube, dirs):
    tmp_dir, out_dir = dirs
    settings = BuilderSettings(tmp_dir=tmp_dir, output_dir=out_dir, workers=1)
    recorder = Recorder()
    app = create_app(settings, client=kube, reconcile=recorder)
    with TestClient(app) as client:
        client.recorder = recorder
        yield client


class TestServersApi:
    def test_healthz(self, app_client):
        resp = app_client.get("/healthz")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    def test_list(self, app_client):
        assert app_client.get("/api/servers").json() == ["games/survival"]

    def test_status(self, app_client):
        resp = app_client.get("/api/servers/games/survival")
        assert resp.status_code == 200
        body = resp.json()
        assert body["phase"] == "Ready"
        assert body["lastFingerprint"] == "fp"
        assert body["javaVersion"] == "17"
        assert body["publishedFingerprint"] is None
        assert body["generation"] == 1

    def test_status_missing(self, app_client):
        assert app_client.get("/api/servers/games/nope").status_code == 404

    def test_status_api_down(self, app_client, kube):
        kube.unavailable = True
        assert app_client.get("/api/servers/games/survival").status_code == 502

    def test_status_of_schema_invalid_object(self, app_client, kube):
        kube.invalid[ResourceKey("games", "survival")] = "spec.version: Field required"
        resp = app_client.get("/api/servers/games/survival")
        assert resp.status_code == 200
        assert resp.json()["phase"] == "Ready"
        assert resp.json()["generation"] == 1

    def test_reconcile_is_queued(self, app_client):
        resp = app_client.post("/api/servers/games/survival/reconcile")
        assert resp.status_code == 202

        async def settle():
            for _ in range(100):
                if ResourceKey("games", "survival") in app_client.recorder.calls:
                    return
                await asyncio.sleep(0.01)

        app_client.portal.call(settle)
        assert ResourceKey("games", "survival") in app_client.recorder.calls

    def test_reconcile_missing(self, app_client):
        assert app_client.post("/api/servers/games/nope/reconcile").status_code == 404
