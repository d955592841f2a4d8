"""
Shared fixtures.

• InMemoryClient   – ResourceClient backed by a dict, with resourceVersion
                     bumps, injectable conflicts, schema errors and spec edits
• FakeUpstream     – one aiohttp.web app standing in for Mojang, Paper,
                     Forge maven, Vanilla Tweaks and plain file hosts,
                     served with aiohttp.test_utils.TestServer
"""

import hashlib
from collections import Counter
from typing import Dict, List, Optional

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from mcbuilder.core.errors import ApiUnavailable, ConflictError, InvalidResource
from mcbuilder.core.kube import ResourceClient
from mcbuilder.core.models import MinecraftServer, MinecraftServerStatus, ResourceKey

SERVER_JAR = b"vanilla server jar 1.19.3" * 100
OLD_SERVER_JAR = b"vanilla server jar 1.18.2" * 100
PAPER_JAR = b"paper 1.19.3 build 386" * 100
MOD_JAR = b"some mod" * 50
DATAPACK_ZIP = b"PK\x03\x04 composed datapacks"


def sha1(data: bytes) -> str:
    return hashlib.sha1(data).hexdigest()


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


# ──────────────────────────────────────────────
# Orchestration API
# ──────────────────────────────────────────────
class InMemoryClient(ResourceClient):
    def __init__(self, *servers: MinecraftServer):
        self.objects: Dict[ResourceKey, MinecraftServer] = {}
        self.status_writes: List[MinecraftServerStatus] = []
        self.pending_conflicts = 0
        self.unavailable = False
        self.invalid: Dict[ResourceKey, str] = {}   # key -> schema error to report
        for server in servers:
            self.put(server)

    def put(self, server: MinecraftServer) -> MinecraftServer:
        current = self.objects.get(server.key)
        version = int(current.metadata.resource_version or 0) + 1 if current else 1
        stored = server.model_copy(deep=True)
        stored.metadata.resource_version = str(version)
        self.objects[server.key] = stored
        return stored

    def edit_spec(self, key: ResourceKey, **changes) -> MinecraftServer:
        """Simulate a user edit: new spec, generation + 1."""
        server = self.objects[key].model_copy(deep=True)
        server.spec = server.spec.model_copy(update=changes)
        server.metadata.generation += 1
        return self.put(server)

    async def get(self, key: ResourceKey) -> Optional[MinecraftServer]:
        if self.unavailable:
            raise ApiUnavailable("connection refused")
        server = self.objects.get(key)
        if server is not None and key in self.invalid:
            shell = MinecraftServer.model_construct(
                metadata=server.metadata.model_copy(), spec=None, status=server.status.model_copy()
            )
            raise InvalidResource(f"{key} does not match the MinecraftServer schema: {self.invalid[key]}", server=shell)
        return server.model_copy(deep=True) if server else None

    async def list_keys(self, namespace: Optional[str] = None) -> List[ResourceKey]:
        return [k for k in self.objects if namespace is None or k.namespace == namespace]

    async def update_status(self, server: MinecraftServer, status: MinecraftServerStatus) -> MinecraftServer:
        if self.unavailable:
            raise ApiUnavailable("connection refused")
        current = self.objects[server.key]
        if self.pending_conflicts:
            self.pending_conflicts -= 1
            # somebody else wrote in between
            self.put(current)
            raise ConflictError("resourceVersion conflict")
        if current.metadata.resource_version != server.metadata.resource_version:
            raise ConflictError("resourceVersion conflict")
        updated = current.model_copy(update={"status": status})
        self.status_writes.append(status)
        return self.put(updated)

    def status(self, key: ResourceKey) -> MinecraftServerStatus:
        return self.objects[key].status


def make_server(
    name: str = "survival",
    namespace: str = "games",
    *,
    generation: int = 1,
    **spec,
) -> MinecraftServer:
    body = {"eula": "Accepted", "version": {"minecraft": "1.19.3"}}
    body.update(spec)
    return MinecraftServer.model_validate(
        {
            "metadata": {"name": name, "namespace": namespace, "generation": generation},
            "spec": body,
        }
    )


# ──────────────────────────────────────────────
# Upstream services
# ──────────────────────────────────────────────
class FakeUpstream:
    """Serves every upstream document from one local HTTP server."""

    def __init__(self):
        self.hits: Counter = Counter()
        self.files: Dict[str, bytes] = {
            "server-1.19.3.jar": SERVER_JAR,
            "server-1.18.2.jar": OLD_SERVER_JAR,
            "paper-1.19.3-386.jar": PAPER_JAR,
            "mod.jar": MOD_JAR,
            "vanillatweaks.zip": DATAPACK_ZIP,
        }
        self.fail: Dict[str, int] = {}      # path -> HTTP status to answer with
        self.tweaks_requests: List[Dict[str, str]] = []
        self.tweaks_status = "success"
        self.server: Optional[TestServer] = None

    # -- helpers ---------------------------------------------------------
    def url(self, path: str) -> str:
        return str(self.server.make_url(path))

    def fetch_hits(self) -> int:
        return sum(n for p, n in self.hits.items() if "/files/" in p or "/download" in p)

    # -- app ---------------------------------------------------------------
    def app(self) -> web.Application:
        app = web.Application(middlewares=[self._middleware])
        app.router.add_get("/mc/version_manifest_v2.json", self._manifest)
        app.router.add_get("/mc/v1/{version}.json", self._metadata)
        app.router.add_get("/files/{name}", self._file)
        app.router.add_get("/vt/download/{name}", self._tweaks_download)
        app.router.add_get("/paper/versions/{mc}", self._paper_version)
        app.router.add_get("/paper/versions/{mc}/builds/{build}", self._paper_build)
        app.router.add_get("/paper/versions/{mc}/builds/{build}/downloads/{name}", self._paper_download)
        app.router.add_post("/vt/assets/server/zipdatapacks.php", self._tweaks)
        return app

    @web.middleware
    async def _middleware(self, request: web.Request, handler):
        self.hits[request.path] += 1
        status = self.fail.get(request.path)
        if status:
            return web.Response(status=status, text="nope")
        return await handler(request)

    async def _manifest(self, request: web.Request) -> web.Response:
        def entry(version_id: str, kind: str) -> dict:
            return {
                "id": version_id,
                "type": kind,
                "url": self.url(f"/mc/v1/{version_id}.json"),
                "time": "2022-12-07T08:17:18+00:00",
                "releaseTime": "2022-12-07T08:17:18+00:00",
                "sha1": "0" * 40,
                "complianceLevel": 1,
            }

        return web.json_response(
            {
                "latest": {"release": "1.19.3", "snapshot": "23w03a"},
                "versions": [
                    entry("23w03a", "snapshot"),
                    entry("1.19.3", "release"),
                    entry("1.18.2", "release"),
                    entry("1.12.2", "release"),
                ],
            }
        )

    async def _metadata(self, request: web.Request) -> web.Response:
        version = request.match_info["version"]
        if version == "1.12.2":
            # predates the javaVersion key
            return web.json_response({"id": version, "downloads": {}})
        name = f"server-{version}.jar"
        data = self.files.get(name, b"")
        return web.json_response(
            {
                "id": version,
                "downloads": {"server": {"url": self.url(f"/files/{name}"), "sha1": sha1(data), "size": len(data)}},
                "javaVersion": {"component": "java-runtime-gamma", "majorVersion": 17},
            }
        )

    async def _file(self, request: web.Request) -> web.Response:
        data = self.files.get(request.match_info["name"])
        if data is None:
            raise web.HTTPNotFound()
        return web.Response(body=data, content_type="application/java-archive")

    async def _tweaks_download(self, request: web.Request) -> web.Response:
        return web.Response(body=DATAPACK_ZIP, content_type="application/zip")

    async def _paper_version(self, request: web.Request) -> web.Response:
        if request.match_info["mc"] != "1.19.3":
            raise web.HTTPNotFound()
        return web.json_response({"version": "1.19.3", "builds": [380, 386, 384]})

    async def _paper_build(self, request: web.Request) -> web.Response:
        build = int(request.match_info["build"])
        name = f"paper-1.19.3-{build}.jar"
        return web.json_response(
            {
                "build": build,
                "downloads": {"application": {"name": name, "sha256": sha256(self.files.get(name, b""))}},
            }
        )

    async def _paper_download(self, request: web.Request) -> web.Response:
        data = self.files.get(request.match_info["name"])
        if data is None:
            raise web.HTTPNotFound()
        return web.Response(body=data)

    async def _tweaks(self, request: web.Request) -> web.Response:
        form = await request.post()
        self.tweaks_requests.append({k: str(v) for k, v in form.items()})
        if self.tweaks_status != "success":
            return web.json_response({"status": self.tweaks_status})
        # a fresh download name per request, same bytes
        link = f"/download/VanillaTweaks_d{len(self.tweaks_requests)}.zip"
        return web.json_response({"status": "success", "link": link})


@pytest_asyncio.fixture
async def upstream():
    fake = FakeUpstream()
    server = TestServer(fake.app())
    await server.start_server()
    fake.server = server
    yield fake
    await server.close()


@pytest_asyncio.fixture
async def session():
    async with aiohttp.ClientSession() as s:
        yield s


@pytest.fixture
def dirs(tmp_path):
    tmp_dir = tmp_path / "tmp"
    out_dir = tmp_path / "out"
    tmp_dir.mkdir()
    out_dir.mkdir()
    return tmp_dir, out_dir
