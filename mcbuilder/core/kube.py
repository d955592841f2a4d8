# mcbuilder/core/kube.py
"""
Minecraft Builder – orchestration client
========================================

The core only needs two calls against the cluster:

• get(key)                       -> MinecraftServer | None (None = deleted)
• update_status(server, status)  -> MinecraftServer  (raises ConflictError)

`ResourceClient` is that interface; `KubernetesClient` implements it
against the API server's REST endpoints with aiohttp, using the pod's
service-account token and CA bundle (or `KUBE_API_URL` / `KUBE_TOKEN`
for out-of-cluster runs).  Status writes carry `metadata.resourceVersion`
so the API server rejects them with 409 if someone wrote in between.
An object whose spec fails the schema raises `InvalidResource` carrying
a spec-less shell, which `update_status` can still write a status through.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import os
import ssl
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import aiohttp
from pydantic import ValidationError

from mcbuilder.core import config
from mcbuilder.core.errors import (
    ApiUnavailable,
    ConfigError,
    ConflictError,
    InvalidResource,
    StaleGenerationError,
)
from mcbuilder.core.models import (
    API_GROUP,
    API_VERSION,
    PLURAL,
    MinecraftServer,
    MinecraftServerStatus,
    ObjectMeta,
    ResourceKey,
)

log = logging.getLogger(__name__)

SERVICE_ACCOUNT_DIR = Path("/var/run/secrets/kubernetes.io/serviceaccount")


def schema_errors(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
    )


def shell(data: Dict[str, Any]) -> Optional[MinecraftServer]:
    """Metadata and status of an object whose spec does not validate."""
    try:
        meta = ObjectMeta.model_validate(data.get("metadata") or {})
    except ValidationError:
        return None
    try:
        status = MinecraftServerStatus.model_validate(data.get("status") or {})
    except ValidationError:
        status = MinecraftServerStatus()
    return MinecraftServer.model_construct(metadata=meta, spec=None, status=status)


class ResourceClient(abc.ABC):
    @abc.abstractmethod
    async def get(self, key: ResourceKey) -> Optional[MinecraftServer]:
        """Return the current object, or None if it no longer exists.

        Raises `InvalidResource` when the object does not match the schema.
        """

    @abc.abstractmethod
    async def update_status(
        self, server: MinecraftServer, status: MinecraftServerStatus
    ) -> MinecraftServer:
        """Write `status` guarded by `server.metadata.resource_version`."""

    @abc.abstractmethod
    async def list_keys(self, namespace: Optional[str] = None) -> List[ResourceKey]:
        """Keys of every MinecraftServer (in `namespace`, or cluster-wide)."""

    async def close(self) -> None:
        return None


class KubernetesClient(ResourceClient):
    def __init__(self, session: aiohttp.ClientSession, base_url: str, *, request_timeout: float = 30.0):
        self._session = session
        self.base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=request_timeout)

    @staticmethod
    def endpoint(environ: Optional[Mapping[str, str]] = None) -> str:
        """API server base URL from `KUBE_API_URL` or the in-cluster service env."""
        env = os.environ if environ is None else environ
        base_url = env.get("KUBE_API_URL")
        if not base_url and env.get("KUBERNETES_SERVICE_HOST"):
            host = env["KUBERNETES_SERVICE_HOST"]
            port = env.get("KUBERNETES_SERVICE_PORT", "443")
            if ":" in host:
                host = f"[{host}]"
            base_url = f"https://{host}:{port}"
        if not base_url:
            raise ConfigError("no Kubernetes API endpoint (set KUBE_API_URL or run in-cluster)")
        return base_url

    @classmethod
    def from_environment(cls, environ: Optional[Mapping[str, str]] = None) -> "KubernetesClient":
        env = os.environ if environ is None else environ
        base_url = cls.endpoint(env)

        token = env.get("KUBE_TOKEN")
        token_file = SERVICE_ACCOUNT_DIR / "token"
        if not token and token_file.exists():
            token = token_file.read_text(encoding="utf-8").strip()

        ssl_ctx: Any = True
        ca_file = SERVICE_ACCOUNT_DIR / "ca.crt"
        if ca_file.exists():
            ssl_ctx = ssl.create_default_context(cafile=str(ca_file))

        headers = {"User-Agent": config.USER_AGENT, "Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        session = aiohttp.ClientSession(
            headers=headers, connector=aiohttp.TCPConnector(ssl=ssl_ctx)
        )
        return cls(session, base_url)

    async def close(self) -> None:
        await self._session.close()

    def _url(self, key: ResourceKey, subresource: str = "") -> str:
        url = (
            f"{self.base_url}/apis/{API_GROUP}/{API_VERSION}"
            f"/namespaces/{key.namespace}/{PLURAL}/{key.name}"
        )
        return f"{url}/{subresource}" if subresource else url

    async def get(self, key: ResourceKey) -> Optional[MinecraftServer]:
        data = await self._request("GET", self._url(key))
        if data is None:
            return None
        try:
            return MinecraftServer.model_validate(data)
        except ValidationError as exc:
            raise InvalidResource(
                f"{key} does not match the MinecraftServer schema: {schema_errors(exc)}",
                server=shell(data),
            ) from exc

    async def list_keys(self, namespace: Optional[str] = None) -> List[ResourceKey]:
        path = f"{self.base_url}/apis/{API_GROUP}/{API_VERSION}"
        if namespace:
            path += f"/namespaces/{namespace}"
        data = await self._request("GET", f"{path}/{PLURAL}")
        keys = []
        for item in (data or {}).get("items", []):
            meta = item.get("metadata") or {}
            if meta.get("name"):
                keys.append(ResourceKey(meta.get("namespace", "default"), meta["name"]))
        return keys

    async def update_status(
        self, server: MinecraftServer, status: MinecraftServerStatus
    ) -> MinecraftServer:
        # the status subresource ignores spec, so an unparsed one is left out
        exclude = {"spec"} if server.spec is None else None
        body = server.model_copy(update={"status": status}).model_dump(
            mode="json", by_alias=True, exclude_none=True, exclude=exclude
        )
        data = await self._request("PUT", self._url(server.key, "status"), json=body)
        if data is None:
            raise StaleGenerationError(f"{server.key} was deleted")
        try:
            return MinecraftServer.model_validate(data)
        except ValidationError:
            return shell(data) or server

    async def _request(self, method: str, url: str, **kwargs) -> Optional[Dict[str, Any]]:
        try:
            async with self._session.request(method, url, timeout=self._timeout, **kwargs) as resp:
                if resp.status == 404:
                    return None
                if resp.status == 409:
                    raise ConflictError(f"{method} {url}: resourceVersion conflict")
                if resp.status >= 400:
                    text = await resp.text()
                    raise ApiUnavailable(f"{method} {url} returned {resp.status}: {text[:200]}")
                return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ApiUnavailable(f"{method} {url} failed: {exc}") from exc
