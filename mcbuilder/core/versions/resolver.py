# mcbuilder/core/versions/resolver.py
"""
Minecraft Builder – version resolver
====================================

Maps an abstract version request (flavor + version descriptor) to a
concrete `ResolvedVersion`: download URL, digests and the Java major
version the server needs.

Vanilla   Mojang version manifest → per-version metadata → server jar
Paper     PaperMC build API       → application jar (+ sha256)
Forge     Forge maven             → installer jar (digest only if pinned)

Failures are classified here, never retried here:

• unknown version id               -> VersionNotFound      (permanent)
• flavor/version combination bad   -> UnsupportedVersion   (permanent)
• upstream unreachable / 5xx       -> UpstreamUnavailable  (transient)
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Dict, Type
from urllib.parse import quote

import aiohttp
from pydantic import ValidationError

from mcbuilder.core import config
from mcbuilder.core.errors import (
    MalformedSpecError,
    ResolutionError,
    UnsupportedVersion,
    UpstreamUnavailable,
    VersionNotFound,
)
from mcbuilder.core.models import Artifact, MinecraftVersion, ResolvedVersion, ServerType
from mcbuilder.core.versions.manifest import (
    TTLCache,
    Version,
    VersionManifest,
    VersionMetadata,
    is_alias,
)

log = logging.getLogger(__name__)

_MANIFEST_KEY = "manifest"


class VersionResolver:
    def __init__(
        self,
        session: aiohttp.ClientSession,
        *,
        manifest_url: str = config.VERSION_MANIFEST_URL,
        paper_api_url: str = config.PAPER_API_URL,
        forge_maven_url: str = config.FORGE_MAVEN_URL,
        manifest_ttl: float = 300.0,
        request_timeout: float = 30.0,
    ):
        self._session = session
        self.manifest_url = manifest_url
        self.paper_api_url = paper_api_url.rstrip("/")
        self.forge_maven_url = forge_maven_url.rstrip("/")
        self._cache = TTLCache(manifest_ttl)
        self._timeout = aiohttp.ClientTimeout(total=request_timeout)

    # ──────────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────────
    async def resolve(self, flavor: ServerType, version: MinecraftVersion) -> ResolvedVersion:
        if flavor == ServerType.vanilla:
            resolved = await self._resolve_vanilla(version)
        elif flavor == ServerType.paper:
            resolved = await self._resolve_paper(version)
        elif flavor == ServerType.forge:
            resolved = await self._resolve_forge(version)
        else:  # pragma: no cover - closed enum
            raise UnsupportedVersion(f"unknown server type {flavor!r}")

        if version.java:
            resolved.java_major_version = parse_java_major(version.java)
        log.debug(
            "Resolved %s %s -> %s (java %d)",
            flavor.value, version.minecraft, resolved.artifact.url, resolved.java_major_version,
        )
        return resolved

    async def get_manifest(self) -> VersionManifest:
        cached = self._cache.get(_MANIFEST_KEY)
        if cached is not None:
            return cached
        raw = await self._get_json(self.manifest_url, not_found=UpstreamUnavailable)
        try:
            manifest = VersionManifest.model_validate(raw)
        except ValidationError as exc:
            raise UpstreamUnavailable(f"malformed version manifest: {exc}") from exc
        self._cache.set(_MANIFEST_KEY, manifest)
        return manifest

    async def get_version_metadata(self, entry: Version) -> VersionMetadata:
        url = str(entry.url)
        cached = self._cache.get(url)
        if cached is not None:
            return cached
        raw = await self._get_json(url, not_found=UpstreamUnavailable)
        try:
            meta = VersionMetadata.model_validate(raw)
        except ValidationError as exc:
            raise UpstreamUnavailable(f"malformed metadata for {entry.id}: {exc}") from exc
        self._cache.set(url, meta)
        return meta

    async def find_version(self, requested: str) -> Version:
        manifest = await self.get_manifest()
        entry = manifest.resolve(requested)
        if entry is None:
            raise VersionNotFound(f"Minecraft version '{requested}' not found in version manifest")
        return entry

    # ──────────────────────────────────────────────
    # Flavors
    # ──────────────────────────────────────────────
    async def _resolve_vanilla(self, version: MinecraftVersion) -> ResolvedVersion:
        entry = await self.find_version(version.minecraft)
        meta = await self.get_version_metadata(entry)
        server = meta.downloads.server
        if server is None:
            raise UnsupportedVersion(f"Minecraft {entry.id} has no server download")
        digests = {"sha1": server.sha1.lower()} if server.sha1 else {}
        return ResolvedVersion(
            flavor=ServerType.vanilla,
            minecraft_version=entry.id,
            artifact=Artifact(url=str(server.url), digests=digests),
            java_major_version=meta.java_major_version,
        )

    async def _resolve_paper(self, version: MinecraftVersion) -> ResolvedVersion:
        mc = version.minecraft.strip()
        if is_alias(mc):
            mc = (await self.find_version(mc)).id

        base = f"{self.paper_api_url}/versions/{quote(mc)}"
        info = await self._get_json(base, not_found=UnsupportedVersion)
        builds = [b for b in info.get("builds") or [] if isinstance(b, int)]
        if not builds:
            raise UnsupportedVersion(f"no Paper builds for Minecraft {mc}")

        requested = (version.paper.build if version.paper else "latest").strip()
        if requested.lower() in ("", "latest"):
            build = max(builds)
        else:
            try:
                build = int(requested)
            except ValueError as exc:
                raise MalformedSpecError(f"Paper build '{requested}' is not a number") from exc
            if build not in builds:
                raise UnsupportedVersion(f"Paper build {build} does not exist for Minecraft {mc}")

        detail = await self._get_json(f"{base}/builds/{build}", not_found=UnsupportedVersion)
        app = (detail.get("downloads") or {}).get("application") or {}
        name = app.get("name")
        if not name:
            raise UnsupportedVersion(f"Paper build {build} for {mc} has no application download")
        digests = {"sha256": app["sha256"].lower()} if app.get("sha256") else {}

        return ResolvedVersion(
            flavor=ServerType.paper,
            minecraft_version=mc,
            build=str(build),
            artifact=Artifact(url=f"{base}/builds/{build}/downloads/{quote(name)}", digests=digests),
            java_major_version=await self._java_for(mc),
        )

    async def _resolve_forge(self, version: MinecraftVersion) -> ResolvedVersion:
        forge = version.forge
        if forge is None or not forge.version.strip():
            raise UnsupportedVersion("Forge servers need version.forge.version")
        mc = version.minecraft.strip()
        if is_alias(mc):
            raise UnsupportedVersion("Forge servers need an exact Minecraft version, not an alias")

        ident = f"{mc}-{forge.version.strip()}"
        url = f"{self.forge_maven_url}/{quote(ident)}/{quote(f'forge-{ident}-installer.jar')}"
        digests = forge.installer_checksum.digests() if forge.installer_checksum else {}
        if not digests:
            log.warning("Forge installer %s has no pinned checksum, fetching with reduced trust", url)

        return ResolvedVersion(
            flavor=ServerType.forge,
            minecraft_version=mc,
            build=forge.version.strip(),
            artifact=Artifact(url=url, digests=digests),
            java_major_version=await self._java_for(mc),
        )

    async def _java_for(self, mc: str) -> int:
        """Java major version from Mojang metadata, or a table default."""
        try:
            entry = await self.find_version(mc)
        except VersionNotFound:
            return default_java_major(mc)
        return (await self.get_version_metadata(entry)).java_major_version

    # ──────────────────────────────────────────────
    # HTTP helper
    # ──────────────────────────────────────────────
    async def _get_json(self, url: str, *, not_found: Type[ResolutionError]) -> Dict[str, Any]:
        try:
            async with self._session.get(url, timeout=self._timeout) as resp:
                if resp.status == 404:
                    raise not_found(f"{url} returned 404")
                if resp.status >= 500 or resp.status == 429:
                    raise UpstreamUnavailable(f"{url} returned {resp.status}")
                if resp.status >= 400:
                    raise UnsupportedVersion(f"{url} returned {resp.status}")
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise UpstreamUnavailable(f"{url} unreachable: {exc}") from exc
        except ValueError as exc:
            raise UpstreamUnavailable(f"{url} returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise UpstreamUnavailable(f"{url} returned unexpected JSON")
        return data


def parse_java_major(value: str) -> int:
    """'17' -> 17, '1.8' -> 8, '21.0.2' -> 21."""
    text = value.strip()
    if text.startswith("1."):
        text = text[2:]
    match = re.match(r"(\d+)", text)
    if not match:
        raise MalformedSpecError(f"Java version '{value}' is not understood")
    return int(match.group(1))


def default_java_major(mc: str) -> int:
    parts = [int(p) for p in re.findall(r"\d+", mc)[:3]]
    while len(parts) < 3:
        parts.append(0)
    key = tuple(parts)
    if key >= (1, 20, 5):
        return 21
    if key >= (1, 18, 0):
        return 17
    if key >= (1, 17, 0):
        return 16
    return 8
