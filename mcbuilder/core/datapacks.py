# mcbuilder/core/datapacks.py
"""
Minecraft Builder – datapack composer
=====================================

A datapack request is either a direct file or a list of Vanilla Tweaks
selections.  Selections are turned into ONE composite zip by the Vanilla
Tweaks generator; the resulting link is then an ordinary `Artifact`
that the fetcher downloads and verifies like any other file.

Selection order is preserved (it can change the generated archive);
duplicate (category, name) pairs are dropped, first occurrence wins.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Sequence

import aiohttp

from mcbuilder.core import config
from mcbuilder.core.errors import UnsupportedVersion, UpstreamUnavailable
from mcbuilder.core.models import (
    DIGEST_ALGORITHMS,
    Artifact,
    DatapackRequest,
    ResolvedDatapack,
    VanillaTweak,
)

log = logging.getLogger(__name__)


def minor_version(version: str) -> str:
    """'1.19.3' -> '1.19'; '1.19' stays '1.19'."""
    if version.count(".") > 1:
        major, minor = version.split(".")[:2]
        return f"{major}.{minor}"
    return version


def dedupe_selections(selections: Sequence[VanillaTweak]) -> List[VanillaTweak]:
    seen = set()
    ordered: List[VanillaTweak] = []
    for sel in selections:
        key = (sel.category, sel.name)
        if key in seen:
            continue
        seen.add(key)
        ordered.append(sel)
    return ordered


def group_selections(selections: Sequence[VanillaTweak]) -> Dict[str, List[str]]:
    grouped: Dict[str, List[str]] = {}
    for sel in selections:
        grouped.setdefault(sel.category, []).append(sel.name)
    return grouped


def tweaks_request(minecraft_version: str, selections: Sequence[VanillaTweak]) -> Dict[str, Any]:
    """What the generator is asked for; stable across passes, unlike its link."""
    return {
        "version": minor_version(minecraft_version),
        "selections": [[s.category, s.name] for s in dedupe_selections(selections)],
    }


class DatapackComposer:
    def __init__(
        self,
        session: aiohttp.ClientSession,
        *,
        base_url: str = config.VANILLA_TWEAKS_URL,
        request_timeout: float = 60.0,
    ):
        self._session = session
        self.base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=request_timeout)

    async def resolve(self, minecraft_version: str, request: DatapackRequest) -> ResolvedDatapack:
        request.check()
        if request.file is not None:
            return ResolvedDatapack(source="file", artifact=Artifact.from_file_ref(request.file))
        selections = request.vanilla_tweaks or []
        artifact = await self.compose(minecraft_version, selections)
        return ResolvedDatapack(
            source="vanillaTweaks",
            artifact=artifact,
            request=tweaks_request(minecraft_version, selections),
        )

    async def compose(self, minecraft_version: str, selections: Sequence[VanillaTweak]) -> Artifact:
        packs = group_selections(dedupe_selections(selections))
        form = {
            "version": minor_version(minecraft_version),
            "packs": json.dumps(packs, separators=(",", ":")),
        }
        url = self.base_url + config.VANILLA_TWEAKS_ZIP_PATH
        try:
            async with self._session.post(url, data=form, timeout=self._timeout) as resp:
                if resp.status >= 500 or resp.status == 429:
                    raise UpstreamUnavailable(f"Vanilla Tweaks returned {resp.status}")
                if resp.status >= 400:
                    raise UnsupportedVersion(f"Vanilla Tweaks rejected the request ({resp.status})")
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise UpstreamUnavailable(f"Vanilla Tweaks unreachable: {exc}") from exc
        except ValueError as exc:
            raise UpstreamUnavailable("Vanilla Tweaks returned invalid JSON") from exc

        log.debug("Vanilla Tweaks request %s -> %s", form, data)

        if not isinstance(data, dict) or data.get("status") != "success":
            status = data.get("status") if isinstance(data, dict) else None
            raise UnsupportedVersion(
                f"Vanilla Tweaks could not build datapacks {form['packs']} "
                f"for {form['version']} (status {status!r})"
            )
        link = data.get("link")
        if not isinstance(link, str) or not link:
            raise UnsupportedVersion("Vanilla Tweaks response has no download link")

        digests = {
            algo: data[algo].lower()
            for algo in DIGEST_ALGORITHMS
            if isinstance(data.get(algo), str) and data[algo]
        }
        full = link if link.startswith(("http://", "https://")) else self.base_url + link
        return Artifact(url=full, digests=digests)
