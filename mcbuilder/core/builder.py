# mcbuilder/core/builder.py
"""
Minecraft Builder – build & publish
===================================

Turns a `ResolvedSpec` into files on disk.  Every attempt gets its own
private staging directory under TMP_DIR; nothing in it is ever reused.
Only when every required artifact has been fetched and verified is the
staging tree moved into the output directory and made current.

Filesystem layout
-----------------
<OUTPUT_DIR>/
    ├─ builds/
    │   ├─ 3f9a…c1/                 ← one directory per fingerprint
    │   │   ├─ server.jar           (forge-installer.jar for Forge)
    │   │   ├─ mods/  modpacks/  datapacks/
    │   │   ├─ eula.txt  server.properties  whitelist.json  ops.json
    │   │   └─ build.json           ← resolved spec + fingerprint
    │   └─ 77d0…8e/
    ├─ current -> builds/3f9a…c1    ← symlink, swapped with os.replace()
    └─ current-build.txt            ← stores *just* the fingerprint
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Set

from mcbuilder.core import config
from mcbuilder.core.artifacts.fetcher import Fetcher, FetchJob
from mcbuilder.core.artifacts.verifier import file_digests
from mcbuilder.core.models import ModKind, ResolvedSpec, ResourceKey, ServerType

log = logging.getLogger(__name__)

SERVER_JAR = "server.jar"
FORGE_INSTALLER = "forge-installer.jar"


@dataclass
class BuildResult:
    fingerprint: str
    path: Path
    skipped: List[str] = field(default_factory=list)


# ──────────────────────────────────────────────
# 1. Planning
# ──────────────────────────────────────────────
def _unique(name: str, used: Set[str], index: int) -> str:
    if name in used:
        name = f"{index:02d}-{name}"
    used.add(name)
    return name


def plan_jobs(resolved: ResolvedSpec, staging: Path) -> List[FetchJob]:
    """One FetchJob per artifact, each with a destination inside `staging`."""
    server_name = FORGE_INSTALLER if resolved.server.flavor == ServerType.forge else SERVER_JAR
    jobs = [FetchJob(resolved.server.artifact, staging / server_name, label="server")]

    used = {"mods": set(), "modpacks": set(), "datapacks": set()}
    for i, mod in enumerate(resolved.mods):
        folder = "modpacks" if mod.kind == ModKind.pack else "mods"
        name = _unique(mod.artifact.filename, used[folder], i)
        jobs.append(FetchJob(mod.artifact, staging / folder / name, label=f"{folder}/{name}", optional=True))

    for i, pack in enumerate(resolved.datapacks):
        filename = pack.artifact.filename
        if not filename.endswith(".zip"):
            filename = f"{filename}.zip"
        name = _unique(filename, used["datapacks"], i)
        jobs.append(FetchJob(pack.artifact, staging / "datapacks" / name, label=f"datapacks/{name}", optional=True))
    return jobs


# ──────────────────────────────────────────────
# 2. Build
# ──────────────────────────────────────────────
class Builder:
    """
    With `per_resource=False` (one-shot builder pod) `output_dir` is the
    output directory itself; with `per_resource=True` (operator mode) each
    resource publishes into `output_dir/<namespace>/<name>/`.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        *,
        tmp_dir: Path,
        output_dir: Path,
        keep_builds: int = 2,
        per_resource: bool = False,
    ):
        self.fetcher = fetcher
        self.tmp_dir = tmp_dir
        self.output_dir = output_dir
        self.keep_builds = keep_builds
        self.per_resource = per_resource

    def output_for(self, key: ResourceKey) -> Path:
        if not self.per_resource:
            return self.output_dir
        return self.output_dir / key.namespace / key.name

    async def build(
        self,
        key: ResourceKey,
        resolved: ResolvedSpec,
        fingerprint: str,
        before_publish: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> BuildResult:
        """
        Fetch everything into a fresh staging dir, then publish it.

        `before_publish` runs after the last artifact verified and before
        anything becomes visible; raising from it discards the build.
        """
        output_dir = self.output_for(key)
        output_dir.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=config.STAGING_PREFIX, dir=self.tmp_dir))
        log.info("Building %s for %s in %s", fingerprint[:12], key, staging)
        try:
            report = await self.fetcher.fetch_all(plan_jobs(resolved, staging))
            skipped = [job.artifact.url for job in report.skipped]
            files = {
                job.destination.relative_to(staging).as_posix(): file_digests(job.destination)["sha256"]
                for job in report.fetched
            }

            for name, contents in resolved.config_files.items():
                (staging / name).write_text(contents, encoding="utf-8")

            record = {
                "resource": str(key),
                "fingerprint": fingerprint,
                "resolved": resolved.model_dump(mode="json"),
                "files": files,
                "skipped": skipped,
            }
            (staging / config.BUILD_RECORD_NAME).write_text(
                json.dumps(record, indent=2, sort_keys=True), encoding="utf-8"
            )

            if before_publish is not None:
                await before_publish()
            path = publish(output_dir, staging, fingerprint)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        prune(output_dir, self.keep_builds)
        return BuildResult(fingerprint=fingerprint, path=path, skipped=skipped)


# ──────────────────────────────────────────────
# 3. Publish
# ──────────────────────────────────────────────
def publish(output_dir: Path, staging: Path, fingerprint: str) -> Path:
    """Move `staging` to builds/<fingerprint> and make it current."""
    builds = config.builds_dir(output_dir)
    builds.mkdir(exist_ok=True)
    target = config.build_path(output_dir, fingerprint)

    if (target / config.BUILD_RECORD_NAME).exists():
        # same fingerprint already published: content-addressed, keep it
        log.info("Build %s already present, reusing", fingerprint[:12])
    else:
        incoming = builds / f".incoming-{uuid.uuid4().hex}"
        try:
            try:
                os.rename(staging, incoming)
            except OSError:
                # TMP_DIR on another filesystem
                shutil.copytree(staging, incoming)
            if target.exists():
                shutil.rmtree(target)
            os.rename(incoming, target)
        finally:
            shutil.rmtree(incoming, ignore_errors=True)

    _switch_current(output_dir, fingerprint)
    log.info("Published build %s to %s", fingerprint[:12], output_dir)
    return target


def _switch_current(output_dir: Path, fingerprint: str) -> None:
    link = output_dir / config.CURRENT_LINK_NAME
    tmp_link = output_dir / f".{config.CURRENT_LINK_NAME}-{uuid.uuid4().hex}"
    os.symlink(Path(config.BUILDS_DIR_NAME) / fingerprint, tmp_link)
    try:
        os.replace(tmp_link, link)
    except OSError:
        tmp_link.unlink(missing_ok=True)
        raise

    marker = output_dir / config.MARKER_NAME
    tmp = marker.with_suffix(".tmp")
    tmp.write_text(fingerprint, encoding="utf-8")
    tmp.replace(marker)


def current_build(output_dir: Path) -> Optional[str]:
    """Return the fingerprint currently published, or None."""
    marker = output_dir / config.MARKER_NAME
    if marker.exists():
        return marker.read_text(encoding="utf-8").strip() or None
    return None


def prune(output_dir: Path, keep_builds: int) -> None:
    """Remove published builds beyond `keep_builds`, never the current one."""
    builds = config.builds_dir(output_dir)
    if not builds.is_dir():
        return
    current = current_build(output_dir)
    candidates = sorted(
        (p for p in builds.iterdir() if p.is_dir() and not p.name.startswith(".")),
        key=lambda p: p.stat().st_mtime,
        reverse=True,
    )
    keep = {current} if current else set()
    for path in candidates:
        if len(keep) >= keep_builds and path.name not in keep:
            log.debug("Pruning old build %s", path.name)
            shutil.rmtree(path, ignore_errors=True)
        else:
            keep.add(path.name)
