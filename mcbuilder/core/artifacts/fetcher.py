# mcbuilder/core/artifacts/fetcher.py
"""
Minecraft Builder – artifact fetcher
====================================

High-level flow (called from `core.builder`):

1. The builder hands over a list of `FetchJob`s (server jar, every mod,
   every datapack), each with a destination inside the private staging
   directory.
2. `fetch_all()` runs them with a bounded worker count (semaphore).
3. Each `fetch()` streams the body into a scoped `.part` file next to
   its destination while hashing it, verifies every declared digest and
   only then renames the file into place.  The `.part` file is removed
   on every exit path, cancellation included.
4. The first fatal failure cancels everything still in flight; the
   whole batch also runs under an overall build timeout.

Classification (the reconciler decides what to do with it):

• connection error, timeout, 5xx, 429   -> FetchError(transient=True)
• 401/403/404/410 and other 4xx        -> FetchError(transient=False)
• digest mismatch                      -> IntegrityError (always fatal)
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Sequence

import aiohttp

from mcbuilder.core import config
from mcbuilder.core.artifacts.verifier import DigestSet
from mcbuilder.core.errors import BuilderError, FetchError
from mcbuilder.core.models import Artifact

log = logging.getLogger(__name__)

_CHUNK = 65536


@dataclass(frozen=True)
class FetchJob:
    artifact: Artifact
    destination: Path
    label: str = ""
    optional: bool = False          # may be skipped under FetchPolicy.skip_optional


@dataclass
class FetchReport:
    fetched: List[FetchJob] = field(default_factory=list)
    skipped: List[FetchJob] = field(default_factory=list)


class Fetcher:
    def __init__(
        self,
        session: aiohttp.ClientSession,
        *,
        concurrency: int = 4,
        fetch_timeout: float = 300.0,
        build_timeout: float = 1800.0,
        policy: config.FetchPolicy = config.FetchPolicy.fail_fast,
    ):
        self._session = session
        self.concurrency = concurrency
        self.build_timeout = build_timeout
        self.policy = policy
        self._timeout = aiohttp.ClientTimeout(total=fetch_timeout)

    # ──────────────────────────────────────────────
    # Single artifact
    # ──────────────────────────────────────────────
    async def fetch(self, artifact: Artifact, destination: Path) -> Path:
        """Download `artifact` to `destination`, verifying declared digests."""
        destination.parent.mkdir(parents=True, exist_ok=True)
        tmp = destination.with_name(f".{destination.name}.{uuid.uuid4().hex}.part")
        digest_set = DigestSet(artifact.digests)
        try:
            try:
                async with self._session.get(artifact.url, timeout=self._timeout) as resp:
                    _raise_for_status(resp, artifact.url)
                    with tmp.open("wb") as fh:
                        async for chunk in resp.content.iter_chunked(_CHUNK):
                            fh.write(chunk)
                            digest_set.update(chunk)
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                raise FetchError(f"download of {artifact.url} failed: {exc!r}", artifact.url) from exc

            digest_set.verify(artifact.url)
            tmp.replace(destination)
        finally:
            tmp.unlink(missing_ok=True)

        log.debug("Fetched %s -> %s", artifact.url, destination)
        return destination

    # ──────────────────────────────────────────────
    # Batch
    # ──────────────────────────────────────────────
    async def fetch_all(self, jobs: Sequence[FetchJob]) -> FetchReport:
        report = FetchReport()
        if not jobs:
            return report

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _run(job: FetchJob) -> None:
            async with semaphore:
                try:
                    await self.fetch(job.artifact, job.destination)
                except FetchError as exc:
                    if job.optional and self.policy == config.FetchPolicy.skip_optional:
                        log.warning("Skipping optional artifact %s: %s", job.label or job.artifact.url, exc)
                        report.skipped.append(job)
                        return
                    raise
            report.fetched.append(job)

        tasks = [asyncio.create_task(_run(job)) for job in jobs]
        try:
            done, pending = await asyncio.wait(
                tasks, timeout=self.build_timeout, return_when=asyncio.FIRST_EXCEPTION
            )
        except asyncio.CancelledError:
            await _cancel_and_drain(tasks)
            raise

        if pending:
            await _cancel_and_drain(pending)

        errors = [t.exception() for t in done if not t.cancelled() and t.exception() is not None]
        if errors:
            # permanent failures are more informative than transient ones
            errors.sort(key=lambda e: bool(getattr(e, "transient", True)))
            first = errors[0]
            if isinstance(first, BuilderError):
                raise first
            raise FetchError(f"unexpected fetch failure: {first!r}") from first
        if pending:
            raise FetchError(f"build exceeded overall timeout of {self.build_timeout:.0f}s")
        return report


async def _cancel_and_drain(tasks) -> None:
    for t in tasks:
        t.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


def _raise_for_status(resp: aiohttp.ClientResponse, url: str) -> None:
    if resp.status < 400:
        return
    transient = resp.status >= 500 or resp.status == 429
    raise FetchError(f"{url} returned HTTP {resp.status}", url, transient=transient)
