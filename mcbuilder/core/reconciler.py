# mcbuilder/core/reconciler.py
"""
Minecraft Builder – reconciler
==============================

Drives one `MinecraftServer` to convergence per call:

    load ─► EULA gate ─► Resolving ─► fingerprint ─┬─► Idle            (equal, and published)
                                                   └─► Building ─► Ready
    any failure ─► RetryableFailure (transient) | FatalFailure (permanent)
    schema-invalid object ─► FatalFailure, written through its metadata

Contract:  `await reconcile(key) -> (next_delay_seconds, error | None)`

The reconciler is the single place that turns an error classification
into a follow-up delay:

    Ready              short  (delays.ready)
    Idle               long   (delays.idle, periodic re-check)
    FatalFailure       long   (delays.fatal; spec edits retrigger via watch)
    RetryableFailure   exponential backoff per resource, capped
    stale generation   0      (retry at once against the new spec)

Status is always written before returning, except when the resource is
gone or the pass turned out to be stale.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple

from mcbuilder.core import server_files
from mcbuilder.core.builder import Builder, current_build
from mcbuilder.core.config import Delays
from mcbuilder.core.datapacks import DatapackComposer
from mcbuilder.core.errors import BuilderError, EulaNotAccepted, InvalidResource, StaleGenerationError
from mcbuilder.core.fingerprint import fingerprint
from mcbuilder.core.kube import ResourceClient
from mcbuilder.core.models import (
    EULA,
    Artifact,
    MinecraftServer,
    MinecraftServerSpec,
    Phase,
    ResolvedMod,
    ResolvedSpec,
    ResourceKey,
)
from mcbuilder.core.status import Outcome, StatusReporter
from mcbuilder.core.versions.resolver import VersionResolver

EULA_MESSAGE = (
    "The Minecraft EULA (https://aka.ms/MinecraftEULA) has not been accepted; "
    "set spec.eula to Accepted"
)

ReconcileResult = Tuple[float, Optional[BaseException]]


class Reconciler:
    def __init__(
        self,
        client: ResourceClient,
        resolver: VersionResolver,
        composer: DatapackComposer,
        builder: Builder,
        *,
        delays: Optional[Delays] = None,
        reporter: Optional[StatusReporter] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.client = client
        self.resolver = resolver
        self.composer = composer
        self.builder = builder
        self.delays = delays or Delays()
        self.reporter = reporter or StatusReporter(client)
        self.log = logger or logging.getLogger(__name__)
        self._failures: Dict[ResourceKey, int] = {}

    # ──────────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────────
    async def reconcile(self, key: ResourceKey) -> ReconcileResult:
        try:
            server = await self.client.get(key)
        except InvalidResource as exc:
            return await self._reject(key, exc)
        except BuilderError as exc:
            self.log.error("Could not load %s: %s", key, exc)
            return self._backoff(key), exc

        if server is None:
            self.log.info("%s no longer exists, nothing to do", key)
            self._failures.pop(key, None)
            return self.delays.idle, None

        generation = server.metadata.generation
        try:
            outcome, delay, error = await self._run_pass(server)
        except StaleGenerationError as exc:
            self.log.info("Discarding stale pass for %s: %s", key, exc)
            return 0.0, None
        except Exception as exc:  # unexpected: keep the resource retrying
            self.log.exception("Unexpected failure reconciling %s", key)
            outcome, delay, error = self._failure(key, exc, generation)

        return await self._record(key, server, outcome, delay, error)

    async def resolve(self, spec: MinecraftServerSpec) -> ResolvedSpec:
        """Expand every reference in `spec` into concrete artifacts."""
        # malformed entries are rejected before any network call
        for mod in spec.mods:
            mod.check()
        for pack in spec.datapacks:
            pack.check()

        server = await self.resolver.resolve(spec.server_type, spec.version)
        mods = [ResolvedMod(kind=m.kind, artifact=Artifact.from_file_ref(m.file)) for m in spec.mods]
        datapacks = [await self.composer.resolve(server.minecraft_version, p) for p in spec.datapacks]
        return ResolvedSpec(
            server=server,
            mods=mods,
            datapacks=datapacks,
            config_files=server_files.render(spec),
        )

    # ──────────────────────────────────────────────
    # One pass
    # ──────────────────────────────────────────────
    async def _run_pass(self, server: MinecraftServer) -> Tuple[Outcome, float, Optional[BaseException]]:
        key = server.key
        generation = server.metadata.generation

        if server.spec.eula != EULA.accepted:
            self._failures.pop(key, None)
            exc = EulaNotAccepted(EULA_MESSAGE)
            return Outcome(Phase.fatal_failure, error=EULA_MESSAGE, generation=generation), self.delays.fatal, exc

        self.log.debug("%s: %s", key, Phase.resolving.value)
        try:
            resolved = await self.resolve(server.spec)
        except BuilderError as exc:
            return self._failure(key, exc, generation)

        target = fingerprint(resolved)
        java = str(resolved.server.java_major_version)
        reduced = resolved.reduced_trust_urls()
        for url in reduced:
            self.log.warning("%s: %s has no digest, fetching with reduced trust", key, url)

        published = current_build(self.builder.output_for(key))
        if target == server.status.last_fingerprint and published == target:
            self._failures.pop(key, None)
            outcome = Outcome(
                Phase.idle, fingerprint=target, java_version=java,
                reduced_trust=reduced, generation=generation,
            )
            return outcome, self.delays.idle, None

        self.log.debug("%s: %s %s", key, Phase.building.value, target[:12])

        async def _still_current() -> None:
            fresh = await self.client.get(key)
            if fresh is None:
                raise StaleGenerationError(f"{key} was deleted during the build")
            if fresh.metadata.generation != generation:
                raise StaleGenerationError(
                    f"{key} changed to generation {fresh.metadata.generation} during the build"
                )

        try:
            result = await self.builder.build(key, resolved, target, before_publish=_still_current)
        except StaleGenerationError:
            raise
        except BuilderError as exc:
            return self._failure(key, exc, generation, java=java)

        for url in result.skipped:
            self.log.warning("%s: optional artifact %s was skipped", key, url)
        self._failures.pop(key, None)
        outcome = Outcome(
            Phase.ready, fingerprint=target, java_version=java,
            reduced_trust=reduced, generation=generation,
        )
        return outcome, self.delays.ready, None

    # ──────────────────────────────────────────────
    # Helpers
    # ──────────────────────────────────────────────
    async def _record(
        self,
        key: ResourceKey,
        server: MinecraftServer,
        outcome: Outcome,
        delay: float,
        error: Optional[BaseException],
    ) -> ReconcileResult:
        try:
            await self.reporter.report(key, outcome, server=server, expected_generation=outcome.generation)
        except StaleGenerationError as exc:
            self.log.info("Not recording stale outcome for %s: %s", key, exc)
            return 0.0, None
        except BuilderError as exc:
            self.log.error("Could not write status for %s: %s", key, exc)
            return self._backoff(key), exc

        self._log_transition(key, server.status.phase, outcome)
        return delay, error

    async def _reject(self, key: ResourceKey, exc: InvalidResource) -> ReconcileResult:
        """A stored object that fails the schema is fatal until someone edits it."""
        self.log.error("%s", exc)
        self._failures.pop(key, None)
        if exc.server is None:
            return self.delays.fatal, exc
        outcome = Outcome(
            Phase.fatal_failure,
            error=f"{exc.reason}: {exc}",
            generation=exc.server.metadata.generation,
        )
        return await self._record(key, exc.server, outcome, self.delays.fatal, exc)

    def _failure(
        self,
        key: ResourceKey,
        exc: BaseException,
        generation: int,
        java: Optional[str] = None,
    ) -> Tuple[Outcome, float, BaseException]:
        reason = exc.reason if isinstance(exc, BuilderError) else type(exc).__name__
        message = f"{reason}: {exc}"
        transient = getattr(exc, "transient", True)
        if transient:
            phase, delay = Phase.retryable_failure, self._backoff(key)
        else:
            self._failures.pop(key, None)
            phase, delay = Phase.fatal_failure, self.delays.fatal
        return Outcome(phase, java_version=java, error=message, generation=generation), delay, exc

    def _backoff(self, key: ResourceKey) -> float:
        attempts = self._failures.get(key, 0)
        self._failures[key] = attempts + 1
        return min(self.delays.backoff_cap, self.delays.backoff_initial * (2 ** min(attempts, 32)))

    def _log_transition(self, key: ResourceKey, previous: Optional[Phase], outcome: Outcome) -> None:
        if previous == outcome.phase or (outcome.phase == Phase.idle and previous == Phase.ready):
            self.log.debug("%s: still %s", key, (previous or outcome.phase).value)
            return
        old = previous.value if previous else "-"
        if outcome.error:
            self.log.warning("%s: %s -> %s (%s)", key, old, outcome.phase.value, outcome.error)
        else:
            self.log.info("%s: %s -> %s", key, old, outcome.phase.value)
