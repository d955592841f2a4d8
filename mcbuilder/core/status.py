# mcbuilder/core/status.py
"""
Minecraft Builder – status reporter
===================================

The only writer of `MinecraftServer.status`.  Writes are optimistic:
the object's resourceVersion guards the PUT, and a 409 means somebody
else wrote first.  In that case the reporter re-reads the object,
re-applies the outcome on top of the fresh status and tries again at
once.  The conflict never reaches the reconciler.

Before every attempt the object's generation is compared against the
generation the pass started from; a changed spec means the outcome is
stale and must not overwrite anything.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from mcbuilder.core.errors import ConflictError, InvalidResource, StaleGenerationError
from mcbuilder.core.kube import ResourceClient
from mcbuilder.core.models import MinecraftServer, MinecraftServerStatus, Phase, ResourceKey

log = logging.getLogger(__name__)

FAILURE_PHASES = (Phase.retryable_failure, Phase.fatal_failure)


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass
class Outcome:
    phase: Phase
    fingerprint: Optional[str] = None
    java_version: Optional[str] = None
    error: Optional[str] = None
    reduced_trust: Optional[List[str]] = None
    generation: Optional[int] = None


def apply_outcome(
    status: MinecraftServerStatus, outcome: Outcome, now: datetime
) -> MinecraftServerStatus:
    """Return a new status with `outcome` folded in."""
    new = status.model_copy(deep=True)
    new.last_check_time = now
    if outcome.generation is not None:
        new.observed_generation = outcome.generation

    if outcome.phase == Phase.idle and status.phase == Phase.ready:
        # the published build still matches: nothing else to record
        return new

    if new.phase != outcome.phase:
        new.last_transition_time = now
    new.phase = outcome.phase

    if outcome.java_version is not None:
        new.java_version = outcome.java_version
    if outcome.reduced_trust is not None:
        new.reduced_trust_artifacts = list(outcome.reduced_trust)

    if outcome.phase in FAILURE_PHASES:
        new.last_error = outcome.error
    else:
        new.last_error = None
        if outcome.fingerprint is not None:
            new.last_fingerprint = outcome.fingerprint
    return new


class StatusReporter:
    def __init__(
        self,
        client: ResourceClient,
        *,
        max_attempts: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.client = client
        self.max_attempts = max_attempts
        self._clock = clock

    async def report(
        self,
        key: ResourceKey,
        outcome: Outcome,
        *,
        server: Optional[MinecraftServer] = None,
        expected_generation: Optional[int] = None,
    ) -> MinecraftServer:
        current = server if server is not None else await self._reload(key)
        for attempt in range(1, self.max_attempts + 1):
            if expected_generation is not None and current.metadata.generation != expected_generation:
                raise StaleGenerationError(
                    f"{key} moved to generation {current.metadata.generation} "
                    f"while reconciling generation {expected_generation}"
                )
            status = apply_outcome(current.status, outcome, self._clock())
            try:
                return await self.client.update_status(current, status)
            except ConflictError:
                log.debug("Status write for %s conflicted (attempt %d), re-reading", key, attempt)
                current = await self._reload(key)
        raise ConflictError(f"status write for {key} kept conflicting after {self.max_attempts} attempts")

    async def _reload(self, key: ResourceKey) -> MinecraftServer:
        try:
            fresh = await self.client.get(key)
        except InvalidResource as exc:
            if exc.server is None:
                raise
            fresh = exc.server
        if fresh is None:
            raise StaleGenerationError(f"{key} was deleted")
        return fresh
