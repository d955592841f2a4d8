# mcbuilder/core/errors.py
"""
Minecraft Builder – error taxonomy
==================================

Errors are classified where they originate (resolver, fetcher, client)
and carry a `transient` flag.  Only the reconciler turns that flag into
a follow-up delay; lower layers never decide scheduling.

    BuilderError
    ├─ ConfigError              process-level, no retry
    ├─ EulaNotAccepted          permanent until the spec changes
    ├─ ResolutionError
    │   ├─ VersionNotFound      permanent
    │   ├─ UnsupportedVersion   permanent
    │   ├─ MalformedSpecError   permanent
    │   │   └─ InvalidResource  stored object fails the schema
    │   └─ UpstreamUnavailable  transient
    ├─ FetchError               transient or permanent
    ├─ IntegrityError           always fatal
    ├─ ConflictError            retried by the status reporter
    ├─ StaleGenerationError     spec changed mid-pass
    └─ ApiUnavailable           orchestration API unreachable
"""

from __future__ import annotations

from typing import Optional


class BuilderError(Exception):
    """Base error for builder failures."""

    transient: bool = False

    def __init__(self, message: str, *, transient: Optional[bool] = None):
        super().__init__(message)
        if transient is not None:
            self.transient = transient

    @property
    def reason(self) -> str:
        return type(self).__name__


class ConfigError(BuilderError):
    """Missing or invalid required configuration."""


class EulaNotAccepted(BuilderError):
    """The resource has not accepted the Minecraft EULA."""


# ──────────────────────────────────────────────
# Resolution
# ──────────────────────────────────────────────
class ResolutionError(BuilderError):
    pass


class VersionNotFound(ResolutionError):
    pass


class UnsupportedVersion(ResolutionError):
    pass


class MalformedSpecError(ResolutionError):
    pass


class InvalidResource(MalformedSpecError):
    """
    The stored object does not match the MinecraftServer schema.  `server`
    carries its metadata and status (spec left out) so that the failure
    can still be written back, or None if even those are unreadable.
    """

    def __init__(self, message: str, server=None):
        super().__init__(message)
        self.server = server


class UpstreamUnavailable(ResolutionError):
    transient = True


# ──────────────────────────────────────────────
# Fetching
# ──────────────────────────────────────────────
class FetchError(BuilderError):
    def __init__(self, message: str, url: str = "", *, transient: bool = True):
        super().__init__(message, transient=transient)
        self.url = url


class IntegrityError(BuilderError):
    """A downloaded artifact did not match one of its declared digests."""

    def __init__(self, url: str, algorithm: str, expected: str, actual: str):
        super().__init__(
            f"{algorithm} mismatch for {url}: expected {expected}, got {actual}",
            transient=False,
        )
        self.url = url
        self.algorithm = algorithm
        self.expected = expected
        self.actual = actual


# ──────────────────────────────────────────────
# Orchestration API
# ──────────────────────────────────────────────
class ConflictError(BuilderError):
    """Optimistic-concurrency write lost against a concurrent writer."""

    transient = True


class StaleGenerationError(BuilderError):
    transient = True


class ApiUnavailable(BuilderError):
    transient = True
