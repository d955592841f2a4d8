# mcbuilder/core/versions/manifest.py
"""
Mojang version manifest & per-version metadata documents.

The manifest maps version ids to per-version metadata URLs; the metadata
document carries the server jar download and the Java runtime the
version needs.  Both are read-only upstream documents.
"""

from __future__ import annotations

import enum
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, HttpUrl

LATEST_RELEASE_ALIASES = frozenset(
    {"latest", "release", "latest_release", "latest-release", "latestrelease"}
)
LATEST_SNAPSHOT_ALIASES = frozenset(
    {"snapshot", "latest_snapshot", "latest-snapshot", "latestsnapshot"}
)


class VersionType(str, enum.Enum):
    release = "release"
    snapshot = "snapshot"
    old_alpha = "old_alpha"
    old_beta = "old_beta"


class Latest(BaseModel):
    release: str
    snapshot: str


class Version(BaseModel):
    id: str
    type: VersionType
    url: HttpUrl
    time: datetime
    release_time: datetime = Field(alias="releaseTime")
    sha1: Optional[str] = None
    compliance_level: Optional[int] = Field(None, alias="complianceLevel")


class VersionManifest(BaseModel):
    latest: Latest
    versions: List[Version]

    def find_exact(self, version_id: str) -> Optional[Version]:
        return next((v for v in self.versions if v.id == version_id), None)

    def latest_release(self) -> Optional[Version]:
        return self.find_exact(self.latest.release)

    def latest_snapshot(self) -> Optional[Version]:
        return self.find_exact(self.latest.snapshot)

    def resolve(self, requested: str) -> Optional[Version]:
        """Resolve an alias (case-insensitive) or an exact version id."""
        key = requested.strip().lower()
        if key in LATEST_RELEASE_ALIASES:
            return self.latest_release()
        if key in LATEST_SNAPSHOT_ALIASES:
            return self.latest_snapshot()
        return self.find_exact(requested.strip())


def is_alias(requested: str) -> bool:
    key = requested.strip().lower()
    return key in LATEST_RELEASE_ALIASES or key in LATEST_SNAPSHOT_ALIASES


# ──────────────────────────────────────────────
# Per-version metadata
# ──────────────────────────────────────────────
class Download(BaseModel):
    url: HttpUrl
    sha1: Optional[str] = None
    size: Optional[int] = None


class Downloads(BaseModel):
    server: Optional[Download] = None


class JavaVersion(BaseModel):
    major_version: int = Field(alias="majorVersion")
    component: Optional[str] = None


class VersionMetadata(BaseModel):
    id: str
    downloads: Downloads = Field(default_factory=Downloads)
    java_version: Optional[JavaVersion] = Field(None, alias="javaVersion")

    @property
    def java_major_version(self) -> int:
        # Documents predating the javaVersion key all target Java 8.
        return self.java_version.major_version if self.java_version else 8


# ──────────────────────────────────────────────
# TTL cache
# ──────────────────────────────────────────────
class TTLCache:
    """Tiny keyed cache; entries older than `ttl_seconds` are dropped on read."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if not entry:
            return None
        ts, payload = entry
        if self._clock() - ts > self.ttl_seconds:
            self._entries.pop(key, None)
            return None
        return payload

    def set(self, key: str, payload: Any) -> None:
        self._entries[key] = (self._clock(), payload)

    def clear(self) -> None:
        self._entries.clear()
