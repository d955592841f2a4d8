# mcbuilder/core/config.py
"""
Minecraft Builder – central configuration helper
================================================

All modules import *only* from this file when they need:
• application constants (name, version, upstream endpoints)
• the output directory layout
• process settings read from the environment (`BuilderSettings`)

This file does *not* perform any network I/O.  Directory checks happen
in `BuilderSettings.check_dirs()` so that a misconfigured pod fails
before the first request leaves the process.
"""

from __future__ import annotations

import enum
import os
from pathlib import Path
from typing import Dict, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError

from mcbuilder.core.errors import ConfigError

# ──────────────────────────────────────────────
# 1. Application constants
# ──────────────────────────────────────────────
APP_NAME: str = "Minecraft Builder"
APP_ID: str = "minecraft-server-builder"
BUILDER_VERSION: str = "0.1.0"
USER_AGENT: str = f"{APP_ID}/{BUILDER_VERSION}"

# upstream endpoints
VERSION_MANIFEST_URL = "https://piston-meta.mojang.com/mc/game/version_manifest_v2.json"
PAPER_API_URL = "https://api.papermc.io/v2/projects/paper"
FORGE_MAVEN_URL = "https://maven.minecraftforge.net/net/minecraftforge/forge"
VANILLA_TWEAKS_URL = "https://vanillatweaks.net"
VANILLA_TWEAKS_ZIP_PATH = "/assets/server/zipdatapacks.php"

# output layout (see builder.py)
BUILDS_DIR_NAME = "builds"
CURRENT_LINK_NAME = "current"
MARKER_NAME = "current-build.txt"
BUILD_RECORD_NAME = "build.json"
STAGING_PREFIX = "mcbuild-"


class FetchPolicy(str, enum.Enum):
    fail_fast = "fail-fast"
    skip_optional = "skip-optional"    # mods & datapacks may be dropped


# ──────────────────────────────────────────────
# 2. Settings
# ──────────────────────────────────────────────
class Delays(BaseModel):
    """Follow-up delays (seconds) handed back to the work queue."""

    ready: float = 120.0
    idle: float = 3600.0
    fatal: float = 3600.0
    backoff_initial: float = 30.0
    backoff_cap: float = 3600.0


class BuilderSettings(BaseModel):
    server_name: Optional[str] = None
    server_namespace: str = "default"
    tmp_dir: Path = Path("/tmp")
    output_dir: Optional[Path] = None

    fetch_concurrency: int = Field(4, ge=1, le=16)
    fetch_timeout: float = Field(300.0, gt=0)
    build_timeout: float = Field(1800.0, gt=0)
    manifest_ttl: float = Field(300.0, ge=0)
    fetch_policy: FetchPolicy = FetchPolicy.fail_fast
    keep_builds: int = Field(2, ge=1)

    workers: int = Field(2, ge=1)
    api_host: str = "0.0.0.0"
    api_port: int = Field(8080, gt=0, lt=65536)
    log_level: str = "INFO"

    delays: Delays = Field(default_factory=Delays)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "BuilderSettings":
        """Build settings from environment variables (see `_ENV_MAP`)."""
        env = os.environ if environ is None else environ
        raw: Dict[str, object] = {}
        delays: Dict[str, str] = {}
        for var, field in _ENV_MAP.items():
            value = env.get(var)
            if value is None or value == "":
                continue
            if field.startswith("delays."):
                delays[field.split(".", 1)[1]] = value
            else:
                raw[field] = value
        if delays:
            raw["delays"] = delays
        try:
            return cls(**raw)
        except ValidationError as exc:
            raise ConfigError(f"invalid configuration: {exc}") from exc

    def check_dirs(self) -> None:
        """Both working directories must already exist."""
        if not self.tmp_dir.is_dir():
            raise ConfigError(f"temp dir {self.tmp_dir} does not exist")
        if self.output_dir is None:
            raise ConfigError("OUTPUT_DIR is required")
        if not self.output_dir.is_dir():
            raise ConfigError(f"output dir {self.output_dir} does not exist")

    def require_target(self) -> None:
        """One-shot builder mode: a single resource must be named."""
        if not self.server_name:
            raise ConfigError("SERVER_NAME is required")
        self.check_dirs()


_ENV_MAP: Dict[str, str] = {
    "SERVER_NAME": "server_name",
    "SERVER_NAMESPACE": "server_namespace",
    "TMP_DIR": "tmp_dir",
    "OUTPUT_DIR": "output_dir",
    "FETCH_CONCURRENCY": "fetch_concurrency",
    "FETCH_TIMEOUT": "fetch_timeout",
    "BUILD_TIMEOUT": "build_timeout",
    "MANIFEST_TTL": "manifest_ttl",
    "FETCH_POLICY": "fetch_policy",
    "KEEP_BUILDS": "keep_builds",
    "WORKERS": "workers",
    "API_HOST": "api_host",
    "API_PORT": "api_port",
    "LOG_LEVEL": "log_level",
    "READY_REQUEUE_SECONDS": "delays.ready",
    "IDLE_REQUEUE_SECONDS": "delays.idle",
    "FATAL_REQUEUE_SECONDS": "delays.fatal",
    "BACKOFF_INITIAL_SECONDS": "delays.backoff_initial",
    "BACKOFF_CAP_SECONDS": "delays.backoff_cap",
}


# ──────────────────────────────────────────────
# 3. Helper utilities (public API)
# ──────────────────────────────────────────────
def builds_dir(output_dir: Path) -> Path:
    return output_dir / BUILDS_DIR_NAME


def build_path(output_dir: Path, fingerprint: str) -> Path:
    """Return the directory holding one published build."""
    return builds_dir(output_dir) / fingerprint
