# mcbuilder/core/models.py
"""
Minecraft Builder – shared data models
======================================

Two families of typed value objects live here:

1. The **custom resource schema** (`MinecraftServer` with its spec and
   status).  Field names are snake_case in Python and camelCase on the
   wire, exactly as the API server stores them.

2. The **resolved model** produced by the resolver / datapack composer
   and consumed by the fingerprinter and the build pipeline.  Every
   reference in it is concrete: no aliases, no "latest".

Keep business logic out of this module – it belongs in `core/`
sub-modules.
"""

from __future__ import annotations

import enum
import posixpath
from datetime import datetime
from typing import Any, Dict, List, NamedTuple, Optional
from urllib.parse import unquote, urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from mcbuilder.core.errors import MalformedSpecError

API_GROUP = "minecraft.laverack.dev"
API_VERSION = "v1alpha2"
KIND = "MinecraftServer"
PLURAL = "minecraftservers"

DIGEST_ALGORITHMS = ("md5", "sha1", "sha256")


class _Schema(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ──────────────────────────────────────────────
# 1. Enumerations
# ──────────────────────────────────────────────
class EULA(str, enum.Enum):
    accepted = "Accepted"
    not_accepted = "NotAccepted"


class ServerType(str, enum.Enum):
    vanilla = "Vanilla"
    paper = "Paper"
    forge = "Forge"


class GameMode(str, enum.Enum):
    survival = "Survival"
    creative = "Creative"


class AccessMode(str, enum.Enum):
    allow_list_only = "AllowListOnly"
    public = "Public"


class ModKind(str, enum.Enum):
    single = "single"
    pack = "pack"


class Phase(str, enum.Enum):
    idle = "Idle"
    resolving = "Resolving"
    building = "Building"
    ready = "Ready"
    retryable_failure = "RetryableFailure"
    fatal_failure = "FatalFailure"


# ──────────────────────────────────────────────
# 2. Spec – artifacts, mods & datapacks
# ──────────────────────────────────────────────
class Checksum(_Schema):
    """Zero or more digests of a file.  All absent means trust on first use."""

    md5: Optional[str] = None
    sha1: Optional[str] = None
    sha256: Optional[str] = None

    @field_validator("md5", "sha1", "sha256")
    @classmethod
    def _normalise(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip().lower()
        return v or None

    def digests(self) -> Dict[str, str]:
        return {
            algo: value
            for algo in DIGEST_ALGORITHMS
            if (value := getattr(self, algo)) is not None
        }


class FileRef(_Schema):
    url: str
    checksum: Optional[Checksum] = None


class VanillaTweak(_Schema):
    category: str
    name: str


class DatapackRequest(_Schema):
    vanilla_tweaks: Optional[List[VanillaTweak]] = None
    file: Optional[FileRef] = None

    def check(self) -> None:
        """Exactly one of `file` / `vanillaTweaks` must be given."""
        has_tweaks = bool(self.vanilla_tweaks)
        has_file = self.file is not None
        if has_tweaks and has_file:
            raise MalformedSpecError("datapack sets both 'file' and 'vanillaTweaks'")
        if not has_tweaks and not has_file:
            raise MalformedSpecError("datapack sets neither 'file' nor 'vanillaTweaks'")


class ModRequest(_Schema):
    """A single mod jar or a whole modpack archive, told apart by `kind`."""

    kind: ModKind = ModKind.single
    file: Optional[FileRef] = None

    def check(self) -> None:
        if self.file is None:
            raise MalformedSpecError(f"{self.kind.value} mod entry has no 'file'")


# ──────────────────────────────────────────────
# 3. Spec – versions
# ──────────────────────────────────────────────
class PaperVersion(_Schema):
    build: str = "latest"


class ForgeVersion(_Schema):
    version: str
    # Forge publishes no checksum API, so the user may pin one.
    installer_checksum: Optional[Checksum] = None


class MinecraftVersion(_Schema):
    minecraft: str
    java: Optional[str] = None
    forge: Optional[ForgeVersion] = None
    paper: Optional[PaperVersion] = None


# ──────────────────────────────────────────────
# 4. Spec – game, players, world, service
# ──────────────────────────────────────────────
class GameSpec(_Schema):
    game_mode: GameMode = GameMode.survival


class Player(_Schema):
    name: Optional[str] = None
    uuid: Optional[str] = None


class PlayersSpec(_Schema):
    maximum_online_players: Optional[int] = Field(None, ge=0)
    access_mode: AccessMode = AccessMode.allow_list_only
    allow_list: List[Player] = Field(default_factory=list)
    operator_list: List[Player] = Field(default_factory=list)


class WorldSpec(_Schema):
    seed: Optional[str] = None
    claim_name: str = ""


class ServiceTemplateSpec(_Schema):
    metadata: Optional[Dict[str, Any]] = None
    spec: Dict[str, Any] = Field(default_factory=dict)


class MinecraftServerSpec(_Schema):
    eula: EULA = EULA.not_accepted
    version: MinecraftVersion
    server_type: ServerType = ServerType.vanilla
    game: GameSpec = Field(default_factory=GameSpec)
    motd: Optional[str] = None
    players: PlayersSpec = Field(default_factory=PlayersSpec)
    world: WorldSpec = Field(default_factory=WorldSpec)
    service_template: ServiceTemplateSpec = Field(default_factory=ServiceTemplateSpec)
    datapacks: List[DatapackRequest] = Field(default_factory=list)
    mods: List[ModRequest] = Field(default_factory=list)


# ──────────────────────────────────────────────
# 5. Status & resource envelope
# ──────────────────────────────────────────────
class MinecraftServerStatus(_Schema):
    phase: Optional[Phase] = None
    last_fingerprint: Optional[str] = None
    java_version: Optional[str] = None
    last_error: Optional[str] = None
    last_transition_time: Optional[datetime] = None
    last_check_time: Optional[datetime] = None
    observed_generation: Optional[int] = None
    reduced_trust_artifacts: List[str] = Field(default_factory=list)


class ObjectMeta(_Schema):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    name: str
    namespace: str = "default"
    generation: int = 0
    resource_version: Optional[str] = None
    uid: Optional[str] = None


class ResourceKey(NamedTuple):
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class MinecraftServer(_Schema):
    api_version: str = f"{API_GROUP}/{API_VERSION}"
    kind: str = KIND
    metadata: ObjectMeta
    spec: MinecraftServerSpec
    status: MinecraftServerStatus = Field(default_factory=MinecraftServerStatus)

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(self.metadata.namespace, self.metadata.name)


# ──────────────────────────────────────────────
# 6. Resolved model
# ──────────────────────────────────────────────
class Artifact(BaseModel):
    """A concrete fetchable unit: URL plus the digests it must match."""

    url: str
    digests: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_file_ref(cls, ref: FileRef) -> "Artifact":
        return cls(url=ref.url, digests=ref.checksum.digests() if ref.checksum else {})

    @property
    def reduced_trust(self) -> bool:
        return not self.digests

    @property
    def filename(self) -> str:
        name = posixpath.basename(unquote(urlparse(self.url).path))
        return name or "download"


class ResolvedVersion(BaseModel):
    flavor: ServerType
    minecraft_version: str
    build: Optional[str] = None
    artifact: Artifact
    java_major_version: int

    @property
    def reduced_trust(self) -> bool:
        return self.artifact.reduced_trust


class ResolvedMod(BaseModel):
    kind: ModKind
    artifact: Artifact


class ResolvedDatapack(BaseModel):
    source: str                    # "file" | "vanillaTweaks"
    artifact: Artifact
    # generator input; its download link is minted per request
    request: Optional[Dict[str, Any]] = None

    def identity(self) -> Dict[str, Any]:
        """The part of this datapack that decides whether a rebuild is due."""
        if self.request is not None:
            return {"source": self.source, "request": self.request}
        return self.model_dump(mode="json")


class ResolvedSpec(BaseModel):
    server: ResolvedVersion
    mods: List[ResolvedMod] = Field(default_factory=list)
    datapacks: List[ResolvedDatapack] = Field(default_factory=list)
    config_files: Dict[str, str] = Field(default_factory=dict)

    def fingerprint_data(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        data["datapacks"] = [d.identity() for d in self.datapacks]
        return data

    def reduced_trust_urls(self) -> List[str]:
        urls = [self.server.artifact] + [m.artifact for m in self.mods] + [
            d.artifact for d in self.datapacks
        ]
        return [a.url for a in urls if a.reduced_trust]
