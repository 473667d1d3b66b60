"""Models for site deployments."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator

SITE_ID_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$"
DOMAIN_PATTERN = r"^(\*\.)?([A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?\.)*[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?$"


class BackendKind(str, Enum):
    ISOLATED_PROCESS = "docker"
    SHARED_HOST = "system"


class ActivationPolicy(str, Enum):
    ATOMIC_SWAP = "atomic_swap"
    # Deletes the site root before staging; no rollback is possible.
    FULL_REPLACE = "full_replace"


class ActivationState(str, Enum):
    IDLE = "idle"
    STAGED = "staged"
    SWAPPING = "swapping"
    ACTIVE = "active"
    ROLLED_BACK = "rolled_back"


class DeployStage(str, Enum):
    RESOLVE = "resolve"
    STAGE = "stage"
    SWAP = "swap"
    BACKEND = "backend"


class Site(BaseModel):
    model_config = ConfigDict(frozen=True)

    siteId: str = Field(..., pattern=SITE_ID_PATTERN)
    siteName: str = Field(..., min_length=1, max_length=200)
    domain: Optional[str] = Field(None, max_length=253, pattern=DOMAIN_PATTERN)


class ArtifactRef(BaseModel):
    """Where the archive comes from. Exactly one field must be set."""

    zipData: Optional[str] = None
    artifactUrl: Optional[HttpUrl] = None


class DeploymentRequest(BaseModel):
    siteId: str = Field(..., pattern=SITE_ID_PATTERN)
    siteName: str = Field(..., min_length=1, max_length=200)
    domain: Optional[str] = Field(None, max_length=253, pattern=DOMAIN_PATTERN)
    zipData: Optional[str] = None
    artifactUrl: Optional[HttpUrl] = None
    policy: Optional[ActivationPolicy] = None
    requestedAt: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("domain", "zipData", mode="before")
    @classmethod
    def empty_as_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @property
    def site(self) -> Site:
        return Site(siteId=self.siteId, siteName=self.siteName, domain=self.domain or None)

    @property
    def artifact(self) -> ArtifactRef:
        return ArtifactRef(zipData=self.zipData, artifactUrl=self.artifactUrl)


class RestartRequest(BaseModel):
    siteId: str = Field(..., pattern=SITE_ID_PATTERN)


class BackendHandle(BaseModel):
    kind: BackendKind
    name: str
    configPath: Optional[str] = None


class ActivationResult(BaseModel):
    # None means the site is served by the catch-all server block.
    domain: Optional[str]
    servedPath: str
    backendHandle: BackendHandle


@dataclass
class StagedContent:
    path: Path
    files: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class SiteLayout:
    """Named directory roles under one site root."""

    root: Path

    @property
    def staged(self) -> Path:
        return self.root / "new"

    @property
    def live(self) -> Path:
        return self.root / "current"

    @property
    def backup(self) -> Path:
        return self.root / "old"

    @property
    def policy_marker(self) -> Path:
        return self.root / ".policy"
