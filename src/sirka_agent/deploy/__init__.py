"""Deployment activation engine: artifact resolution, staging and swap."""

from .fetch import ArtifactSource
from .manager import ActivationManager
from .models import (
    ActivationPolicy,
    ActivationResult,
    ActivationState,
    BackendHandle,
    BackendKind,
    DeploymentRequest,
    Site,
    SiteLayout,
    StagedContent,
)
from .nginx_config import detect_index_candidates, generate_site_config
from .stager import ArchiveStager

__all__ = [
    "ActivationManager",
    "ActivationPolicy",
    "ActivationResult",
    "ActivationState",
    "ArchiveStager",
    "ArtifactSource",
    "BackendHandle",
    "BackendKind",
    "DeploymentRequest",
    "Site",
    "SiteLayout",
    "StagedContent",
    "detect_index_candidates",
    "generate_site_config",
]
