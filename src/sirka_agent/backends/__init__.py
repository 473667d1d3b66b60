"""Runtime backends that make a site's live directory servable."""

from .base import RuntimeBackend
from .commands import CommandResult, CommandRunner, DockerCli, NginxService, PrivilegeEscalation
from .detect import build_backend, detect_backend_kind, select_backend
from .isolated import IsolatedProcessBackend
from .shared_host import SharedHostBackend

__all__ = [
    "RuntimeBackend",
    "IsolatedProcessBackend",
    "SharedHostBackend",
    "CommandResult",
    "CommandRunner",
    "DockerCli",
    "NginxService",
    "PrivilegeEscalation",
    "build_backend",
    "detect_backend_kind",
    "select_backend",
]
