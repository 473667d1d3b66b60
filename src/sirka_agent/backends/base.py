"""Runtime backend interface."""

from __future__ import annotations

import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List

from sirka_agent.deploy.models import BackendHandle, BackendKind, Site


class RuntimeBackend(ABC):
    """Makes a site's live directory servable.

    Implementations are chosen once per process and shared by every
    deployment; they must be safe to call concurrently for distinct sites.
    """

    kind: BackendKind

    @abstractmethod
    def render_config(self, site: Site, served_path: Path) -> str:
        """Produce the proxy config for ``site`` as served from ``served_path``."""

    @abstractmethod
    async def activate(self, site: Site, config: str, served_path: Path) -> BackendHandle:
        """Apply ``config`` and make ``served_path`` live for ``site``."""

    @abstractmethod
    async def restart(self, site_id: str) -> None:
        """Restart whatever serves ``site_id``."""

    @abstractmethod
    async def list_sites(self) -> List[str]:
        """Return the site ids this backend currently knows about."""


def write_atomic(path: Path, text: str) -> None:
    """Write ``text`` to ``path`` via a temp file and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.chmod(tmp, 0o644)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise
