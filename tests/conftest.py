"""
Pytest configuration and fixtures for agent tests.
"""

import asyncio
import io
import zipfile
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from sirka_agent.backends.base import RuntimeBackend
from sirka_agent.backends.commands import CommandResult
from sirka_agent.core.exceptions import SiteNotFoundError
from sirka_agent.deploy.models import BackendHandle, BackendKind, Site
from sirka_agent.deploy.nginx_config import generate_site_config


def _make_zip(files: Dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, data in files.items():
            zf.writestr(zipfile.ZipInfo(name), data)
    return buf.getvalue()


@pytest.fixture
def make_zip():
    return _make_zip


class FakeRunner:
    """Records commands and answers them from prefix rules (first match wins)."""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.calls: List[List[str]] = []
        self._rules = []
        self.inflight = 0
        self.max_inflight = 0

    def on(self, *prefix: str, returncode: int = 0, stdout: str = "", stderr: str = "") -> "FakeRunner":
        self._rules.append((list(prefix), returncode, stdout, stderr))
        return self

    async def run(self, argv) -> CommandResult:
        argv = list(argv)
        self.calls.append(argv)
        self.inflight += 1
        self.max_inflight = max(self.max_inflight, self.inflight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.inflight -= 1
        for prefix, returncode, stdout, stderr in self._rules:
            if argv[: len(prefix)] == prefix:
                return CommandResult(argv=argv, returncode=returncode, stdout=stdout, stderr=stderr)
        return CommandResult(argv=argv, returncode=0)

    def called(self, *prefix: str) -> bool:
        return any(call[: len(prefix)] == list(prefix) for call in self.calls)


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def runner_factory():
    return FakeRunner


class FakeBackend(RuntimeBackend):
    """In-memory backend that snapshots the live directory when activated."""

    kind = BackendKind.ISOLATED_PROCESS

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.fail_with: Optional[Exception] = None
        self.activations = []
        self.restarted: List[str] = []
        self.sites = set()
        self.active = 0
        self.max_active = 0

    def render_config(self, site: Site, served_path: Path) -> str:
        return generate_site_config(site.siteId, site.siteName, site.domain, str(served_path))

    async def activate(self, site: Site, config: str, served_path: Path) -> BackendHandle:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            files = sorted(p.name for p in served_path.iterdir())
            self.activations.append((site.siteId, config, files))
            if self.fail_with is not None:
                raise self.fail_with
            self.sites.add(site.siteId)
            return BackendHandle(kind=self.kind, name=f"fake-{site.siteId}")
        finally:
            self.active -= 1

    async def restart(self, site_id: str) -> None:
        if site_id not in self.sites:
            raise SiteNotFoundError(f"unknown site {site_id}")
        self.restarted.append(site_id)

    async def list_sites(self) -> List[str]:
        return sorted(self.sites)


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def backend_factory():
    return FakeBackend


def tree(root: Path) -> List[str]:
    """Relative file paths under ``root``."""
    return sorted(p.relative_to(root).as_posix() for p in root.rglob("*") if p.is_file())


@pytest.fixture
def list_tree():
    return tree
