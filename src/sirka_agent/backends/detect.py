"""Runtime presence probing and one-time backend selection."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Optional

import structlog

from sirka_agent.backends.base import RuntimeBackend
from sirka_agent.backends.commands import CommandRunner, DockerCli, NginxService, PrivilegeEscalation
from sirka_agent.backends.isolated import IsolatedProcessBackend
from sirka_agent.backends.shared_host import SharedHostBackend
from sirka_agent.core.config import Settings
from sirka_agent.core.exceptions import RuntimeUnavailableError
from sirka_agent.deploy.models import BackendKind

logger = structlog.get_logger()

_FORCED = {
    "docker": BackendKind.ISOLATED_PROCESS,
    "system": BackendKind.SHARED_HOST,
}


async def docker_available(runner: CommandRunner) -> bool:
    if shutil.which("docker") is None:
        return False
    # `docker ps` proves the daemon is reachable, not just that the CLI exists
    return (await runner.run(["docker", "ps"])).ok


async def nginx_available(runner: CommandRunner) -> bool:
    if shutil.which("nginx") is None:
        return False
    return (await runner.run(["nginx", "-v"])).ok


async def detect_backend_kind(runtime: str, runner: CommandRunner) -> BackendKind:
    """Pick the backend for this process.

    ``runtime`` is ``docker``, ``system`` or ``auto``. A forced runtime must
    still be present on the host. Auto mode prefers Docker.
    """
    forced: Optional[BackendKind] = _FORCED.get(runtime)
    if forced is BackendKind.ISOLATED_PROCESS:
        if not await docker_available(runner):
            raise RuntimeUnavailableError("RUNTIME=docker but Docker is not available")
        logger.info("Using forced runtime", runtime=runtime)
        return forced
    if forced is BackendKind.SHARED_HOST:
        if not await nginx_available(runner):
            raise RuntimeUnavailableError("RUNTIME=system but nginx is not available")
        logger.info("Using forced runtime", runtime=runtime)
        return forced

    if await docker_available(runner):
        logger.info("Docker detected, using docker runtime")
        return BackendKind.ISOLATED_PROCESS
    if await nginx_available(runner):
        logger.info("nginx detected, using system runtime")
        return BackendKind.SHARED_HOST
    raise RuntimeUnavailableError("No suitable runtime detected. Install Docker or nginx.")


def build_backend(kind: BackendKind, settings: Settings, runner: Optional[CommandRunner] = None) -> RuntimeBackend:
    runner = runner or CommandRunner(timeout_sec=settings.command_timeout_seconds)
    if kind is BackendKind.ISOLATED_PROCESS:
        return IsolatedProcessBackend(
            DockerCli(runner),
            network=settings.docker_network,
            prefix=settings.container_prefix,
            image=settings.container_image,
        )
    nginx = NginxService(
        runner,
        escalation=PrivilegeEscalation(enabled=settings.use_sudo),
        service=settings.nginx_service,
    )
    return SharedHostBackend(
        nginx,
        sites_available=Path(settings.nginx_config_path),
        sites_enabled=Path(settings.nginx_sites_enabled),
        prefix=settings.container_prefix,
    )


async def select_backend(settings: Settings, runner: Optional[CommandRunner] = None) -> RuntimeBackend:
    runner = runner or CommandRunner(timeout_sec=settings.command_timeout_seconds)
    kind = await detect_backend_kind(settings.runtime, runner)
    return build_backend(kind, settings, runner)
