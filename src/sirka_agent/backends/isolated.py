"""Docker backend: one nginx container per site."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import List

import structlog

from sirka_agent.backends.base import RuntimeBackend, write_atomic
from sirka_agent.backends.commands import DockerCli, Mount
from sirka_agent.core.exceptions import CommandError, SiteNotFoundError
from sirka_agent.deploy.models import BackendHandle, BackendKind, Site
from sirka_agent.deploy.nginx_config import generate_site_config

logger = structlog.get_logger()

CONTAINER_WEB_ROOT = "/usr/share/nginx/html"
CONTAINER_CONF_PATH = "/etc/nginx/conf.d/default.conf"


class IsolatedProcessBackend(RuntimeBackend):
    """Runs each site in its own container bound to the site's live directory.

    The live directory path never changes between deploys, only its contents,
    so restarting an existing container is enough to pick up new content.
    """

    kind = BackendKind.ISOLATED_PROCESS

    def __init__(
        self,
        docker: DockerCli,
        *,
        network: str = "sirka-network",
        prefix: str = "sirka-",
        image: str = "nginx:alpine",
    ):
        self.docker = docker
        self.network = network
        self.prefix = prefix
        self.image = image
        self._network_lock = asyncio.Lock()

    def container_name(self, site_id: str) -> str:
        return f"{self.prefix}{site_id}"

    def render_config(self, site: Site, served_path: Path) -> str:
        # nginx sees the bind mount, not the host path
        return generate_site_config(site.siteId, site.siteName, site.domain, CONTAINER_WEB_ROOT)

    async def ensure_network(self) -> None:
        async with self._network_lock:
            if await self.docker.network_exists(self.network):
                return
            logger.info("Creating docker network", network=self.network)
            await self.docker.create_network(self.network)

    async def activate(self, site: Site, config: str, served_path: Path) -> BackendHandle:
        name = self.container_name(site.siteId)
        config_path = served_path.parent / "nginx.conf"
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, write_atomic, config_path, config)

        await self.ensure_network()

        if await self.docker.instance_exists(name):
            logger.info("Restarting site container", container=name)
            await self.docker.restart_instance(name)
        else:
            logger.info("Creating site container", container=name, image=self.image)
            await self.docker.run_instance(
                name,
                self.network,
                [
                    Mount(str(served_path), CONTAINER_WEB_ROOT),
                    Mount(str(config_path), CONTAINER_CONF_PATH),
                ],
                self.image,
            )
        return BackendHandle(kind=self.kind, name=name, configPath=str(config_path))

    async def restart(self, site_id: str) -> None:
        name = self.container_name(site_id)
        if not await self.docker.instance_exists(name):
            raise SiteNotFoundError(f"No container for site {site_id}")
        await self.docker.restart_instance(name)
        logger.info("Site container restarted", container=name)

    async def list_sites(self) -> List[str]:
        try:
            names = await self.docker.list_instances_by_prefix(self.prefix)
        except CommandError as e:
            logger.error("Failed to list site containers", error=e.output)
            return []
        return [n[len(self.prefix):] for n in names]
