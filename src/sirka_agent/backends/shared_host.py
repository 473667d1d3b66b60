"""System nginx backend: one shared nginx, one config fragment per site."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import structlog

from sirka_agent.backends.base import RuntimeBackend, write_atomic
from sirka_agent.backends.commands import NginxService
from sirka_agent.core.exceptions import (
    BackendActivationError,
    CommandError,
    ConfigValidationError,
    SiteNotFoundError,
)
from sirka_agent.deploy.models import BackendHandle, BackendKind, Site
from sirka_agent.deploy.nginx_config import (
    config_owner,
    detect_index_candidates,
    generate_site_config,
    is_default_server,
)

logger = structlog.get_logger()

# Prior state of one path: ("link", target), ("file", content) or None if absent
_Saved = Optional[Tuple[str, object]]

CATCH_ALL_SUFFIX = "_default"


def _read_text(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None


def _save(path: Path) -> _Saved:
    if path.is_symlink():
        return ("link", os.readlink(path))
    if path.exists():
        return ("file", path.read_bytes())
    return None


def _remove(path: Path) -> None:
    if path.is_symlink() or path.exists():
        path.unlink()


def _restore(path: Path, saved: _Saved) -> None:
    _remove(path)
    if saved is None:
        return
    kind, value = saved
    if kind == "link":
        os.symlink(value, path)
    else:
        path.write_bytes(value)


def _link(target: Path, link: Path) -> None:
    tmp = link.with_name(f".{link.name}.tmp")
    _remove(tmp)
    os.symlink(target, tmp)
    os.replace(tmp, link)


class SharedHostBackend(RuntimeBackend):
    """Serves every site from the host's nginx.

    Fragment writes, ``nginx -t`` and the reload happen under one lock so a
    reload never sees another site's half-applied fragment set. At most one
    enabled fragment is the default server.
    """

    kind = BackendKind.SHARED_HOST

    def __init__(
        self,
        nginx: NginxService,
        *,
        sites_available: Path,
        sites_enabled: Path,
        prefix: str = "sirka-",
    ):
        self.nginx = nginx
        self.sites_available = Path(sites_available)
        self.sites_enabled = Path(sites_enabled)
        self.prefix = prefix
        self._reload_lock = asyncio.Lock()

    def fragment_name(self, site_id: str) -> str:
        return f"{self.prefix}{site_id}"

    @property
    def catch_all_name(self) -> str:
        return f"{self.prefix}{CATCH_ALL_SUFFIX}"

    def render_config(self, site: Site, served_path: Path) -> str:
        candidates = detect_index_candidates(served_path)
        return generate_site_config(site.siteId, site.siteName, site.domain, str(served_path), candidates)

    async def activate(self, site: Site, config: str, served_path: Path) -> BackendHandle:
        loop = asyncio.get_event_loop()
        async with self._reload_lock:
            name, saved = await loop.run_in_executor(None, self._apply_fragments, site, config)
            try:
                await self.nginx.test_configuration()
            except CommandError as e:
                logger.error("nginx rejected configuration, restoring fragments", site_id=site.siteId, error=e.output)
                await loop.run_in_executor(None, self._restore_fragments, saved)
                raise ConfigValidationError(f"nginx configuration test failed: {e.output}") from e
            await self._reload()

        logger.info("Site fragment enabled", site_id=site.siteId, fragment=name, catch_all=not site.domain)
        return BackendHandle(kind=self.kind, name=name, configPath=str(self.sites_available / name))

    async def restart(self, site_id: str) -> None:
        if site_id not in await self.list_sites():
            raise SiteNotFoundError(f"No enabled nginx fragment for site {site_id}")
        async with self._reload_lock:
            await self._reload()

    async def list_sites(self) -> List[str]:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._enabled_sites)

    async def _reload(self) -> None:
        try:
            await self.nginx.reload()
            return
        except CommandError as e:
            logger.warning("nginx reload failed, falling back to restart", error=e.output)
        try:
            await self.nginx.restart()
        except CommandError as e:
            raise BackendActivationError(f"nginx reload and restart both failed: {e.output}") from e

    def _enabled_sites(self) -> List[str]:
        if not self.sites_enabled.is_dir():
            return []
        sites = set()
        for entry in self.sites_enabled.iterdir():
            if not entry.name.startswith(self.prefix):
                continue
            if entry.name == self.catch_all_name:
                owner = config_owner(_read_text(entry) or "")
                if owner:
                    sites.add(owner)
            else:
                sites.add(entry.name[len(self.prefix):])
        return sorted(sites)

    def _apply_fragments(self, site: Site, config: str) -> Tuple[str, Dict[Path, _Saved]]:
        """Write this site's fragment and drop the ones it supersedes.

        Returns the fragment name and the prior state of every touched path.
        """
        self.sites_available.mkdir(parents=True, exist_ok=True)
        self.sites_enabled.mkdir(parents=True, exist_ok=True)

        named = self.fragment_name(site.siteId)
        catch_all = self.catch_all_name
        target = named if site.domain else catch_all

        to_remove: List[Path] = []
        if site.domain:
            current = _read_text(self.sites_available / catch_all)
            if current is not None and config_owner(current) == site.siteId:
                to_remove += [self.sites_enabled / catch_all, self.sites_available / catch_all]
        else:
            to_remove += [self.sites_enabled / named, self.sites_available / named]
            for entry in sorted(self.sites_enabled.iterdir()):
                if entry.name in (catch_all, named) or entry.name.startswith("."):
                    continue
                text = _read_text(entry)
                if text is not None and is_default_server(text):
                    logger.info("Disabling fragment claiming default server", fragment=entry.name)
                    to_remove.append(entry)
                    if entry.name.startswith(self.prefix):
                        to_remove.append(self.sites_available / entry.name)

        touched = [self.sites_available / target, self.sites_enabled / target, *to_remove]
        saved = {path: _save(path) for path in touched}
        try:
            write_atomic(self.sites_available / target, config)
            _link(self.sites_available / target, self.sites_enabled / target)
            for path in to_remove:
                _remove(path)
        except OSError:
            self._restore_fragments(saved)
            raise
        return target, saved

    def _restore_fragments(self, saved: Dict[Path, _Saved]) -> None:
        for path, state in saved.items():
            try:
                _restore(path, state)
            except OSError as e:
                logger.error("Failed to restore nginx fragment", path=str(path), error=str(e))
