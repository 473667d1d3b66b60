"""Tests for the system nginx backend."""

import asyncio

import pytest

from sirka_agent.backends.commands import NginxService, PrivilegeEscalation
from sirka_agent.backends.shared_host import SharedHostBackend
from sirka_agent.core.exceptions import BackendActivationError, ConfigValidationError, SiteNotFoundError
from sirka_agent.deploy.manager import ActivationManager
from sirka_agent.deploy.models import BackendKind, Site
from sirka_agent.deploy.nginx_config import is_default_server

CATCH_ALL = "sirka-_default"


@pytest.fixture
def available(tmp_path):
    return tmp_path / "sites-available"


@pytest.fixture
def enabled(tmp_path):
    return tmp_path / "sites-enabled"


@pytest.fixture
def backend(runner, available, enabled):
    return SharedHostBackend(NginxService(runner), sites_available=available, sites_enabled=enabled)


@pytest.fixture
def manager(tmp_path, backend):
    return ActivationManager(tmp_path / "sites", backend)


def _default_servers(enabled):
    return sorted(p.name for p in enabled.iterdir() if is_default_server(p.read_text()))


@pytest.mark.asyncio
async def test_catch_all_then_named(manager, runner, available, enabled, make_zip):
    archive = make_zip({"index.html": b"hi"})

    result = await manager.activate(Site(siteId="s1", siteName="One"), archive)

    assert result.domain is None
    assert result.backendHandle.kind is BackendKind.SHARED_HOST
    assert result.backendHandle.name == CATCH_ALL
    link = enabled / CATCH_ALL
    assert link.is_symlink()
    text = link.read_text()
    assert "# sirka site: s1" in text
    assert "server_name _;" in text
    assert f"root {result.servedPath};" in text
    assert runner.calls == [["nginx", "-t"], ["systemctl", "reload", "nginx"]]
    assert await manager.list_sites() == ["s1"]

    result = await manager.activate(Site(siteId="s1", siteName="One", domain="example.com"), archive)

    assert result.domain == "example.com"
    assert result.backendHandle.name == "sirka-s1"
    assert "server_name example.com;" in (enabled / "sirka-s1").read_text()
    assert not (enabled / CATCH_ALL).exists()
    assert not (available / CATCH_ALL).exists()
    assert _default_servers(enabled) == []
    assert await manager.list_sites() == ["s1"]


@pytest.mark.asyncio
async def test_named_site_keeps_other_sites_catch_all(manager, enabled, make_zip):
    archive = make_zip({"index.html": b"hi"})

    await manager.activate(Site(siteId="s2", siteName="Two"), archive)
    await manager.activate(Site(siteId="s1", siteName="One", domain="one.example.com"), archive)

    assert "# sirka site: s2" in (enabled / CATCH_ALL).read_text()
    assert await manager.list_sites() == ["s1", "s2"]


@pytest.mark.asyncio
async def test_single_catch_all(manager, enabled, make_zip):
    archive = make_zip({"index.html": b"hi"})

    await manager.activate(Site(siteId="s1", siteName="One", domain="one.example.com"), archive)
    await manager.activate(Site(siteId="s1", siteName="One"), archive)
    await manager.activate(Site(siteId="s2", siteName="Two"), archive)

    assert _default_servers(enabled) == [CATCH_ALL]
    assert "# sirka site: s2" in (enabled / CATCH_ALL).read_text()
    # s1 dropped its named fragment when it became the catch-all
    assert not (enabled / "sirka-s1").exists()


@pytest.mark.asyncio
async def test_foreign_default_server_is_disabled(manager, enabled, make_zip):
    enabled.mkdir(parents=True)
    (enabled / "default").write_text("server {\n    listen 80 default_server;\n    root /var/www/html;\n}\n")
    (enabled / "other.conf").write_text("server {\n    listen 80;\n    server_name other.test;\n}\n")
    archive = make_zip({"index.html": b"hi"})

    await manager.activate(Site(siteId="s1", siteName="One", domain="one.example.com"), archive)
    assert (enabled / "default").exists()

    await manager.activate(Site(siteId="s1", siteName="One"), archive)
    assert not (enabled / "default").exists()
    assert (enabled / "other.conf").exists()
    assert _default_servers(enabled) == [CATCH_ALL]


@pytest.mark.asyncio
async def test_validation_failure_restores_fragments(manager, runner, available, enabled, make_zip):
    archive = make_zip({"index.html": b"v1"})
    await manager.activate(Site(siteId="s1", siteName="One", domain="one.example.com"), archive)
    before = (available / "sirka-s1").read_text()

    runner.on("nginx", "-t", returncode=1, stderr="nginx: [emerg] unexpected end of file")
    runner.on("sudo", "-n", "nginx", "-t", returncode=1, stderr="nginx: [emerg] unexpected end of file")
    seen = len(runner.calls)

    with pytest.raises(ConfigValidationError) as exc_info:
        await manager.activate(Site(siteId="s1", siteName="One"), make_zip({"index.html": b"v2"}))

    assert exc_info.value.content_changed is True
    assert "emerg" in str(exc_info.value)
    assert not any(call[0] == "systemctl" or call[2:3] == ["systemctl"] for call in runner.calls[seen:])
    assert (enabled / "sirka-s1").is_symlink()
    assert (available / "sirka-s1").read_text() == before
    assert not (enabled / CATCH_ALL).exists()
    assert not (available / CATCH_ALL).exists()


@pytest.mark.asyncio
async def test_reload_falls_back_to_sudo_then_restart(manager, runner, make_zip):
    runner.on("systemctl", "reload", returncode=1, stderr="Access denied")
    runner.on("sudo", "-n", "systemctl", "reload", returncode=1, stderr="a password is required")

    await manager.activate(Site(siteId="s1", siteName="One"), make_zip({"index.html": b"hi"}))

    assert runner.calls == [
        ["nginx", "-t"],
        ["systemctl", "reload", "nginx"],
        ["sudo", "-n", "systemctl", "reload", "nginx"],
        ["systemctl", "restart", "nginx"],
    ]


@pytest.mark.asyncio
async def test_reload_and_restart_failing(manager, runner, make_zip):
    runner.on("systemctl", returncode=1, stderr="Access denied")
    runner.on("sudo", "-n", "systemctl", returncode=1, stderr="a password is required")

    with pytest.raises(BackendActivationError) as exc_info:
        await manager.activate(Site(siteId="s1", siteName="One"), make_zip({"index.html": b"hi"}))

    assert exc_info.value.content_changed is True
    assert "password" in str(exc_info.value)


@pytest.mark.asyncio
async def test_no_sudo_when_disabled(runner, tmp_path, make_zip):
    backend = SharedHostBackend(
        NginxService(runner, escalation=PrivilegeEscalation(enabled=False)),
        sites_available=tmp_path / "available",
        sites_enabled=tmp_path / "enabled",
    )
    manager = ActivationManager(tmp_path / "sites", backend)
    runner.on("systemctl", "reload", returncode=1, stderr="Access denied")

    await manager.activate(Site(siteId="s1", siteName="One"), make_zip({"index.html": b"hi"}))

    assert not runner.called("sudo")
    assert runner.called("systemctl", "restart", "nginx")


@pytest.mark.asyncio
async def test_index_detection_uses_served_files(manager, enabled, make_zip):
    archive = make_zip({"index_modified.html": b"m", "about.html": b"a", "logo.png": b"p"})

    await manager.activate(Site(siteId="s1", siteName="One", domain="one.example.com"), archive)

    text = (enabled / "sirka-s1").read_text()
    assert "index index_modified.html about.html index.html index.htm;" in text
    assert "try_files $uri $uri/ /index_modified.html;" in text


@pytest.mark.asyncio
async def test_restart(manager, runner, make_zip):
    with pytest.raises(SiteNotFoundError):
        await manager.restart("s1")

    await manager.activate(Site(siteId="s1", siteName="One"), make_zip({"index.html": b"hi"}))
    seen = len(runner.calls)
    await manager.restart("s1")

    assert runner.calls[seen:] == [["systemctl", "reload", "nginx"]]


@pytest.mark.asyncio
async def test_validate_and_reload_never_overlap_across_sites(runner_factory, tmp_path, make_zip):
    runner = runner_factory(delay=0.05)
    backend = SharedHostBackend(
        NginxService(runner),
        sites_available=tmp_path / "available",
        sites_enabled=tmp_path / "enabled",
    )
    manager = ActivationManager(tmp_path / "sites", backend)
    archive = make_zip({"index.html": b"hi"})

    await asyncio.gather(*(
        manager.activate(Site(siteId=f"s{i}", siteName=f"Site {i}", domain=f"s{i}.example.com"), archive)
        for i in range(4)
    ))

    assert runner.max_inflight == 1
    assert len(runner.calls) == 8
    assert await manager.list_sites() == ["s0", "s1", "s2", "s3"]
