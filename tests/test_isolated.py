"""Tests for the Docker backend."""

import pytest

from sirka_agent.backends.commands import DockerCli
from sirka_agent.backends.isolated import CONTAINER_CONF_PATH, CONTAINER_WEB_ROOT, IsolatedProcessBackend
from sirka_agent.core.exceptions import BackendActivationError, SiteNotFoundError
from sirka_agent.deploy.manager import ActivationManager
from sirka_agent.deploy.models import BackendKind, Site


@pytest.fixture
def backend(runner):
    return IsolatedProcessBackend(DockerCli(runner), network="sirka-network", prefix="sirka-", image="nginx:alpine")


@pytest.fixture
def manager(tmp_path, backend):
    return ActivationManager(tmp_path / "sites", backend)


@pytest.mark.asyncio
async def test_first_deploy_creates_network_and_container(manager, runner, make_zip):
    runner.on("docker", "network", "inspect", returncode=1, stderr="network not found")
    runner.on("docker", "inspect", returncode=1, stderr="No such container")

    result = await manager.activate(Site(siteId="s1", siteName="One"), make_zip({"index.html": b"hi"}))

    live = manager.layout("s1").live
    conf = manager.layout("s1").root / "nginx.conf"
    assert result.backendHandle.kind is BackendKind.ISOLATED_PROCESS
    assert result.backendHandle.name == "sirka-s1"
    assert result.backendHandle.configPath == str(conf)
    assert runner.called("docker", "network", "create", "sirka-network")
    assert [
        "docker", "run", "-d",
        "--name", "sirka-s1",
        "--network", "sirka-network",
        "--restart", "unless-stopped",
        "-p", "80",
        "-v", f"{live}:{CONTAINER_WEB_ROOT}:ro",
        "-v", f"{conf}:{CONTAINER_CONF_PATH}:ro",
        "nginx:alpine",
    ] in runner.calls
    text = conf.read_text()
    assert f"root {CONTAINER_WEB_ROOT};" in text
    assert "default_server" in text


@pytest.mark.asyncio
async def test_redeploy_restarts_existing_container(manager, runner, make_zip):
    await manager.activate(Site(siteId="s1", siteName="One", domain="example.com"), make_zip({"index.html": b"v2"}))

    assert runner.called("docker", "restart", "sirka-s1")
    assert not runner.called("docker", "run")
    assert not runner.called("docker", "network", "create")
    assert "server_name example.com;" in (manager.layout("s1").root / "nginx.conf").read_text()


@pytest.mark.asyncio
async def test_docker_failure_is_backend_error(manager, runner, make_zip):
    runner.on("docker", "inspect", returncode=1)
    runner.on("docker", "run", returncode=125, stderr="port is already allocated")

    with pytest.raises(BackendActivationError) as exc_info:
        await manager.activate(Site(siteId="s1", siteName="One"), make_zip({"index.html": b"hi"}))

    assert exc_info.value.content_changed is True
    assert "port is already allocated" in str(exc_info.value)
    assert (manager.layout("s1").live / "index.html").exists()


@pytest.mark.asyncio
async def test_list_sites_strips_prefix(backend, runner):
    runner.on("docker", "ps", stdout="sirka-b\nsirka-a\nother-sirka-c\n")

    assert await backend.list_sites() == ["a", "b"]


@pytest.mark.asyncio
async def test_restart(backend, runner):
    await backend.restart("s1")
    assert runner.calls[-1] == ["docker", "restart", "sirka-s1"]


@pytest.mark.asyncio
async def test_restart_unknown_site(backend, runner):
    runner.on("docker", "inspect", returncode=1, stderr="No such container")

    with pytest.raises(SiteNotFoundError):
        await backend.restart("missing")
    assert not runner.called("docker", "restart")


@pytest.mark.asyncio
async def test_list_sites_when_docker_ps_fails(backend, runner):
    runner.on("docker", "ps", returncode=1, stderr="Cannot connect to the Docker daemon")

    assert await backend.list_sites() == []
