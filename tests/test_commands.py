"""Tests for command execution, privilege escalation and runtime detection."""

import sys

import pytest

from sirka_agent.backends import detect
from sirka_agent.backends.commands import CommandRunner, Mount, PrivilegeEscalation
from sirka_agent.backends.detect import build_backend, detect_backend_kind
from sirka_agent.backends.isolated import IsolatedProcessBackend
from sirka_agent.backends.shared_host import SharedHostBackend
from sirka_agent.core.config import Settings
from sirka_agent.core.exceptions import CommandError, RuntimeUnavailableError
from sirka_agent.deploy.models import BackendKind


@pytest.mark.asyncio
async def test_runner_captures_output():
    result = await CommandRunner().run([sys.executable, "-c", "import sys; print('out'); sys.exit(3)"])

    assert result.returncode == 3
    assert result.stdout.strip() == "out"
    assert not result.ok


@pytest.mark.asyncio
async def test_runner_missing_binary():
    result = await CommandRunner().run(["definitely-not-a-real-binary-xyz"])
    assert result.returncode == 127


@pytest.mark.asyncio
async def test_runner_timeout():
    result = await CommandRunner(timeout_sec=0.2).run([sys.executable, "-c", "import time; time.sleep(5)"])
    assert result.returncode == 124


def test_escalation_attempts():
    assert PrivilegeEscalation().attempts(["nginx", "-t"]) == [["nginx", "-t"], ["sudo", "-n", "nginx", "-t"]]
    assert PrivilegeEscalation(enabled=False).attempts(["nginx", "-t"]) == [["nginx", "-t"]]


@pytest.mark.asyncio
async def test_escalation_stops_at_first_success(runner):
    runner.on("nginx", returncode=1, stderr="permission denied")

    result = await PrivilegeEscalation().run(runner, ["nginx", "-t"], action="nginx -t")

    assert result.ok
    assert runner.calls == [["nginx", "-t"], ["sudo", "-n", "nginx", "-t"]]


@pytest.mark.asyncio
async def test_escalation_reports_last_failure(runner):
    runner.on("nginx", returncode=1, stderr="permission denied")
    runner.on("sudo", returncode=1, stderr="a password is required")

    with pytest.raises(CommandError) as exc_info:
        await PrivilegeEscalation().run(runner, ["nginx", "-t"], action="nginx -t")

    assert exc_info.value.output == "a password is required"
    assert exc_info.value.returncode == 1


def test_mount_flag():
    assert Mount("/srv/s1/current", "/usr/share/nginx/html").as_flag() == "/srv/s1/current:/usr/share/nginx/html:ro"
    assert Mount("/a", "/b", read_only=False).as_flag() == "/a:/b"


@pytest.fixture
def which(monkeypatch):
    installed = set()
    monkeypatch.setattr(detect.shutil, "which", lambda name: f"/usr/bin/{name}" if name in installed else None)
    return installed


@pytest.mark.asyncio
async def test_auto_prefers_docker(which, runner):
    which.update({"docker", "nginx"})
    assert await detect_backend_kind("auto", runner) is BackendKind.ISOLATED_PROCESS


@pytest.mark.asyncio
async def test_auto_falls_back_to_nginx_when_daemon_down(which, runner):
    which.update({"docker", "nginx"})
    runner.on("docker", "ps", returncode=1, stderr="Cannot connect to the Docker daemon")

    assert await detect_backend_kind("auto", runner) is BackendKind.SHARED_HOST


@pytest.mark.asyncio
async def test_auto_without_runtimes(which, runner):
    with pytest.raises(RuntimeUnavailableError):
        await detect_backend_kind("auto", runner)


@pytest.mark.asyncio
async def test_forced_runtime_must_be_present(which, runner):
    which.add("nginx")

    assert await detect_backend_kind("system", runner) is BackendKind.SHARED_HOST
    with pytest.raises(RuntimeUnavailableError):
        await detect_backend_kind("docker", runner)


def test_build_backend(tmp_path, runner):
    settings = Settings(nginx_config_path=str(tmp_path / "a"), nginx_sites_enabled=str(tmp_path / "e"))

    assert isinstance(build_backend(BackendKind.ISOLATED_PROCESS, settings, runner), IsolatedProcessBackend)
    shared = build_backend(BackendKind.SHARED_HOST, settings, runner)
    assert isinstance(shared, SharedHostBackend)
    assert shared.sites_available == tmp_path / "a"
