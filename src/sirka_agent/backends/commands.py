"""External command execution for the Docker and nginx backends."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import structlog

from sirka_agent.core.exceptions import CommandError

logger = structlog.get_logger()


@dataclass
class CommandResult:
    argv: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return (self.stderr or self.stdout).strip()


class CommandRunner:
    """Runs a command without a shell and captures its output."""

    def __init__(self, timeout_sec: float = 60.0):
        self.timeout_sec = timeout_sec

    async def run(self, argv: Sequence[str]) -> CommandResult:
        argv = list(argv)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            return CommandResult(argv=argv, returncode=127, stderr=str(e))

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_sec)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning("Command timed out", command=" ".join(argv), timeout_sec=self.timeout_sec)
            return CommandResult(argv=argv, returncode=124, stderr=f"timed out after {self.timeout_sec:g}s")

        result = CommandResult(
            argv=argv,
            returncode=proc.returncode,
            stdout=stdout.decode("utf-8", "replace"),
            stderr=stderr.decode("utf-8", "replace"),
        )
        logger.debug("Command finished", command=" ".join(argv), returncode=result.returncode)
        return result


@dataclass(frozen=True)
class PrivilegeEscalation:
    """Ordered attempts for commands that may need root.

    The first attempt runs the command as-is, the second (if enabled) runs it
    under ``prefix``. Only the last failure is reported.
    """

    enabled: bool = True
    prefix: Tuple[str, ...] = ("sudo", "-n")

    def attempts(self, argv: Sequence[str]) -> List[List[str]]:
        plain = list(argv)
        if not self.enabled:
            return [plain]
        return [plain, [*self.prefix, *plain]]

    async def run(self, runner: CommandRunner, argv: Sequence[str], action: str) -> CommandResult:
        result: Optional[CommandResult] = None
        for attempt, cmd in enumerate(self.attempts(argv), start=1):
            result = await runner.run(cmd)
            if result.ok:
                return result
            logger.warning(
                "Command attempt failed",
                action=action,
                attempt=attempt,
                command=" ".join(cmd),
                returncode=result.returncode,
                error=result.output,
            )
        raise CommandError(
            f"{action} failed: {result.output or f'exit status {result.returncode}'}",
            returncode=result.returncode,
            output=result.output,
        )


@dataclass(frozen=True)
class Mount:
    source: str
    target: str
    read_only: bool = True

    def as_flag(self) -> str:
        spec = f"{self.source}:{self.target}"
        return f"{spec}:ro" if self.read_only else spec


class DockerCli:
    """Container runtime backed by the ``docker`` CLI."""

    def __init__(self, runner: CommandRunner, binary: str = "docker"):
        self.runner = runner
        self.binary = binary

    async def _checked(self, *args: str, action: str) -> CommandResult:
        result = await self.runner.run([self.binary, *args])
        if not result.ok:
            raise CommandError(f"{action} failed: {result.output}", returncode=result.returncode, output=result.output)
        return result

    async def network_exists(self, name: str) -> bool:
        result = await self.runner.run([self.binary, "network", "inspect", name])
        return result.ok

    async def create_network(self, name: str) -> None:
        await self._checked("network", "create", name, action=f"docker network create {name}")

    async def instance_exists(self, name: str) -> bool:
        result = await self.runner.run([self.binary, "inspect", "--type", "container", name])
        return result.ok

    async def run_instance(
        self,
        name: str,
        network: str,
        mounts: Sequence[Mount],
        image: str,
        publish: Sequence[str] = ("80",),
    ) -> str:
        args = ["run", "-d", "--name", name, "--network", network, "--restart", "unless-stopped"]
        for port in publish:
            args += ["-p", port]
        for mount in mounts:
            args += ["-v", mount.as_flag()]
        args.append(image)
        result = await self._checked(*args, action=f"docker run {name}")
        return result.stdout.strip()

    async def restart_instance(self, name: str) -> None:
        await self._checked("restart", name, action=f"docker restart {name}")

    async def list_instances_by_prefix(self, prefix: str) -> List[str]:
        result = await self._checked(
            "ps", "-a", "--filter", f"name={prefix}", "--format", "{{.Names}}",
            action="docker ps",
        )
        # docker's name filter is a substring match
        return sorted(n for n in result.stdout.split() if n.startswith(prefix))


@dataclass
class NginxService:
    """Shared nginx process controlled through ``nginx -t`` and systemd."""

    runner: CommandRunner
    escalation: PrivilegeEscalation = field(default_factory=PrivilegeEscalation)
    service: str = "nginx"
    nginx_binary: str = "nginx"
    systemctl_binary: str = "systemctl"

    async def test_configuration(self) -> CommandResult:
        return await self.escalation.run(self.runner, [self.nginx_binary, "-t"], action="nginx -t")

    async def reload(self) -> CommandResult:
        return await self.escalation.run(
            self.runner, [self.systemctl_binary, "reload", self.service], action=f"reload {self.service}"
        )

    async def restart(self) -> CommandResult:
        return await self.escalation.run(
            self.runner, [self.systemctl_binary, "restart", self.service], action=f"restart {self.service}"
        )
