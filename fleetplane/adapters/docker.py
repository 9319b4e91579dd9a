"""Local Docker adapter.

Drives the ``docker`` CLI through asyncio subprocesses. Each instance runs
as one container named ``fleetplane-<name>``; the effective configuration
is handed to the agent through the ``AGENT_CONFIG`` environment variable
and the gateway port is published on a random loopback port.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel, ConfigDict

from fleetplane.adapters.base import DeleteOptions
from fleetplane.core.errors import AdapterFailureError
from fleetplane.gateway.protocol import DEFAULT_GATEWAY_PORT
from fleetplane.models.adapters import (
    AdapterCapabilities,
    AdapterMetadata,
    AdapterStatus,
    ResourceDescription,
    ResourceRef,
    ResourceStatus,
    TierSpec,
)
from fleetplane.models.manifests import RuntimeSpec

logger = logging.getLogger(__name__)

CONTAINER_PREFIX = "fleetplane-"
MANAGED_LABEL = "fleetplane.managed=true"

DOCKER_METADATA = AdapterMetadata(
    type="docker",
    display_name="Local Docker",
    description="Run agents as containers on the local Docker engine",
    icon="docker",
    status=AdapterStatus.READY,
    provisioning_steps=[
        "Remove previous container",
        "Start container",
        "Resolve gateway port",
    ],
    capabilities=AdapterCapabilities(
        scaling=False,
        sandbox=True,
        persistent_storage=True,
        https_endpoint=False,
        log_streaming=True,
    ),
    tier_specs=[
        TierSpec(tier="light", cpu=0.5, memory_mib=1024, disk_gb=5),
        TierSpec(tier="standard", cpu=1.0, memory_mib=2048, disk_gb=10),
        TierSpec(tier="performance", cpu=2.0, memory_mib=4096, disk_gb=20),
    ],
)

_STATE_MAP = {
    "running": ResourceStatus.RUNNING,
    "created": ResourceStatus.PENDING,
    "restarting": ResourceStatus.PENDING,
    "paused": ResourceStatus.STOPPED,
    "exited": ResourceStatus.STOPPED,
    "removing": ResourceStatus.STOPPED,
    "dead": ResourceStatus.FAILED,
}


class CommandResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    returncode: int
    stdout: str = ""
    stderr: str = ""


CommandRunner = Callable[[list[str], float], Awaitable[CommandResult]]


async def run_command(args: list[str], timeout: float) -> CommandResult:
    """Run *args* as a subprocess, killing it if *timeout* elapses."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise AdapterFailureError(f"{args[0]} executable not found") from exc
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError as exc:
        proc.kill()
        await proc.wait()
        raise AdapterFailureError(f"{' '.join(args[:2])} timed out after {timeout}s") from exc
    return CommandResult(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )


class DockerAdapter:
    """``InfrastructureAdapter`` backed by the docker CLI.

    Parameters
    ----------
    runner:
        Coroutine executing a command; defaults to ``run_command``.
    timeout:
        Seconds allowed for each docker invocation.
    docker_bin:
        Name or path of the docker executable.
    """

    metadata = DOCKER_METADATA

    def __init__(
        self,
        runner: CommandRunner | None = None,
        timeout: float = 120.0,
        docker_bin: str = "docker",
    ) -> None:
        self._run = runner or run_command
        self._timeout = timeout
        self._docker = docker_bin

    @staticmethod
    def container_name(name: str) -> str:
        return f"{CONTAINER_PREFIX}{name}"

    async def _docker_cmd(self, *args: str, check: bool = True) -> CommandResult:
        result = await self._run([self._docker, *args], self._timeout)
        if check and result.returncode != 0:
            raise AdapterFailureError(
                f"docker {args[0]} failed ({result.returncode}): {result.stderr.strip()}"
            )
        return result

    async def create_or_update(
        self,
        name: str,
        effective_config: dict[str, Any],
        tier: TierSpec,
        runtime: RuntimeSpec | None = None,
    ) -> ResourceRef:
        if runtime is None:
            raise AdapterFailureError("Docker adapter requires a runtime image")
        container = self.container_name(name)

        if await self.exists(name):
            await self._docker_cmd("rm", "-f", container)

        args = [
            "run", "-d",
            "--name", container,
            "--label", MANAGED_LABEL,
            "--restart", "unless-stopped",
            "--cpus", str(tier.cpu),
            "--memory", f"{tier.memory_mib}m",
            "-p", f"127.0.0.1::{DEFAULT_GATEWAY_PORT}",
            "-e", f"AGENT_CONFIG={json.dumps(effective_config, sort_keys=True)}",
            runtime.image,
        ]
        if runtime.command:
            args.extend(runtime.command)
        started = await self._docker_cmd(*args)
        container_id = started.stdout.strip()[:12]

        port_result = await self._docker_cmd("port", container, str(DEFAULT_GATEWAY_PORT))
        host, port = _parse_port_mapping(port_result.stdout)
        logger.info("Started container %s (%s) gateway %s:%s", container, container_id, host, port)
        return ResourceRef(
            type=self.metadata.type,
            name=name,
            id=container_id or container,
            gateway_host=host,
            gateway_port=port,
        )

    async def describe(self, ref: ResourceRef) -> ResourceDescription:
        result = await self._docker_cmd(
            "inspect", "--format", "{{json .State}}", self.container_name(ref.name), check=False
        )
        if result.returncode != 0:
            return ResourceDescription(status=ResourceStatus.UNKNOWN, outputs={"error": result.stderr.strip()})
        try:
            state = json.loads(result.stdout)
        except json.JSONDecodeError as exc:
            raise AdapterFailureError(f"Unexpected docker inspect output: {exc}") from exc
        status = _STATE_MAP.get(str(state.get("Status", "")).lower(), ResourceStatus.UNKNOWN)
        return ResourceDescription(
            status=status,
            outputs={"started_at": state.get("StartedAt"), "exit_code": state.get("ExitCode")},
        )

    async def delete(self, ref: ResourceRef, options: DeleteOptions | None = None) -> None:
        options = options or DeleteOptions()
        args = ["rm", "-f"]
        if not options.keep_volumes:
            args.append("-v")
        args.append(self.container_name(ref.name))
        result = await self._docker_cmd(*args, check=False)
        if result.returncode != 0 and "No such container" not in result.stderr:
            raise AdapterFailureError(f"docker rm failed: {result.stderr.strip()}")

    async def exists(self, name: str) -> bool:
        result = await self._docker_cmd("inspect", self.container_name(name), check=False)
        return result.returncode == 0


def _parse_port_mapping(output: str) -> tuple[str, int]:
    """Parse the first ``host:port`` line printed by ``docker port``."""
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        host, _, port = line.rpartition(":")
        if port.isdigit():
            return host.strip("[]") or "127.0.0.1", int(port)
    raise AdapterFailureError(f"Could not determine published gateway port from {output!r}")
