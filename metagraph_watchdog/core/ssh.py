"""Remote command execution on cluster nodes.

Commands run through the system ``ssh`` binary in batch mode. ``SSHClient``
is the transport; ``RemoteCommandChannel`` layers the docker operations the
restart procedures need on top of it.

Usage:
    remote = RemoteCommandChannel(config)
    await remote.kill_layer_process("10.0.0.1", "ml0-0")
    await remote.docker_control("10.0.0.1", "start", "ml0-0")
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from typing import Callable

from metagraph_watchdog.errors import SSHError

logger = logging.getLogger(__name__)

DOCKER_CONTROL_TIMEOUT = 60.0
KILL_TIMEOUT = 30.0
STOP_GRACE_SECONDS = 15


@dataclass
class SSHConfig:
    """Connection settings for one remote host."""
    host: str
    user: str = "root"
    port: int = 22
    key_path: str = "~/.ssh/id_ed25519"
    connect_timeout: int = 15
    command_timeout: float = 30.0


@dataclass
class SSHResult:
    """Outcome of one remote command."""
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.returncode == 0


class SSHClient:
    """Runs single commands on a remote host via the ssh binary."""

    def __init__(self, config: SSHConfig):
        self.config = config

    def build_command(self, command: str) -> list[str]:
        return [
            "ssh",
            "-o", f"ConnectTimeout={self.config.connect_timeout}",
            "-o", "StrictHostKeyChecking=no",
            "-o", "BatchMode=yes",
            "-i", os.path.expanduser(self.config.key_path),
            "-p", str(self.config.port),
            f"{self.config.user}@{self.config.host}",
            command,
        ]

    async def run_async(self, command: str, timeout: float | None = None) -> SSHResult:
        """Run ``command`` remotely.

        Raises:
            SSHError: if the ssh process cannot be spawned or the command
                does not finish within ``timeout`` seconds. A non-zero exit
                status is reported in the result, not raised.
        """
        timeout = timeout or self.config.command_timeout
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.build_command(command),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SSHError(f"Failed to spawn ssh: {e}", host=self.config.host) from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise SSHError(
                f"SSH to {self.config.host} timed out after {timeout:.0f}s",
                host=self.config.host,
            )

        return SSHResult(
            returncode=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode(errors="replace").strip(),
            stderr=stderr.decode(errors="replace").strip(),
        )


class RemoteCommandChannel:
    """Docker container control on cluster nodes over SSH.

    With ``dry_run`` set, commands are logged and reported as successful
    without being executed.
    """

    def __init__(
        self,
        config,
        dry_run: bool | None = None,
        client_factory: Callable[[SSHConfig], SSHClient] = SSHClient,
    ):
        self.config = config
        self.dry_run = config.dry_run if dry_run is None else dry_run
        self._client_factory = client_factory

    def _client(self, ip: str) -> SSHClient:
        return self._client_factory(
            SSHConfig(
                host=ip,
                user=self.config.ssh_user,
                port=self.config.ssh_port,
                key_path=self.config.ssh_key_path,
                command_timeout=self.config.ssh_timeout_seconds,
            )
        )

    async def exec(self, ip: str, command: str, timeout: float | None = None) -> SSHResult:
        if self.dry_run:
            logger.info(f"[DRY RUN] [SSH] {ip}: {command}")
            return SSHResult(returncode=0)
        return await self._client(ip).run_async(command, timeout=timeout)

    async def docker_control(self, ip: str, action: str, container: str) -> None:
        """docker stop/start/restart; raises SSHError on a non-zero exit."""
        logger.info(f"[SSH] docker {action} {container} on {ip}")
        result = await self.exec(ip, f"docker {action} {container} 2>&1", timeout=DOCKER_CONTROL_TIMEOUT)
        if not result.success:
            raise SSHError(
                f"docker {action} {container} failed: {result.stderr or result.stdout}",
                host=ip,
                exit_code=result.returncode,
            )

    async def kill_layer_process(self, ip: str, container: str) -> None:
        """Stop ``container`` (SIGTERM, SIGKILL after the grace period).

        An already-stopped container is not an error.
        """
        logger.info(f"[SSH] Stopping {container} on {ip}")
        await self.exec(
            ip,
            f"docker stop -t {STOP_GRACE_SECONDS} {container} 2>&1 || true",
            timeout=KILL_TIMEOUT,
        )

    async def join_cluster(
        self,
        ip: str,
        container: str,
        cli_port: int,
        peer_id: str,
        peer_ip: str,
        p2p_port: int,
    ) -> None:
        """Ask the node in ``container`` to join the peer via its CLI port."""
        payload = json.dumps({"id": peer_id, "ip": peer_ip, "p2pPort": p2p_port}, separators=(",", ":"))
        command = (
            f"docker exec {container} curl -sf -X POST http://127.0.0.1:{cli_port}/cluster/join "
            f"-H 'Content-Type: application/json' -d '{payload}'"
        )
        result = await self.exec(ip, command)
        if not result.success:
            raise SSHError(
                f"Join of {container} to {peer_ip} failed: {result.stderr or result.stdout}",
                host=ip,
                exit_code=result.returncode,
            )

    async def is_container_running(self, ip: str, container: str) -> bool:
        result = await self.exec(ip, f"docker inspect -f '{{{{.State.Running}}}}' {container} 2>/dev/null")
        if self.dry_run:
            return True
        return result.success and result.stdout.strip() == "true"
