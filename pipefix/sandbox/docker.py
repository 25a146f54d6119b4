from __future__ import annotations

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from pipefix.errors import SandboxError
from pipefix.sandbox.local import materialize_source
from pipefix.sandbox.process import ProcessRunner, run_process
from pipefix.sandbox.provider import CommandResult

logger = logging.getLogger(__name__)

WORKDIR = "/workspace"


@dataclass
class DockerSandboxEnvironment:
    """One detached container; every command is a `docker exec` in /workspace."""

    container_id: str
    docker_bin: str = "docker"
    runner: ProcessRunner = run_process
    default_timeout_s: float = 900.0
    env: Dict[str, str] = field(default_factory=dict)
    _closed: bool = False

    def _exec_argv(self, argv: Sequence[str]) -> List[str]:
        out = [self.docker_bin, "exec", "-w", WORKDIR]
        for k, v in sorted(self.env.items()):
            out += ["-e", f"{k}={v}"]
        out.append(self.container_id)
        out += list(argv)
        return out

    async def run(self, argv: Sequence[str], *, timeout_s: Optional[float] = None) -> CommandResult:
        if self._closed:
            raise SandboxError("sandbox_closed")
        return await self.runner(
            self._exec_argv(argv),
            timeout_s=timeout_s if timeout_s is not None else self.default_timeout_s,
        )

    def set_env(self, key: str, value: str) -> None:
        self.env[str(key)] = str(value)

    async def read_file(self, path: str) -> Optional[str]:
        r = await self.run(["cat", path], timeout_s=60.0)
        return r.stdout if r.ok else None

    async def file_exists(self, path: str) -> bool:
        r = await self.run(["test", "-e", path], timeout_s=60.0)
        return r.ok

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        r = await self.runner([self.docker_bin, "rm", "-f", self.container_id], timeout_s=120.0)
        if not r.ok:
            logger.warning("failed to remove sandbox container %s: %s", self.container_id, r.output[-500:])


@dataclass
class DockerSandboxProvider:
    """
    Container-backed sandbox driven through the docker CLI.

    The source is materialized on the host, then copied into a fresh container started
    from `base_image`; the host copy is removed once the container holds it.
    """

    docker_bin: str = "docker"
    command_timeout_s: float = 900.0
    runner: ProcessRunner = run_process

    async def start(self, *, base_image: str, source_ref: str, branch: Optional[str]) -> DockerSandboxEnvironment:
        staging = tempfile.mkdtemp(prefix="pipefix_docker_src_")
        src = os.path.join(staging, "repo")
        try:
            await materialize_source(source_ref, branch, src, runner=self.runner, timeout_s=self.command_timeout_s)
            r = await self.runner(
                [self.docker_bin, "run", "-d", "--rm", "-w", WORKDIR, base_image, "sleep", "infinity"],
                timeout_s=300.0,
            )
            if not r.ok or not r.stdout.strip():
                raise SandboxError(f"docker_run_failed: {r.output[-1500:]}", retryable=True)
            env = DockerSandboxEnvironment(
                container_id=r.stdout.strip().splitlines()[-1],
                docker_bin=self.docker_bin,
                runner=self.runner,
                default_timeout_s=self.command_timeout_s,
            )
            try:
                cp = await self.runner(
                    [self.docker_bin, "cp", f"{src}/.", f"{env.container_id}:{WORKDIR}"],
                    timeout_s=300.0,
                )
                if not cp.ok:
                    raise SandboxError(f"docker_cp_failed: {cp.output[-1500:]}")
            except BaseException:
                await env.close()
                raise
            return env
        finally:
            shutil.rmtree(staging, ignore_errors=True)
