from __future__ import annotations

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence

from pipefix.errors import SandboxError
from pipefix.sandbox.process import ProcessRunner, merged_env, run_process
from pipefix.sandbox.provider import CommandResult

logger = logging.getLogger(__name__)


def _is_remote(source_ref: str) -> bool:
    return "://" in source_ref or source_ref.startswith("git@")


async def materialize_source(
    source_ref: str,
    branch: Optional[str],
    dest: str,
    *,
    runner: ProcessRunner = run_process,
    timeout_s: float = 600.0,
) -> None:
    """
    Seed `dest` from `source_ref`:
    - remote url or local git repo + branch -> shallow `git clone --branch`
    - plain directory -> copy
    """
    local_dir = os.path.isdir(source_ref)
    if local_dir and not (branch and os.path.exists(os.path.join(source_ref, ".git"))):
        shutil.copytree(source_ref, dest, symlinks=True, ignore=shutil.ignore_patterns(".git"))
        return
    if not local_dir and not _is_remote(source_ref):
        raise SandboxError(f"source_not_found: {source_ref}")

    argv = ["git", "clone", "--quiet", "--depth", "1"]
    if branch:
        argv += ["--branch", branch, "--single-branch"]
    argv += [source_ref, dest]
    r = await runner(argv, timeout_s=timeout_s)
    if not r.ok:
        # Network/remote hiccups are worth another attempt.
        raise SandboxError(f"git_clone_failed: {r.output[-1500:]}", retryable=_is_remote(source_ref))


def _inside(root: str, rel: str) -> str:
    root_abs = os.path.abspath(root)
    p = os.path.abspath(os.path.join(root_abs, rel))
    if p != root_abs and not p.startswith(root_abs + os.sep):
        raise SandboxError(f"path_outside_workspace: {rel}")
    return p


@dataclass
class LocalSandboxEnvironment:
    """Temp-dir workspace; commands run as local subprocesses with the workspace as cwd."""

    root: str
    workdir: str
    runner: ProcessRunner = run_process
    default_timeout_s: float = 900.0
    env: Dict[str, str] = field(default_factory=dict)
    _closed: bool = False

    async def run(self, argv: Sequence[str], *, timeout_s: Optional[float] = None) -> CommandResult:
        if self._closed:
            raise SandboxError("sandbox_closed")
        return await self.runner(
            list(argv),
            cwd=self.workdir,
            env=merged_env(self.env),
            timeout_s=timeout_s if timeout_s is not None else self.default_timeout_s,
        )

    def set_env(self, key: str, value: str) -> None:
        self.env[str(key)] = str(value)

    async def read_file(self, path: str) -> Optional[str]:
        p = _inside(self.workdir, path)
        if not os.path.isfile(p):
            return None
        with open(p, "r", encoding="utf-8", errors="replace") as f:
            return f.read()

    async def file_exists(self, path: str) -> bool:
        return os.path.exists(_inside(self.workdir, path))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        shutil.rmtree(self.root, ignore_errors=True)


@dataclass
class LocalSandboxProvider:
    """
    Sandbox-ish isolation: a throwaway temp workspace per validation, but commands
    execute on this host. The base image is ignored.
    """

    tmp_root: Optional[str] = None
    command_timeout_s: float = 900.0
    runner: ProcessRunner = run_process

    async def start(self, *, base_image: str, source_ref: str, branch: Optional[str]) -> LocalSandboxEnvironment:
        if self.tmp_root:
            os.makedirs(self.tmp_root, exist_ok=True)
        root = tempfile.mkdtemp(prefix="pipefix_sandbox_", dir=self.tmp_root)
        workdir = os.path.join(root, "repo")
        try:
            await materialize_source(source_ref, branch, workdir, runner=self.runner, timeout_s=self.command_timeout_s)
        except BaseException:
            shutil.rmtree(root, ignore_errors=True)
            raise
        logger.debug("local sandbox ready at %s (source=%s branch=%s)", workdir, source_ref, branch)
        return LocalSandboxEnvironment(
            root=root,
            workdir=workdir,
            runner=self.runner,
            default_timeout_s=self.command_timeout_s,
        )
