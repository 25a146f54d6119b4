from __future__ import annotations

import logging
import os
import shutil
import time
from dataclasses import dataclass
from typing import Callable, List, Sequence

from pipefix.errors import ConfigurationError, SubmissionError, UpstreamError
from pipefix.models import CodeChange, FailureAnalysis, FailureEvent, FixValidationResult, RunLogs, SubmissionResult
from pipefix.review.render import render_pr_body, render_pr_title
from pipefix.sandbox.process import ProcessRunner, run_process
from pipefix.scm.base import DisposableBranch, apply_changes_to_dir
from pipefix.scm.mock_github import MockGitHub

logger = logging.getLogger(__name__)

_GIT_IDENTITY = ["-c", "user.name=pipefix", "-c", "user.email=pipefix@localhost"]


@dataclass
class LocalGitSourceControl:
    """
    `github_mode=local`: branches are git worktrees of a local repository.

    - Does NOT change the repository's current working tree.
    - Uses `git worktree add -b <branch> <path> <base_ref>`, applies the changes and commits them.
    - The failing-run feed comes from a MockGitHub directory.
    """

    repo_path: str
    worktree_root: str
    feed: MockGitHub
    base_ref: str = "HEAD"
    runner: ProcessRunner = run_process
    clock: Callable[[], float] = time.time

    def __post_init__(self) -> None:
        self.repo_path = os.path.abspath(self.repo_path)
        self.worktree_root = os.path.abspath(self.worktree_root)
        if not os.path.isdir(os.path.join(self.repo_path, ".git")):
            raise ConfigurationError(f"local repo is not a git repository: {self.repo_path}")

    async def _git(self, *args: str, cwd: str | None = None, check: bool = True) -> str:
        r = await self.runner(["git", *args], cwd=cwd or self.repo_path, timeout_s=300.0)
        if check and not r.ok:
            raise UpstreamError(f"git {args[0]} failed: {r.output[-1500:]}")
        return r.stdout

    async def get_failing_runs(self) -> List[FailureEvent]:
        return await self.feed.get_failing_runs()

    async def get_run(self, run_id: str) -> FailureEvent:
        return await self.feed.get_run(run_id)

    async def get_run_logs(self, run_id: str) -> RunLogs:
        return await self.feed.get_run_logs(run_id)

    def _worktree_path(self, branch: str) -> str:
        return os.path.join(self.worktree_root, branch.replace("/", "__"))

    async def _remove(self, branch: str, wt_path: str) -> None:
        await self._git("worktree", "remove", "--force", wt_path, check=False)
        shutil.rmtree(wt_path, ignore_errors=True)
        await self._git("branch", "-D", branch, check=False)

    async def _worktree_with_changes(self, branch: str, changes: Sequence[CodeChange], message: str) -> str:
        os.makedirs(self.worktree_root, exist_ok=True)
        wt_path = self._worktree_path(branch)
        # Recreate (idempotent)
        if os.path.exists(wt_path):
            await self._remove(branch, wt_path)
        await self._git("worktree", "add", "-b", branch, wt_path, self.base_ref)
        try:
            apply_changes_to_dir(wt_path, changes)
            await self._git("add", "-A", cwd=wt_path)
            await self._git(*_GIT_IDENTITY, "commit", "-q", "--allow-empty", "-m", message, cwd=wt_path)
        except BaseException:
            await self._remove(branch, wt_path)
            raise
        return wt_path

    async def create_disposable_branch(self, name: str, changes: Sequence[CodeChange]) -> DisposableBranch:
        wt_path = await self._worktree_with_changes(name, changes, f"autofix validation: {name}")

        async def _cleanup() -> None:
            await self._remove(name, wt_path)

        return DisposableBranch(name=name, source_ref=self.repo_path, cleanup=_cleanup)

    async def submit_for_review(self, analysis: FailureAnalysis, selected: FixValidationResult) -> SubmissionResult:
        branch = f"autofix/{selected.fix.type.value}/{analysis.id}-{int(self.clock())}"
        title = render_pr_title(analysis=analysis, selected=selected)
        try:
            wt_path = await self._worktree_with_changes(branch, selected.fix.changes, title)
            with open(wt_path + ".review.md", "w", encoding="utf-8") as f:
                f.write(render_pr_body(analysis=analysis, selected=selected))
        except OSError as e:
            raise SubmissionError(f"local_review_write_failed: {e}") from e
        logger.info("local review branch %s ready at %s", branch, wt_path)
        return SubmissionResult(mode="local", number=0, title=title, url=f"file://{wt_path}", branch=branch)
