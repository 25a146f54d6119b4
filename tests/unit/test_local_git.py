from __future__ import annotations

import os
from typing import List, Optional, Sequence

import pytest

from pipefix.errors import ConfigurationError
from pipefix.models import CodeChange
from pipefix.sandbox.provider import CommandResult
from pipefix.scm.local_git import LocalGitSourceControl
from pipefix.scm.mock_github import MockGitHub


class _FakeGit:
    def __init__(self) -> None:
        self.calls: List[List[str]] = []

    async def __call__(self, argv: Sequence[str], *, cwd: Optional[str] = None, timeout_s: Optional[float] = None, **_: object) -> CommandResult:
        argv = list(argv)
        self.calls.append(argv)
        if argv[1:3] == ["worktree", "add"]:
            os.makedirs(argv[5], exist_ok=True)
        return CommandResult(exit_code=0)


def test_local_git_requires_a_repository(tmp_path) -> None:
    with pytest.raises(ConfigurationError):
        LocalGitSourceControl(repo_path=str(tmp_path), worktree_root=str(tmp_path / "wt"), feed=MockGitHub(root_dir=str(tmp_path)))


@pytest.mark.asyncio
async def test_local_git_worktree_branch_lifecycle(tmp_path) -> None:
    repo = tmp_path / "repo"
    (repo / ".git").mkdir(parents=True)
    git = _FakeGit()
    scm = LocalGitSourceControl(
        repo_path=str(repo),
        worktree_root=str(tmp_path / "wt"),
        feed=MockGitHub(root_dir=str(tmp_path / "feed")),
        runner=git,
    )

    branch = await scm.create_disposable_branch("autofix-test-f1-1", [CodeChange(file_path="new.txt", operation="add", new_content="hi")])
    wt_path = os.path.join(str(tmp_path / "wt"), "autofix-test-f1-1")
    assert branch.source_ref == str(repo)
    assert git.calls[0] == ["git", "worktree", "add", "-b", "autofix-test-f1-1", wt_path, "HEAD"]
    assert ["git", "add", "-A"] in git.calls
    assert any("commit" in c for c in git.calls)
    with open(os.path.join(wt_path, "new.txt"), encoding="utf-8") as f:
        assert f.read() == "hi"

    git.calls.clear()
    await branch.cleanup()
    assert git.calls[0] == ["git", "worktree", "remove", "--force", wt_path]
    assert git.calls[-1] == ["git", "branch", "-D", "autofix-test-f1-1"]
    assert not os.path.exists(wt_path)
