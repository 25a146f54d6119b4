from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from pipefix.errors import SubmissionError
from pipefix.models import CodeChange, FailureAnalysis, FailureEvent, FixValidationResult, RunLogs, SubmissionResult, utc_now
from pipefix.review.render import render_pr_body, render_pr_title
from pipefix.scm.base import DisposableBranch, apply_change_text, error_lines_from, safe_relpath
from pipefix.scm.github_rest import GitHubRestClient

logger = logging.getLogger(__name__)


def _parse_ts(raw: Any) -> datetime:
    if isinstance(raw, str) and raw:
        try:
            return datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            pass
    return utc_now()


def event_from_run(run: Dict[str, Any]) -> FailureEvent:
    return FailureEvent(
        run_id=str(run.get("id")),
        workflow_name=str(run.get("name") or ""),
        trigger=str(run.get("event") or "push"),
        branch=str(run.get("head_branch") or "main"),
        commit_sha=str(run.get("head_sha") or ""),
        created_at=_parse_ts(run.get("created_at")),
        url=run.get("html_url"),
    )


def submission_branch_name(analysis: FailureAnalysis, selected: FixValidationResult, ts: int) -> str:
    return f"autofix/{selected.fix.type.value}/{analysis.id}-{ts}"


@dataclass
class GitHubSourceControl:
    """
    `github_mode=real`: GitHub Actions feed + Contents API branches + pull requests.
    """

    client: GitHubRestClient
    base_branch: str = "main"
    max_runs: int = 20
    clock: Callable[[], float] = time.time
    _base_sha: Optional[str] = field(default=None, init=False, repr=False)

    @property
    def source_ref(self) -> str:
        return f"https://github.com/{self.client.repo}.git"

    async def get_failing_runs(self) -> List[FailureEvent]:
        runs = await self.client.list_failed_runs(per_page=self.max_runs)
        return [event_from_run(r) for r in runs if r.get("id") is not None]

    async def get_run(self, run_id: str) -> FailureEvent:
        return event_from_run(await self.client.get_run(run_id))

    async def get_run_logs(self, run_id: str) -> RunLogs:
        jobs = await self.client.download_run_logs(run_id)
        raw = "\n".join(f"==> {name} <==\n{text}" for name, text in jobs.items())
        return RunLogs(raw_logs=raw, job_logs=jobs, error_lines=error_lines_from(raw))

    async def _write_changes(self, branch: str, changes: Sequence[CodeChange], message: str) -> None:
        for ch in changes:
            path = safe_relpath(ch.file_path)
            current = await self.client.get_file(path=path, ref=branch)
            new = apply_change_text(current["text"] if current else None, ch)
            if new is None:
                assert current is not None
                await self.client.delete_file(path=path, branch=branch, message=message, sha=current["sha"])
            else:
                await self.client.upsert_file(
                    path=path,
                    content_text=new,
                    branch=branch,
                    message=message,
                    known_sha=current["sha"] if current else None,
                )

    async def _branch_with_changes(self, name: str, changes: Sequence[CodeChange], message: str) -> None:
        base_sha = await self.client.get_branch_head_sha(branch=self.base_branch)
        await self.client.create_branch(new_branch=name, from_sha=base_sha)
        try:
            await self._write_changes(name, changes, message)
        except BaseException:
            await self.client.delete_branch(branch=name)
            raise

    async def create_disposable_branch(self, name: str, changes: Sequence[CodeChange]) -> DisposableBranch:
        await self._branch_with_changes(name, changes, f"autofix validation: {name}")

        async def _cleanup() -> None:
            await self.client.delete_branch(branch=name)

        return DisposableBranch(name=name, source_ref=self.source_ref, cleanup=_cleanup)

    async def submit_for_review(self, analysis: FailureAnalysis, selected: FixValidationResult) -> SubmissionResult:
        head = submission_branch_name(analysis, selected, int(self.clock()))
        title = render_pr_title(analysis=analysis, selected=selected)
        try:
            await self._branch_with_changes(head, selected.fix.changes, f"{title} ({selected.fix.id})")
            data = await self.client.create_pull_request(
                title=title,
                body=render_pr_body(analysis=analysis, selected=selected),
                head=head,
                base=self.base_branch,
            )
            return SubmissionResult(
                mode="real",
                number=int(data["number"]),
                title=str(data.get("title") or title),
                url=str(data["html_url"]),
                branch=head,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise SubmissionError(f"github_pull_request_unexpected_response: {e}") from e
