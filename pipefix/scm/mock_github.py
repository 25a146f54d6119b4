from __future__ import annotations

import json
import logging
import os
import shutil
import threading
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from pipefix.errors import SubmissionError, UpstreamError
from pipefix.models import CodeChange, FailureAnalysis, FailureEvent, FixValidationResult, RunLogs, SubmissionResult
from pipefix.review.render import render_pr_body, render_pr_title
from pipefix.scm.base import DisposableBranch, apply_changes_to_dir, error_lines_from

logger = logging.getLogger(__name__)


def _branch_dirname(name: str) -> str:
    return name.replace("/", "__")


@dataclass
class MockGitHub:
    """
    `github_mode=mock`: no network, no real git required.

    Reads:
      - failing runs: <root>/runs/<run_id>.json (FailureEvent fields; optional `logs`)
      - raw logs:     <root>/runs/<run_id>.log (when the json has no logs)
    Writes:
      - disposable branches: <root>/branches/<name>/ (copy of `source_dir` + changes)
      - PR metadata:         <root>/prs/<n>.json
      - PR body:             <root>/prs/<n>.md
    """

    root_dir: str
    source_dir: Optional[str] = None
    repo: str = "local/mock"
    public_base_url: str = "http://localhost:8088"
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def _path(self, *parts: str) -> str:
        return os.path.join(self.root_dir, *parts)

    def _load_run(self, run_id: str) -> Optional[dict]:
        fp = self._path("runs", f"{run_id}.json")
        if not os.path.exists(fp):
            return None
        with open(fp, "r", encoding="utf-8") as f:
            return json.load(f)

    async def get_failing_runs(self) -> List[FailureEvent]:
        runs_dir = self._path("runs")
        if not os.path.isdir(runs_dir):
            return []
        out: List[FailureEvent] = []
        for name in sorted(os.listdir(runs_dir)):
            if not name.endswith(".json"):
                continue
            run_id = name[: -len(".json")]
            try:
                data = self._load_run(run_id)
                if not isinstance(data, dict):
                    raise ValueError("run file is not a JSON object")
                data.setdefault("run_id", run_id)
                out.append(FailureEvent.model_validate(data))
            except ValueError as e:
                logger.warning("skipping malformed mock run %s: %s", name, e)
        return out

    async def get_run(self, run_id: str) -> FailureEvent:
        data = self._load_run(run_id)
        if not isinstance(data, dict):
            raise UpstreamError(f"mock_run_not_found: {run_id}")
        data.setdefault("run_id", run_id)
        return FailureEvent.model_validate(data)

    async def get_run_logs(self, run_id: str) -> RunLogs:
        data = self._load_run(run_id) or {}
        if isinstance(data.get("logs"), dict):
            return RunLogs.model_validate(data["logs"])
        fp = self._path("runs", f"{run_id}.log")
        raw = ""
        if os.path.exists(fp):
            with open(fp, "r", encoding="utf-8", errors="replace") as f:
                raw = f.read()
        return RunLogs(raw_logs=raw, error_lines=error_lines_from(raw))

    async def create_disposable_branch(self, name: str, changes: Sequence[CodeChange]) -> DisposableBranch:
        if not self.source_dir or not os.path.isdir(self.source_dir):
            raise UpstreamError(f"mock_source_dir_not_configured: {self.source_dir}")
        dest = self._path("branches", _branch_dirname(name))
        if os.path.exists(dest):
            shutil.rmtree(dest)
        os.makedirs(os.path.dirname(dest), exist_ok=True)
        shutil.copytree(self.source_dir, dest, symlinks=True, ignore=shutil.ignore_patterns(".git"))
        try:
            apply_changes_to_dir(dest, changes)
        except BaseException:
            shutil.rmtree(dest, ignore_errors=True)
            raise

        async def _cleanup() -> None:
            shutil.rmtree(dest, ignore_errors=True)

        return DisposableBranch(name=name, source_ref=dest, cleanup=_cleanup)

    def _next_pr_number(self, pr_dir: str) -> int:
        nums = [int(n[:-5]) for n in os.listdir(pr_dir) if n.endswith(".json") and n[:-5].isdigit()]
        return max(nums, default=0) + 1

    async def submit_for_review(self, analysis: FailureAnalysis, selected: FixValidationResult) -> SubmissionResult:
        pr_dir = self._path("prs")
        title = render_pr_title(analysis=analysis, selected=selected)
        body = render_pr_body(analysis=analysis, selected=selected)
        branch = f"autofix/{selected.fix.type.value}/{analysis.id}"
        try:
            with self._lock:
                os.makedirs(pr_dir, exist_ok=True)
                number = self._next_pr_number(pr_dir)
                with open(os.path.join(pr_dir, f"{number}.md"), "w", encoding="utf-8") as f:
                    f.write(body)
                meta = {
                    "pr_number": number,
                    "repo": self.repo,
                    "title": title,
                    "branch": branch,
                    "run_id": analysis.run_id,
                    "analysis_id": analysis.id,
                    "fix": selected.fix.model_dump(mode="json"),
                    "validation": selected.validation.model_dump(mode="json", exclude={"raw_output"}),
                }
                with open(os.path.join(pr_dir, f"{number}.json"), "w", encoding="utf-8") as f:
                    json.dump(meta, f, indent=2)
        except OSError as e:
            raise SubmissionError(f"mock_pr_write_failed: {e}") from e

        return SubmissionResult(
            mode="mock",
            number=number,
            title=title,
            url=f"{self.public_base_url.rstrip('/')}/mock/pr/{number}",
            branch=branch,
        )
