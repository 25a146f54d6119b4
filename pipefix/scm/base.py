from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Protocol, Sequence

from pipefix.errors import ValidationError
from pipefix.models import ChangeOperation, CodeChange, FailureAnalysis, FailureEvent, FixValidationResult, RunLogs, SubmissionResult

Cleanup = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class DisposableBranch:
    """A throwaway branch holding one candidate's changes. `cleanup` removes it."""

    name: str
    # What a sandbox clones to see this branch (url, repo path or directory).
    source_ref: str
    cleanup: Cleanup


class SourceControl(Protocol):
    async def get_failing_runs(self) -> List[FailureEvent]:
        ...

    async def get_run(self, run_id: str) -> FailureEvent:
        ...

    async def get_run_logs(self, run_id: str) -> RunLogs:
        ...

    async def create_disposable_branch(self, name: str, changes: Sequence[CodeChange]) -> DisposableBranch:
        ...

    async def submit_for_review(self, analysis: FailureAnalysis, selected: FixValidationResult) -> SubmissionResult:
        ...


def safe_relpath(path: str) -> str:
    """Repository-relative path; absolute paths and `..` escapes are rejected."""
    p = (path or "").replace("\\", "/").strip()
    while p.startswith("./"):
        p = p[2:]
    norm = os.path.normpath(p)
    if not p or os.path.isabs(p) or norm == ".." or norm.startswith("../") or norm == ".":
        raise ValidationError(f"unsafe_change_path: {path!r}")
    return norm


def apply_change_text(current: str | None, change: CodeChange) -> str | None:
    """
    New file content after `change`, or None when the file is deleted.

    `modify` with `old_content` replaces the first occurrence of that snippet; without it,
    `new_content` is the whole new file.
    """
    if change.operation is ChangeOperation.delete:
        if current is None:
            raise ValidationError(f"cannot delete missing file: {change.file_path}")
        return None
    if change.operation is ChangeOperation.add:
        return change.new_content or ""
    if current is None:
        if change.old_content:
            raise ValidationError(f"cannot modify missing file: {change.file_path}")
        return change.new_content or ""
    if change.old_content:
        if change.old_content not in current:
            raise ValidationError(f"old_content not found in {change.file_path}")
        return current.replace(change.old_content, change.new_content or "", 1)
    return change.new_content if change.new_content is not None else current


def apply_changes_to_dir(root: str, changes: Sequence[CodeChange]) -> List[str]:
    """Apply changes under `root` in order; returns the touched relative paths."""
    touched: List[str] = []
    for ch in changes:
        rel = safe_relpath(ch.file_path)
        fp = os.path.join(root, rel)
        current = None
        if os.path.isfile(fp):
            with open(fp, "r", encoding="utf-8", errors="replace") as f:
                current = f.read()
        new = apply_change_text(current, ch)
        if new is None:
            os.remove(fp)
        else:
            os.makedirs(os.path.dirname(fp) or root, exist_ok=True)
            with open(fp, "w", encoding="utf-8") as f:
                f.write(new)
        touched.append(rel)
    return touched


def error_lines_from(text: str, *, limit: int = 200) -> List[str]:
    """Lines that look like errors in a CI log (GitHub annotations, FAIL/ERROR markers)."""
    out: List[str] = []
    for line in (text or "").splitlines():
        s = line.strip()
        low = s.lower()
        if "##[error]" in s or low.startswith(("error", "fail", "--- fail")) or " error:" in low or "exception" in low:
            out.append(s)
            if len(out) >= limit:
                break
    return out
