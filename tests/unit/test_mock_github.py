from __future__ import annotations

import json
import os

import pytest

from pipefix.errors import UpstreamError
from pipefix.models import (
    CodeChange,
    FailureAnalysis,
    FailureCategory,
    FailureClassification,
    FailureType,
    FixValidationResult,
    ProposedFix,
    Severity,
    ValidationResult,
)
from pipefix.scm.mock_github import MockGitHub


def _selected() -> tuple[FailureAnalysis, FixValidationResult]:
    analysis = FailureAnalysis(
        id="analysis-9-1",
        run_id="9",
        classification=FailureClassification(
            type=FailureType.test, severity=Severity.medium, category=FailureCategory.systematic, confidence=0.8
        ),
        root_cause="assertion uses stale constant",
        provider="openai",
    )
    fix = ProposedFix(
        id="analysis-9-1-fix-1",
        type="test",
        description="update expected value",
        confidence=0.8,
        changes=[CodeChange(file_path="t.py", old_content="1", new_content="2")],
    )
    return analysis, FixValidationResult(fix=fix, validation=ValidationResult(success=True, coverage_percent=91.0), valid=True)


@pytest.mark.asyncio
async def test_mock_feed_reads_runs_and_logs(tmp_path) -> None:
    runs = tmp_path / "mock" / "runs"
    runs.mkdir(parents=True)
    (runs / "101.json").write_text(json.dumps({"workflow_name": "ci", "branch": "main"}), encoding="utf-8")
    (runs / "101.log").write_text("step\n##[error]tests failed\n", encoding="utf-8")
    (runs / "102.json").write_text(
        json.dumps({"run_id": "102", "logs": {"raw_logs": "inline", "error_lines": ["E1"]}}), encoding="utf-8"
    )
    gh = MockGitHub(root_dir=str(tmp_path / "mock"))

    events = await gh.get_failing_runs()
    assert [e.run_id for e in events] == ["101", "102"]
    logs = await gh.get_run_logs("101")
    assert logs.error_lines == ["##[error]tests failed"]
    assert (await gh.get_run_logs("102")).raw_logs == "inline"
    assert (await gh.get_run("101")).workflow_name == "ci"
    with pytest.raises(UpstreamError):
        await gh.get_run("nope")


@pytest.mark.asyncio
async def test_mock_feed_empty_when_no_runs(tmp_path) -> None:
    assert await MockGitHub(root_dir=str(tmp_path)).get_failing_runs() == []


@pytest.mark.asyncio
async def test_mock_disposable_branch_copy_and_cleanup(tmp_path) -> None:
    src = tmp_path / "src"
    src.mkdir()
    (src / "t.py").write_text("assert f() == 1\n", encoding="utf-8")
    gh = MockGitHub(root_dir=str(tmp_path / "mock"), source_dir=str(src))

    branch = await gh.create_disposable_branch("autofix-test-x-1", [CodeChange(file_path="t.py", old_content="1", new_content="2")])
    assert branch.name == "autofix-test-x-1"
    with open(os.path.join(branch.source_ref, "t.py"), encoding="utf-8") as f:
        assert f.read() == "assert f() == 2\n"
    # The source tree is never touched.
    assert (src / "t.py").read_text(encoding="utf-8") == "assert f() == 1\n"

    await branch.cleanup()
    assert not os.path.exists(branch.source_ref)


@pytest.mark.asyncio
async def test_mock_disposable_branch_requires_source(tmp_path) -> None:
    with pytest.raises(UpstreamError):
        await MockGitHub(root_dir=str(tmp_path)).create_disposable_branch("b", [])


@pytest.mark.asyncio
async def test_mock_submission_writes_sequential_prs(tmp_path) -> None:
    gh = MockGitHub(root_dir=str(tmp_path / "mock"), repo="acme/app", public_base_url="http://pipefix.local/")
    analysis, selected = _selected()

    first = await gh.submit_for_review(analysis, selected)
    second = await gh.submit_for_review(analysis, selected)

    assert (first.number, second.number) == (1, 2)
    assert first.mode == "mock"
    assert first.url == "http://pipefix.local/mock/pr/1"
    assert first.title.startswith("autofix(test): update expected value")
    meta = json.loads((tmp_path / "mock" / "prs" / "1.json").read_text(encoding="utf-8"))
    assert meta["repo"] == "acme/app"
    assert meta["fix"]["id"] == "analysis-9-1-fix-1"
    body = (tmp_path / "mock" / "prs" / "1.md").read_text(encoding="utf-8")
    assert "assertion uses stale constant" in body
    assert "91.0%" in body


@pytest.mark.asyncio
async def test_mock_feed_skips_malformed_run_files(tmp_path) -> None:
    runs = tmp_path / "runs"
    runs.mkdir()
    (runs / "1.json").write_text("{not json", encoding="utf-8")
    (runs / "2.json").write_text(json.dumps(["not", "an", "object"]), encoding="utf-8")
    (runs / "3.json").write_text(json.dumps({"created_at": "yesterday"}), encoding="utf-8")
    (runs / "4.json").write_text(json.dumps({"workflow_name": "ci"}), encoding="utf-8")

    events = await MockGitHub(root_dir=str(tmp_path)).get_failing_runs()
    assert [e.run_id for e in events] == ["4"]
