from __future__ import annotations

import json
from datetime import timedelta

from pipefix.models import (
    AutoFixResult,
    FailureAnalysis,
    FailureCategory,
    FailureClassification,
    FailureReason,
    FailureType,
    PipelineState,
    Severity,
    utc_now,
)
from pipefix.store.results import ResultStore
from pipefix.telemetry.audit import AuditLogger, redact


def test_redact_nested_values() -> None:
    out = redact({"a": "token=sk-123", "b": ["x sk-123 y", 3], "c": {"d": "sk-123"}}, ["sk-123"])
    assert out == {"a": "token=***", "b": ["x *** y", 3], "c": {"d": "***"}}
    assert redact("sk-123", []) == "sk-123"


def test_audit_logger_writes_jsonl_and_redacts(tmp_path) -> None:
    path = tmp_path / "audit" / "a.jsonl"
    audit = AuditLogger(str(path), secrets=["hunter2"])
    cid = audit.new_correlation_id()
    audit.write(cid, "pipeline.state", {"state": "detected", "detail": "key hunter2 leaked"})
    audit.write(cid, "pipeline.finished", {"state": "succeeded"})

    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    first = json.loads(lines[0])
    assert first["correlation_id"] == cid
    assert first["actor"] == "pipefix"
    assert first["payload"]["detail"] == "key *** leaked"
    assert [e["event_type"] for e in audit.tail(1)] == ["pipeline.finished"]


def _result(rid: str, run_id: str, state: PipelineState, reason=None, *, provider: str = "openai", offset_s: int = 0) -> AutoFixResult:
    cls = FailureClassification(type=FailureType.build, severity=Severity.high, category=FailureCategory.systematic, confidence=0.8)
    started = utc_now()
    return AutoFixResult(
        id=rid,
        run_id=run_id,
        state=state,
        reason=reason,
        classification=cls,
        analysis=FailureAnalysis(id=f"a-{rid}", run_id=run_id, classification=cls, root_cause="x", provider=provider),
        started_at=started,
        finished_at=started + timedelta(seconds=offset_s),
        duration_s=float(offset_s),
    )


def test_result_store_round_trip_and_metrics() -> None:
    store = ResultStore(db_path=":memory:")
    store.save(_result("r1", "100", PipelineState.succeeded, offset_s=2))
    store.save(_result("r2", "101", PipelineState.failed, FailureReason.no_valid_fix, provider="groq", offset_s=4))
    store.save(_result("r3", "101", PipelineState.failed, FailureReason.submission_error, offset_s=6))

    got = store.get("r2")
    assert got is not None
    assert got.reason is FailureReason.no_valid_fix
    assert store.get("missing") is None
    assert {r.id for r in store.for_run("101")} == {"r2", "r3"}
    assert [r.id for r in store.recent(limit=2)] == ["r3", "r2"]

    m = store.metrics()
    assert m.total_runs == 3
    assert m.succeeded == 1
    assert m.failed == 2
    assert m.failures_by_reason == {"no_valid_fix": 1, "submission_error": 1}
    assert m.average_duration_s == 4.0
    assert m.runs_by_failure_type == {"build": 3}
    assert m.runs_by_provider == {"openai": 2, "groq": 1}
    store.close()


def test_result_store_persists_on_disk(tmp_path) -> None:
    db = tmp_path / "results" / "autofix.sqlite3"
    s1 = ResultStore(db_path=str(db))
    s1.save(_result("r1", "100", PipelineState.succeeded))
    s1.close()
    s2 = ResultStore(db_path=str(db))
    assert s2.get("r1") is not None
    s2.close()
