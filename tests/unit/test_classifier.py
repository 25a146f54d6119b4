from __future__ import annotations

from pipefix.classifier.rules import DEFAULT_RULES, FailureClassifier
from pipefix.models import FailureCategory, FailureEvent, FailureType, RunLogs, Severity


def _event(raw: str = "", error_lines: list[str] | None = None) -> FailureEvent:
    return FailureEvent(run_id="r1", logs=RunLogs(raw_logs=raw, error_lines=error_lines or []))


def test_classifier_build_failure() -> None:
    out = FailureClassifier().classify(_event("step 3\nerror: Build failed with exit code 2\n"))
    assert out.type is FailureType.build
    assert out.severity is Severity.high
    assert out.category is FailureCategory.systematic
    assert out.confidence == 0.8
    assert "build" in out.tags


def test_classifier_first_matching_rule_wins() -> None:
    # Both a security rule and a test rule match; security is listed first.
    out = FailureClassifier().classify(_event("3 tests failed\nfound 2 security vulnerabilities"))
    assert out.type is FailureType.security
    assert out.severity is Severity.critical


def test_classifier_is_case_insensitive() -> None:
    out = FailureClassifier().classify(_event("SERVICE UNAVAILABLE while pulling image"))
    assert out.type is FailureType.infrastructure
    assert out.category is FailureCategory.environmental


def test_classifier_scans_error_lines() -> None:
    out = FailureClassifier().classify(_event("", ["ModuleNotFoundError: No module named 'yaml'"]))
    assert out.type is FailureType.dependency


def test_classifier_go_test_failure_line_anchor() -> None:
    out = FailureClassifier().classify(_event("=== RUN TestX\n--- FAIL: TestX (0.00s)\n"))
    assert out.type is FailureType.test


def test_classifier_unclassified_default() -> None:
    out = FailureClassifier().classify(_event("everything looked fine"))
    assert out.type is FailureType.infrastructure
    assert out.severity is Severity.medium
    assert out.confidence == 0.3
    assert out.tags == ["unclassified"]


def test_classifier_no_logs_is_unclassified() -> None:
    out = FailureClassifier().classify(FailureEvent(run_id="r1"))
    assert out.tags == ["unclassified"]


def test_classifier_is_deterministic() -> None:
    ev = _event("npm ERR! code ERESOLVE\n")
    c = FailureClassifier()
    assert c.classify(ev) == c.classify(ev)
    assert c.classify(ev) == FailureClassifier().classify(ev)


def test_classifier_handles_large_and_non_ascii_logs() -> None:
    noise = "ログ出力 ✓ " * 50_000
    out = FailureClassifier().classify(_event(noise + "\nconnection timed out to registry\n"))
    assert out.type is FailureType.infrastructure
    assert 0.0 <= out.confidence <= 1.0


def test_classifier_only_scans_log_tail() -> None:
    head = "build failed\n" + ("x" * 200)
    out = FailureClassifier(max_scan_chars=100).classify(_event(head))
    assert out.tags == ["unclassified"]


def test_every_rule_confidence_in_range() -> None:
    for rule in DEFAULT_RULES:
        assert 0.0 <= rule.confidence <= 1.0
