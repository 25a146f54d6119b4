from __future__ import annotations

import json
from typing import List

import pytest

from pipefix.analysis.engine import FailureAnalyzer, enhance_with_patterns, unstructured_classification
from pipefix.analysis.prompts import build_analysis_prompt, extract_json, truncate_logs
from pipefix.classifier.rules import FailureClassifier
from pipefix.errors import AnalysisError
from pipefix.llm.config import ReasoningProvider
from pipefix.llm.types import ReasoningRequest, ReasoningResponse
from pipefix.models import FailureCategory, FailureClassification, FailureEvent, FailureType, RunLogs, Severity


class _FakeGateway:
    def __init__(self, content: str) -> None:
        self.content = content
        self.requests: List[ReasoningRequest] = []

    async def send(self, request: ReasoningRequest) -> ReasoningResponse:
        self.requests.append(request)
        return ReasoningResponse(content=self.content, provider=ReasoningProvider.anthropic, model="m")


def _event(raw: str) -> FailureEvent:
    return FailureEvent(run_id="42", workflow_name="ci", logs=RunLogs(raw_logs=raw))


def _cls(t: FailureType, confidence: float) -> FailureClassification:
    return FailureClassification(type=t, severity=Severity.high, category=FailureCategory.systematic, confidence=confidence)


@pytest.mark.asyncio
async def test_analyzer_parses_json_answer() -> None:
    answer = {
        "root_cause": "missing import",
        "description": "module os not imported",
        "classification": {"type": "code", "severity": "high", "category": "systematic", "confidence": 0.9, "tags": ["python"]},
        "affected_files": ["app/main.py"],
        "error_patterns": [{"pattern": "NameError", "description": "undefined name", "confidence": 0.8, "location": "app/main.py:3"}],
    }
    gw = _FakeGateway("Sure:\n" + json.dumps(answer))
    analysis = await FailureAnalyzer(gateway=gw, clock=lambda: 1700000000.0).analyze(_event("NameError: name 'os' is not defined"))

    assert analysis.id == "analysis-42-1700000000"
    assert analysis.run_id == "42"
    assert analysis.root_cause == "missing import"
    assert analysis.classification.type is FailureType.code
    assert analysis.classification.confidence == 0.9
    assert analysis.affected_files == ["app/main.py"]
    assert analysis.error_patterns[0].location == "app/main.py:3"
    assert analysis.provider == "anthropic"
    assert "NameError" in gw.requests[0].prompt


@pytest.mark.asyncio
async def test_analyzer_prefers_confident_rule_match_over_unsure_model() -> None:
    answer = {"root_cause": "?", "classification": {"type": "code", "confidence": 0.3}}
    gw = _FakeGateway(json.dumps(answer))
    analysis = await FailureAnalyzer(gateway=gw).analyze(_event("error: build failed"))
    assert analysis.classification.type is FailureType.build
    assert "pattern-enhanced" in analysis.classification.tags


@pytest.mark.asyncio
async def test_analyzer_unstructured_answer_falls_back_to_keywords() -> None:
    gw = _FakeGateway("The package lockfile pins an incompatible dependency version.")
    analysis = await FailureAnalyzer(gateway=gw).analyze(_event("weird"))
    assert analysis.root_cause == "Analysis provided in description field"
    assert analysis.description.startswith("The package lockfile")
    # Unstructured answers carry confidence 0.5; the unclassified rule result (0.3) does not override it.
    assert analysis.classification.type is FailureType.dependency
    assert analysis.classification.tags == ["unstructured"]


@pytest.mark.asyncio
async def test_analyzer_empty_answer_is_error() -> None:
    with pytest.raises(AnalysisError):
        await FailureAnalyzer(gateway=_FakeGateway("   ")).analyze(_event("x"))


def test_enhance_with_patterns_thresholds() -> None:
    pre = _cls(FailureType.test, 0.8)
    assert enhance_with_patterns(_cls(FailureType.code, 0.59), pre).type is FailureType.test
    assert enhance_with_patterns(_cls(FailureType.code, 0.6), pre).type is FailureType.code
    assert enhance_with_patterns(_cls(FailureType.code, 0.2), _cls(FailureType.test, 0.5)).type is FailureType.code


def test_unstructured_keyword_order() -> None:
    assert unstructured_classification("build of the test target failed").type is FailureType.build
    assert unstructured_classification("nothing to see").type is FailureType.code


def test_truncate_logs_keeps_head_and_tail() -> None:
    text = "H" * 5000 + "M" * 5000 + "T" * 5000
    out = truncate_logs(text)
    assert out.startswith("H" * 4000)
    assert out.endswith("T" * 4000)
    assert "[TRUNCATED]" in out
    assert truncate_logs("short") == "short"


def test_analysis_prompt_is_deterministic() -> None:
    ev = _event("boom")
    pre = FailureClassifier().classify(ev)
    assert build_analysis_prompt(ev, pre) == build_analysis_prompt(ev, pre)


def test_extract_json_tolerates_prose() -> None:
    assert extract_json('note: {"a": 1} done') == ({"a": 1}, None)
    parsed, err = extract_json("no json at all")
    assert parsed is None and err is not None
