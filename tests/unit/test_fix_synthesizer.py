from __future__ import annotations

import json
from typing import List

import pytest

from pipefix.llm.config import ReasoningProvider
from pipefix.llm.types import ReasoningRequest, ReasoningResponse, ToolInvocation
from pipefix.models import FailureAnalysis, FailureCategory, FailureClassification, FailureType, FixType, Severity
from pipefix.synthesis.synthesizer import SUBMIT_FIXES_TOOL, FixSynthesizer


class _FakeGateway:
    def __init__(self, response: ReasoningResponse) -> None:
        self.response = response
        self.requests: List[ReasoningRequest] = []

    async def send(self, request: ReasoningRequest) -> ReasoningResponse:
        self.requests.append(request)
        return self.response


def _analysis() -> FailureAnalysis:
    return FailureAnalysis(
        id="analysis-7-1",
        run_id="7",
        classification=FailureClassification(
            type=FailureType.build, severity=Severity.high, category=FailureCategory.systematic, confidence=0.8
        ),
        root_cause="syntax error in main.go",
    )


def _change(path: str = "main.go") -> dict:
    return {"file_path": path, "operation": "modify", "old_content": "fmt.Println(", "new_content": "fmt.Println()"}


@pytest.mark.asyncio
async def test_synthesizer_reads_tool_invocation() -> None:
    fixes = [
        {"type": "code", "description": "close paren", "changes": [_change()], "confidence": 0.9},
        {"type": "infrastructure", "description": "retry runner", "changes": [], "confidence": 0.2},
    ]
    resp = ReasoningResponse(
        provider=ReasoningProvider.openai,
        model="m",
        tool_invocations=[ToolInvocation(name="submit_fixes", arguments={"fixes": fixes})],
    )
    gw = _FakeGateway(resp)
    out = await FixSynthesizer(gateway=gw).synthesize(_analysis())

    assert [f.id for f in out] == ["analysis-7-1-fix-1", "analysis-7-1-fix-2"]
    assert out[0].changes[0].file_path == "main.go"
    assert out[1].type is FixType.infrastructure
    assert gw.requests[0].tools == [SUBMIT_FIXES_TOOL]


@pytest.mark.asyncio
async def test_synthesizer_parses_json_array_text() -> None:
    fixes = [{"type": "dependency", "description": "pin", "changes": [_change("go.mod")], "confidence": 0.7}]
    resp = ReasoningResponse(provider=ReasoningProvider.groq, model="m", content="Here:\n" + json.dumps(fixes))
    out = await FixSynthesizer(gateway=_FakeGateway(resp)).synthesize(_analysis())
    assert len(out) == 1
    assert out[0].type is FixType.dependency


@pytest.mark.asyncio
async def test_synthesizer_parses_fixes_object_text() -> None:
    resp = ReasoningResponse(
        provider=ReasoningProvider.groq,
        model="m",
        content=json.dumps({"fixes": [{"type": "code", "changes": [_change()], "confidence": 0.4}]}),
    )
    out = await FixSynthesizer(gateway=_FakeGateway(resp)).synthesize(_analysis())
    assert [f.confidence for f in out] == [0.4]


@pytest.mark.asyncio
async def test_synthesizer_drops_fixes_without_required_changes() -> None:
    fixes = [
        {"type": "code", "description": "no edits", "changes": [], "confidence": 0.9},
        {"type": "workflow", "description": "bad change", "changes": [{"operation": "modify"}], "confidence": 0.9},
        "not an object",
        {"type": "test", "description": "ok", "changes": [_change("main_test.go")], "confidence": 0.6},
    ]
    resp = ReasoningResponse(
        provider=ReasoningProvider.openai,
        model="m",
        tool_invocations=[ToolInvocation(name="submit_fixes", arguments={"fixes": fixes})],
    )
    out = await FixSynthesizer(gateway=_FakeGateway(resp)).synthesize(_analysis())
    assert [f.id for f in out] == ["analysis-7-1-fix-4"]


@pytest.mark.asyncio
async def test_synthesizer_zero_fixes_is_not_an_error() -> None:
    resp = ReasoningResponse(provider=ReasoningProvider.openai, model="m", content="I cannot fix this.")
    assert await FixSynthesizer(gateway=_FakeGateway(resp)).synthesize(_analysis()) == []


@pytest.mark.asyncio
async def test_synthesizer_caps_candidates() -> None:
    fixes = [{"type": "code", "changes": [_change()], "confidence": 0.5} for _ in range(5)]
    resp = ReasoningResponse(
        provider=ReasoningProvider.openai,
        model="m",
        tool_invocations=[ToolInvocation(name="submit_fixes", arguments={"fixes": fixes})],
    )
    out = await FixSynthesizer(gateway=_FakeGateway(resp), max_candidates=2).synthesize(_analysis())
    assert len(out) == 2
