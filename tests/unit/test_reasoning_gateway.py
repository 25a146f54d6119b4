from __future__ import annotations

import json
from typing import Any, Dict, List

import httpx
import pytest
from pydantic import SecretStr

from pipefix.errors import AnalysisError, AuthenticationError, CircuitOpenError, ConfigurationError
from pipefix.llm.config import ReasoningProvider
from pipefix.llm.gateway import ReasoningGateway
from pipefix.llm.types import ReasoningRequest, ToolDeclaration
from pipefix.resilience.breaker import CircuitBreaker
from pipefix.resilience.policy import ResiliencePolicy
from pipefix.resilience.retry import RetryPolicy


async def _no_sleep(_: float) -> None:
    return None


def _policy(name: str = "t", *, attempts: int = 1, threshold: int = 5) -> ResiliencePolicy:
    return ResiliencePolicy(
        name=name,
        retry=RetryPolicy(max_attempts=attempts),
        breaker=CircuitBreaker(name, failure_threshold=threshold),
        sleep=_no_sleep,
    )


def _gateway(provider: ReasoningProvider, handler, **kw: Any) -> ReasoningGateway:
    return ReasoningGateway(
        provider=provider,
        api_key=SecretStr("sk-test"),
        transport=httpx.MockTransport(handler),
        resilience=kw.pop("resilience", _policy()),
        **kw,
    )


TOOL = ToolDeclaration(name="submit_fixes", description="d", parameters={"type": "object", "properties": {}})


@pytest.mark.asyncio
async def test_openai_compatible_request_and_tool_calls() -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "model": "gpt-4o-2024",
                "choices": [
                    {
                        "finish_reason": "tool_calls",
                        "message": {
                            "content": None,
                            "tool_calls": [
                                {
                                    "id": "call_1",
                                    "type": "function",
                                    "function": {"name": "submit_fixes", "arguments": json.dumps({"fixes": []})},
                                }
                            ],
                        },
                    }
                ],
                "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
            },
        )

    gw = _gateway(ReasoningProvider.openai, handler)
    resp = await gw.send(ReasoningRequest(prompt="why?", system_message="sys", tools=[TOOL], max_tokens=100_000))

    req = seen[0]
    assert str(req.url) == "https://api.openai.com/v1/chat/completions"
    assert req.headers["Authorization"] == "Bearer sk-test"
    body = json.loads(req.content)
    assert body["model"] == "gpt-4o"
    assert body["max_tokens"] == 8192
    assert body["messages"][0] == {"role": "system", "content": "sys"}
    assert body["tools"][0]["function"]["name"] == "submit_fixes"

    assert resp.provider is ReasoningProvider.openai
    assert resp.model == "gpt-4o-2024"
    assert resp.content == ""
    assert resp.tool_invocations[0].name == "submit_fixes"
    assert resp.tool_invocations[0].arguments == {"fixes": []}
    assert resp.usage is not None and resp.usage.total_tokens == 15


@pytest.mark.asyncio
async def test_request_model_overrides_provider_default() -> None:
    seen: List[Dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

    gw = _gateway(ReasoningProvider.deepseek, handler)
    resp = await gw.send(ReasoningRequest(prompt="p", model="deepseek-reasoner", temperature=0.0))
    assert seen[0]["model"] == "deepseek-reasoner"
    assert seen[0]["temperature"] == 0.0
    assert resp.content == "ok"
    assert resp.model == "deepseek-reasoner"


@pytest.mark.asyncio
async def test_anthropic_messages_api() -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "model": "claude-3-5-sonnet-20241022",
                "stop_reason": "tool_use",
                "content": [
                    {"type": "text", "text": "Here you go."},
                    {"type": "tool_use", "id": "tu_1", "name": "submit_fixes", "input": {"fixes": [{"type": "code"}]}},
                ],
                "usage": {"input_tokens": 7, "output_tokens": 3},
            },
        )

    gw = _gateway(ReasoningProvider.anthropic, handler)
    resp = await gw.send(ReasoningRequest(prompt="p", system_message="sys", tools=[TOOL]))

    req = seen[0]
    assert str(req.url) == "https://api.anthropic.com/v1/messages"
    assert req.headers["x-api-key"] == "sk-test"
    assert req.headers["anthropic-version"] == "2023-06-01"
    body = json.loads(req.content)
    assert body["system"] == "sys"
    assert body["tools"][0]["input_schema"] == TOOL.parameters

    assert resp.content == "Here you go."
    assert resp.finish_reason == "tool_use"
    assert resp.tool_invocations[0].arguments == {"fixes": [{"type": "code"}]}
    assert resp.usage is not None and resp.usage.total_tokens == 10


@pytest.mark.asyncio
async def test_gemini_generate_content() -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "candidates": [
                    {
                        "finishReason": "STOP",
                        "content": {
                            "parts": [
                                {"text": "analysis"},
                                {"functionCall": {"name": "submit_fixes", "args": {"fixes": []}}},
                            ]
                        },
                    }
                ],
                "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 2, "totalTokenCount": 6},
            },
        )

    gw = _gateway(ReasoningProvider.gemini, handler)
    resp = await gw.send(ReasoningRequest(prompt="p", system_message="sys", tools=[TOOL]))

    req = seen[0]
    assert req.url.path == "/v1beta/models/gemini-2.0-flash-exp:generateContent"
    assert req.headers["x-goog-api-key"] == "sk-test"
    body = json.loads(req.content)
    assert body["systemInstruction"] == {"parts": [{"text": "sys"}]}
    assert body["tools"][0]["functionDeclarations"][0]["name"] == "submit_fixes"

    assert resp.content == "analysis"
    assert resp.finish_reason == "STOP"
    assert resp.tool_invocations[0].name == "submit_fixes"
    assert resp.usage is not None and resp.usage.total_tokens == 6


@pytest.mark.asyncio
async def test_litellm_proxy_needs_no_key() -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

    gw = ReasoningGateway(
        provider=ReasoningProvider.litellm,
        transport=httpx.MockTransport(handler),
        resilience=_policy(),
    )
    await gw.send(ReasoningRequest(prompt="p"))
    assert str(seen[0].url) == "http://localhost:4000/chat/completions"
    assert "Authorization" not in seen[0].headers


def test_missing_api_key_is_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        ReasoningGateway(provider=ReasoningProvider.groq)
    with pytest.raises(ConfigurationError):
        ReasoningGateway(provider=ReasoningProvider.openai, api_key=SecretStr(""))


@pytest.mark.asyncio
async def test_unauthorized_is_not_retried() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(401, json={"error": "bad key"})

    gw = _gateway(ReasoningProvider.openrouter, handler, resilience=_policy(attempts=3))
    with pytest.raises(AuthenticationError) as ei:
        await gw.send(ReasoningRequest(prompt="p"))
    assert ei.value.status_code == 401
    assert calls["n"] == 1


@pytest.mark.asyncio
async def test_server_errors_are_retried() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] < 3:
            return httpx.Response(503, text="overloaded")
        return httpx.Response(200, json={"choices": [{"message": {"content": "finally"}}]})

    gw = _gateway(ReasoningProvider.groq, handler, resilience=_policy(attempts=3))
    resp = await gw.send(ReasoningRequest(prompt="p"))
    assert resp.content == "finally"
    assert calls["n"] == 3


@pytest.mark.asyncio
async def test_bad_request_is_permanent() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, text="bad")

    gw = _gateway(ReasoningProvider.openai, handler)
    with pytest.raises(AnalysisError) as ei:
        await gw.send(ReasoningRequest(prompt="p"))
    assert ei.value.retryable is False
    assert "openai_http_400" in str(ei.value)


@pytest.mark.asyncio
async def test_malformed_response_is_analysis_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"unexpected": True})

    gw = _gateway(ReasoningProvider.openai, handler)
    with pytest.raises(AnalysisError):
        await gw.send(ReasoningRequest(prompt="p"))


@pytest.mark.asyncio
async def test_breaker_opens_after_five_failures_and_fails_fast() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(500, text="down")

    gw = _gateway(ReasoningProvider.openai, handler, resilience=_policy(attempts=1, threshold=5))
    for _ in range(5):
        with pytest.raises(AnalysisError):
            await gw.send(ReasoningRequest(prompt="p"))
    assert calls["n"] == 5

    with pytest.raises(CircuitOpenError):
        await gw.send(ReasoningRequest(prompt="p"))
    # No network call while the circuit is open.
    assert calls["n"] == 5
