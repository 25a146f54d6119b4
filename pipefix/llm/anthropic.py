from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

from pipefix.errors import AnalysisError
from pipefix.llm.config import ProviderConfig, ReasoningProvider
from pipefix.llm.types import ReasoningRequest, ReasoningResponse, ToolInvocation, Usage

ANTHROPIC_VERSION = "2023-06-01"


@dataclass(frozen=True)
class AnthropicAdapter:
    """
    Anthropic Messages API.

    Endpoint: POST {base_url}/v1/messages
    """

    provider: ReasoningProvider = ReasoningProvider.anthropic

    def build(self, request: ReasoningRequest, cfg: ProviderConfig, api_key: str | None) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        url = f"{cfg.base_url.rstrip('/')}/v1/messages"
        headers = {
            "x-api-key": api_key or "",
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }
        payload: Dict[str, Any] = {
            "model": cfg.model,
            "max_tokens": int(max(1, int(cfg.max_tokens))),
            "temperature": float(cfg.temperature),
            "messages": [{"role": "user", "content": request.prompt}],
        }
        if request.system_message:
            payload["system"] = request.system_message
        if request.tools:
            payload["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.parameters} for t in request.tools
            ]
        return url, headers, payload

    def parse(self, data: Any, cfg: ProviderConfig) -> ReasoningResponse:
        blocks = data.get("content") if isinstance(data, dict) else None
        if not isinstance(blocks, list):
            raise AnalysisError(f"anthropic_response_parse_error: {str(data)[:500]}")

        texts: List[str] = []
        invocations: List[ToolInvocation] = []
        for block in blocks:
            if not isinstance(block, dict):
                continue
            kind = block.get("type")
            if kind == "text":
                texts.append(str(block.get("text") or ""))
            elif kind == "tool_use":
                args = block.get("input") or {}
                if not isinstance(args, dict):
                    raise AnalysisError("anthropic_tool_input_not_object")
                invocations.append(ToolInvocation(name=str(block.get("name") or ""), arguments=args, id=block.get("id")))

        usage = None
        if isinstance(data.get("usage"), dict):
            u = data["usage"]
            inp, out = int(u.get("input_tokens") or 0), int(u.get("output_tokens") or 0)
            usage = Usage(prompt_tokens=inp, completion_tokens=out, total_tokens=inp + out)
        return ReasoningResponse(
            content="".join(texts),
            tool_invocations=invocations,
            provider=self.provider,
            model=str(data.get("model") or cfg.model),
            finish_reason=data.get("stop_reason"),
            usage=usage,
        )
