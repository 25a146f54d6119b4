from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

from pipefix.errors import AnalysisError
from pipefix.llm.config import ProviderConfig, ReasoningProvider
from pipefix.llm.types import ReasoningRequest, ReasoningResponse, ToolInvocation, Usage


@dataclass(frozen=True)
class GeminiAdapter:
    """
    Google Gemini generateContent.

    Endpoint: POST {base_url}/v1beta/models/{model}:generateContent
    """

    provider: ReasoningProvider = ReasoningProvider.gemini

    def build(self, request: ReasoningRequest, cfg: ProviderConfig, api_key: str | None) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        url = f"{cfg.base_url.rstrip('/')}/v1beta/models/{cfg.model}:generateContent"
        headers = {"x-goog-api-key": api_key or "", "Content-Type": "application/json"}
        payload: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": request.prompt}]}],
            "generationConfig": {
                "temperature": float(cfg.temperature),
                "maxOutputTokens": int(max(1, int(cfg.max_tokens))),
            },
        }
        if request.system_message:
            payload["systemInstruction"] = {"parts": [{"text": request.system_message}]}
        if request.tools:
            payload["tools"] = [
                {
                    "functionDeclarations": [
                        {"name": t.name, "description": t.description, "parameters": t.parameters} for t in request.tools
                    ]
                }
            ]
        return url, headers, payload

    def parse(self, data: Any, cfg: ProviderConfig) -> ReasoningResponse:
        try:
            candidate = data["candidates"][0]
            parts = candidate.get("content", {}).get("parts") or []
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise AnalysisError(f"gemini_response_parse_error: {str(data)[:500]}") from e

        texts: List[str] = []
        invocations: List[ToolInvocation] = []
        for part in parts:
            if not isinstance(part, dict):
                continue
            if "text" in part:
                texts.append(str(part.get("text") or ""))
            call = part.get("functionCall")
            if isinstance(call, dict):
                args = call.get("args") or {}
                if not isinstance(args, dict):
                    raise AnalysisError("gemini_function_args_not_object")
                invocations.append(ToolInvocation(name=str(call.get("name") or ""), arguments=args))

        usage = None
        meta = data.get("usageMetadata")
        if isinstance(meta, dict):
            usage = Usage(
                prompt_tokens=int(meta.get("promptTokenCount") or 0),
                completion_tokens=int(meta.get("candidatesTokenCount") or 0),
                total_tokens=int(meta.get("totalTokenCount") or 0),
            )
        return ReasoningResponse(
            content="".join(texts),
            tool_invocations=invocations,
            provider=self.provider,
            model=str(data.get("modelVersion") or cfg.model),
            finish_reason=candidate.get("finishReason"),
            usage=usage,
        )
