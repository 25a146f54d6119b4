from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

from pipefix.errors import AnalysisError
from pipefix.llm.config import ProviderConfig, ReasoningProvider
from pipefix.llm.types import ReasoningRequest, ReasoningResponse, ToolInvocation, Usage


@dataclass(frozen=True)
class OpenAICompatAdapter:
    """
    OpenAI-compatible chat completions (OpenAI, DeepSeek, OpenRouter, Groq, LiteLLM proxy).

    Endpoint: POST {base_url}/chat/completions
    """

    provider: ReasoningProvider
    site_url: str | None = None
    site_name: str | None = None

    def build(self, request: ReasoningRequest, cfg: ProviderConfig, api_key: str | None) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        url = f"{cfg.base_url.rstrip('/')}/chat/completions"
        headers: Dict[str, str] = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        # Optional OpenRouter ranking headers
        if self.site_url:
            headers["HTTP-Referer"] = self.site_url
        if self.site_name:
            headers["X-Title"] = self.site_name

        messages: List[Dict[str, str]] = []
        if request.system_message:
            messages.append({"role": "system", "content": request.system_message})
        messages.append({"role": "user", "content": request.prompt})

        payload: Dict[str, Any] = {
            "model": cfg.model,
            "messages": messages,
            # OpenRouter otherwise assumes a very high max_tokens, which can fail with 402 on small prompts.
            "max_tokens": int(max(1, min(int(cfg.max_tokens), 8192))),
            "temperature": float(cfg.temperature),
        }
        if request.tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {"name": t.name, "description": t.description, "parameters": t.parameters},
                }
                for t in request.tools
            ]
        return url, headers, payload

    def parse(self, data: Any, cfg: ProviderConfig) -> ReasoningResponse:
        try:
            choice = data["choices"][0]
            message = choice["message"]
        except (KeyError, IndexError, TypeError) as e:
            raise AnalysisError(f"{self.provider.value}_response_parse_error: {str(data)[:500]}") from e

        invocations: List[ToolInvocation] = []
        for call in message.get("tool_calls") or []:
            fn = call.get("function") or {}
            raw_args = fn.get("arguments") or "{}"
            try:
                args = json.loads(raw_args) if isinstance(raw_args, str) else dict(raw_args)
            except (ValueError, TypeError) as e:
                raise AnalysisError(f"{self.provider.value}_tool_arguments_parse_error: {str(raw_args)[:500]}") from e
            if not isinstance(args, dict):
                raise AnalysisError(f"{self.provider.value}_tool_arguments_not_object")
            invocations.append(ToolInvocation(name=str(fn.get("name") or ""), arguments=args, id=call.get("id")))

        usage = None
        if isinstance(data.get("usage"), dict):
            u = data["usage"]
            usage = Usage(
                prompt_tokens=int(u.get("prompt_tokens") or 0),
                completion_tokens=int(u.get("completion_tokens") or 0),
                total_tokens=int(u.get("total_tokens") or 0),
            )
        return ReasoningResponse(
            content=message.get("content") or "",
            tool_invocations=invocations,
            provider=self.provider,
            model=str(data.get("model") or cfg.model),
            finish_reason=choice.get("finish_reason"),
            usage=usage,
        )
