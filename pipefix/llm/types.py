from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from pipefix.llm.config import ReasoningProvider


class ToolDeclaration(BaseModel):
    name: str
    description: str = ""
    # JSON schema of the arguments object.
    parameters: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})


class ToolInvocation(BaseModel):
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    id: Optional[str] = None


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ReasoningRequest(BaseModel):
    prompt: str
    system_message: Optional[str] = None
    tools: List[ToolDeclaration] = Field(default_factory=list)
    model: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    # Preferred provider when several are configured; ignored by a single-provider gateway.
    provider_hint: Optional[ReasoningProvider] = None


class ReasoningResponse(BaseModel):
    content: str = ""
    tool_invocations: List[ToolInvocation] = Field(default_factory=list)
    provider: ReasoningProvider
    model: str
    finish_reason: Optional[str] = None
    usage: Optional[Usage] = None
