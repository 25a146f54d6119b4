from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from pipefix.analysis.prompts import FIX_SYSTEM_PROMPT, build_fix_prompt, extract_json
from pipefix.llm.gateway import Gateway
from pipefix.llm.types import ReasoningRequest, ReasoningResponse, ToolDeclaration
from pipefix.models import ChangeOperation, CodeChange, FailureAnalysis, FixType, ProposedFix

logger = logging.getLogger(__name__)

SUBMIT_FIXES_TOOL = ToolDeclaration(
    name="submit_fixes",
    description="Submit candidate fixes for the analyzed CI failure, highest confidence first.",
    parameters={
        "type": "object",
        "properties": {
            "fixes": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "type": {"type": "string", "enum": [t.value for t in FixType]},
                        "description": {"type": "string"},
                        "rationale": {"type": "string"},
                        "changes": {
                            "type": "array",
                            "items": {
                                "type": "object",
                                "properties": {
                                    "file_path": {"type": "string"},
                                    "operation": {"type": "string", "enum": [o.value for o in ChangeOperation]},
                                    "old_content": {"type": "string"},
                                    "new_content": {"type": "string"},
                                    "explanation": {"type": "string"},
                                },
                                "required": ["file_path", "operation"],
                            },
                        },
                        "commands": {"type": "array", "items": {"type": "string"}},
                        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                        "risks": {"type": "array", "items": {"type": "string"}},
                        "benefits": {"type": "array", "items": {"type": "string"}},
                    },
                    "required": ["type", "description", "changes", "confidence"],
                },
            }
        },
        "required": ["fixes"],
    },
)


def raw_fixes(resp: ReasoningResponse) -> List[Any]:
    """Fix objects from the submit_fixes tool call, else from a JSON array in the text."""
    for inv in resp.tool_invocations:
        if inv.name == SUBMIT_FIXES_TOOL.name:
            fixes = inv.arguments.get("fixes")
            return list(fixes) if isinstance(fixes, list) else []
    parsed, _err = extract_json(resp.content, opener="[", closer="]")
    if isinstance(parsed, dict) and isinstance(parsed.get("fixes"), list):
        return list(parsed["fixes"])
    return list(parsed) if isinstance(parsed, list) else []


def _change(raw: Any) -> Optional[CodeChange]:
    if not isinstance(raw, dict) or not str(raw.get("file_path") or "").strip():
        return None
    try:
        op = ChangeOperation(str(raw.get("operation") or "modify").lower())
    except ValueError:
        return None
    return CodeChange(
        file_path=str(raw["file_path"]).strip(),
        operation=op,
        old_content=raw.get("old_content") if isinstance(raw.get("old_content"), str) else None,
        new_content=raw.get("new_content") if isinstance(raw.get("new_content"), str) else None,
        explanation=str(raw.get("explanation") or ""),
    )


def fix_from(raw: Any, fix_id: str) -> Optional[ProposedFix]:
    if not isinstance(raw, dict):
        return None
    try:
        ftype = FixType(str(raw.get("type") or "code").lower())
    except ValueError:
        ftype = FixType.code
    changes = [c for c in (_change(x) for x in (raw.get("changes") or [])) if c is not None]

    def _strs(key: str) -> List[str]:
        v = raw.get(key)
        return [str(x) for x in v] if isinstance(v, list) else []

    try:
        return ProposedFix(
            id=fix_id,
            type=ftype,
            description=str(raw.get("description") or ""),
            rationale=str(raw.get("rationale") or ""),
            changes=changes,
            commands=_strs("commands"),
            confidence=raw.get("confidence", 0.5),
            risks=_strs("risks"),
            benefits=_strs("benefits"),
        )
    except (PydanticValidationError, TypeError, ValueError):
        return None


@dataclass
class FixSynthesizer:
    """
    One reasoning round trip per analysis -> ordered candidate fixes.

    Zero fixes is a normal outcome, not an error. Candidates whose type implies edits
    but which carry no changes are dropped.
    """

    gateway: Gateway
    max_candidates: int = 3

    def request_for(self, analysis: FailureAnalysis) -> ReasoningRequest:
        return ReasoningRequest(
            prompt=build_fix_prompt(analysis, max_candidates=self.max_candidates),
            system_message=FIX_SYSTEM_PROMPT,
            tools=[SUBMIT_FIXES_TOOL],
        )

    async def synthesize(self, analysis: FailureAnalysis) -> List[ProposedFix]:
        resp = await self.gateway.send(self.request_for(analysis))
        fixes: List[ProposedFix] = []
        for i, raw in enumerate(raw_fixes(resp), start=1):
            fix = fix_from(raw, f"{analysis.id}-fix-{i}")
            if fix is None:
                logger.info("dropping malformed candidate %d for %s", i, analysis.id)
                continue
            if fix.type.requires_changes and not fix.changes:
                logger.info("dropping candidate %s: %s fix without changes", fix.id, fix.type.value)
                continue
            fixes.append(fix)
        return fixes[: max(0, int(self.max_candidates))]
