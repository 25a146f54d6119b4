from __future__ import annotations

import json
from typing import Any, List, Tuple

from pipefix.models import FailureAnalysis, FailureClassification, FailureEvent

ANALYSIS_SYSTEM_PROMPT = """You are a senior DevOps engineer and CI/CD specialist analyzing failed CI workflow runs.

Work systematically:
1. Root cause: identify the primary cause from error messages, stack traces and context.
2. Classification: one of infrastructure, code, test, dependency, build, deployment, configuration, security.
3. Severity: critical, high, medium or low.
4. Category: transient, systematic, environmental or flaky.
5. Error patterns: recurring patterns and what they mean.

Non-negotiable:
- Evidence-driven. Do not invent missing context; say "unknown" instead.
- When asked for JSON, output ONLY JSON (no markdown fences, no prose).
"""

FIX_SYSTEM_PROMPT = """You are a senior software engineer generating fixes for an analyzed CI failure.

Rules:
- Every fix that edits code, configuration, dependencies, workflows or tests MUST list concrete file changes.
- Prefer minimal fixes at the root cause over downstream workarounds.
- Never disable tests, linters or quality checks to make the pipeline green.
- Never touch secrets, tokens, .env files or credential paths.
- Report fixes through the submit_fixes tool when it is available; otherwise output ONLY a JSON array.
"""

# Logs longer than this are cut to head + tail around a marker.
MAX_PROMPT_LOG_CHARS = 8000
_LOG_HALF = 4000


def truncate_logs(text: str) -> str:
    if len(text) <= MAX_PROMPT_LOG_CHARS:
        return text
    return text[:_LOG_HALF] + "\n...\n[TRUNCATED]\n...\n" + text[-_LOG_HALF:]


def build_analysis_prompt(event: FailureEvent, pre: FailureClassification) -> str:
    """Deterministic: the same event and classification always produce the same prompt."""
    out: List[str] = ["## CI Workflow Failure Analysis", ""]
    out.append(f"**Workflow**: {event.workflow_name or 'unknown'}")
    out.append(f"**Run**: {event.run_id}")
    out.append(f"**Trigger**: {event.trigger}")
    out.append(f"**Branch**: {event.branch}")
    out.append(f"**Commit**: {event.commit_sha or 'unknown'}")
    out.append(
        f"**Initial Classification**: {pre.type.display_name} "
        f"(severity: {pre.severity.value}, category: {pre.category.value}, confidence: {pre.confidence:.2f})"
    )
    out.append("")

    out.append("## Error Information")
    out.append("")
    logs = event.logs
    if logs is not None and logs.error_lines:
        out.append("**Error Lines**:")
        out.append("```")
        out.extend(logs.error_lines)
        out.append("```")
        out.append("")
    if logs is not None and logs.raw_logs:
        out.append("**Full Logs**:")
        out.append("```")
        out.append(truncate_logs(logs.raw_logs))
        out.append("```")
        out.append("")

    out.append("## Analysis Instructions")
    out.append("")
    out.append("Respond with a JSON object with these fields:")
    out.append('- "root_cause": what exactly caused this failure')
    out.append('- "description": short explanation for a reviewer')
    out.append('- "classification": {"type", "severity", "category", "confidence" (0.0-1.0), "tags"}')
    out.append('- "affected_files": repository-relative paths involved')
    out.append('- "error_patterns": [{"pattern", "description", "confidence", "location"}]')
    return "\n".join(out) + "\n"


def build_fix_prompt(analysis: FailureAnalysis, *, max_candidates: int = 3) -> str:
    """Deterministic: the same analysis always produces the same prompt."""
    c = analysis.classification
    out: List[str] = ["## Fix Generation for CI Failure", ""]
    out.append(f"**Failure Type**: {c.type.display_name}")
    out.append(f"**Severity**: {c.severity.value}")
    out.append(f"**Root Cause**: {analysis.root_cause}")
    out.append(f"**Description**: {analysis.description}")
    out.append("")
    if analysis.affected_files:
        out.append("**Affected Files**:")
        out.extend(f"- {f}" for f in analysis.affected_files)
        out.append("")
    if analysis.error_patterns:
        out.append("**Error Patterns**:")
        out.extend(f"- {p.pattern}: {p.description} (confidence: {p.confidence:.2f})" for p in analysis.error_patterns)
        out.append("")

    out.append("## Fix Generation Instructions")
    out.append("")
    out.append(f"Generate up to {max_candidates} different fix proposals, each with:")
    out.append('1. "type": code, configuration, dependency, infrastructure, workflow, test or security')
    out.append('2. "description": what the fix does')
    out.append('3. "rationale": why it addresses the root cause')
    out.append('4. "changes": [{"file_path", "operation" (add|modify|delete), "old_content", "new_content", "explanation"}]')
    out.append('5. "commands": shell commands needed besides file edits (may be empty)')
    out.append('6. "confidence": 0.0-1.0')
    out.append('7. "risks" and "benefits": lists of short strings')
    out.append("")
    out.append("Order fixes by confidence (highest first).")
    return "\n".join(out) + "\n"


def extract_json(text: str, *, opener: str = "{", closer: str = "}") -> Tuple[Any | None, str | None]:
    """
    Parse JSON from raw model output. Prefer strict JSON-only, but tolerate prose around it
    by retrying on the span from the first opener to the last closer.
    """
    t = (text or "").strip()
    if not t:
        return None, "empty"
    try:
        return json.loads(t), None
    except ValueError as e1:
        i = t.find(opener)
        j = t.rfind(closer)
        if i != -1 and j != -1 and j > i:
            try:
                return json.loads(t[i : j + 1]), None
            except ValueError as e2:
                return None, f"json_parse_failed: {type(e2).__name__}: {e2}"
        return None, f"json_parse_failed: {type(e1).__name__}: {e1}"
