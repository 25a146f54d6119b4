from __future__ import annotations

from typing import List

from pipefix.models import FailureAnalysis, FixValidationResult


def render_pr_title(*, analysis: FailureAnalysis, selected: FixValidationResult) -> str:
    desc = (selected.fix.description or analysis.root_cause or "automated fix").strip().splitlines()[0]
    if len(desc) > 72:
        desc = desc[:69].rstrip() + "..."
    return f"autofix({selected.fix.type.value}): {desc}"


def render_pr_body(*, analysis: FailureAnalysis, selected: FixValidationResult) -> str:
    """
    Markdown review body: diagnosis, the selected candidate and the sandbox evidence
    that it passed.
    """
    fix = selected.fix
    v = selected.validation
    c = analysis.classification
    lines: List[str] = []
    lines.append("## Automated fix for failing CI run")
    lines.append("")
    lines.append(f"- run_id: `{analysis.run_id}`")
    lines.append(f"- analysis_id: `{analysis.id}`")
    lines.append(f"- classification: `{c.type.value}` / `{c.severity.value}` / `{c.category.value}` (confidence {c.confidence:.2f})")
    if c.tags:
        lines.append(f"- tags: {', '.join(f'`{t}`' for t in c.tags)}")
    lines.append(f"- reasoning provider: `{analysis.provider}`")
    lines.append("")

    lines.append("## Root cause")
    lines.append("")
    lines.append(analysis.root_cause.strip() or "(unknown)")
    if analysis.description.strip():
        lines.append("")
        lines.append(analysis.description.strip())
    lines.append("")

    lines.append("## Proposed fix")
    lines.append("")
    lines.append(f"- fix_id: `{fix.id}`")
    lines.append(f"- type: `{fix.type.value}`")
    lines.append(f"- confidence: `{fix.confidence:.2f}`")
    lines.append("")
    if fix.description:
        lines.append(fix.description.strip())
        lines.append("")
    if fix.rationale:
        lines.append(f"**Rationale**: {fix.rationale.strip()}")
        lines.append("")
    if fix.changes:
        lines.append("**Changes**:")
        for ch in fix.changes:
            note = f" - {ch.explanation}" if ch.explanation else ""
            lines.append(f"- `{ch.operation.value}` `{ch.file_path}`{note}")
        lines.append("")
    if fix.commands:
        lines.append("**Commands**:")
        lines.append("```")
        lines.extend(fix.commands)
        lines.append("```")
        lines.append("")
    if fix.risks:
        lines.append("**Risks**:")
        lines.extend(f"- {r}" for r in fix.risks)
        lines.append("")
    if fix.benefits:
        lines.append("**Benefits**:")
        lines.extend(f"- {b}" for b in fix.benefits)
        lines.append("")

    lines.append("## Sandbox validation")
    lines.append("")
    lines.append(f"- framework: `{v.framework or 'unknown'}`")
    lines.append(f"- tests: {v.passed} passed, {v.failed} failed, {v.skipped} skipped ({v.total_tests} total)")
    lines.append(f"- coverage: `{v.coverage_percent:.1f}%`")
    if v.lint_passed is not None:
        lines.append(f"- lint: `{'passed' if v.lint_passed else 'failed (non-blocking)'}`")
    lines.append(f"- duration: `{v.duration_s:.1f}s`")
    lines.append("")
    lines.append("_Validated in a disposable sandbox before submission. Review before merging._")
    return "\n".join(lines) + "\n"
