from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pipefix.analysis.engine import FailureAnalyzer
from pipefix.classifier.rules import FailureClassifier
from pipefix.errors import AuthenticationError, ConfigurationError, PipefixError
from pipefix.models import (
    AutoFixResult,
    CandidateAttempt,
    FailureAnalysis,
    FailureEvent,
    FailureReason,
    FixValidationResult,
    PipelineState,
    ProposedFix,
    StateTransition,
    utc_now,
)
from pipefix.resilience.policy import ResiliencePolicy
from pipefix.scm.base import SourceControl
from pipefix.synthesis.candidates import CandidateValidator
from pipefix.synthesis.selector import select_best_fix
from pipefix.synthesis.synthesizer import FixSynthesizer
from pipefix.telemetry.audit import AuditLogger

logger = logging.getLogger(__name__)


@dataclass
class AutofixPipeline:
    """
    One failing run through the state machine:

      detected -> classifying -> analyzing -> synthesizing -> validating -> selecting -> submitting
               -> succeeded | failed(no_valid_fix | submission_error | upstream_error)

    Every exit is a terminal AutoFixResult carrying what earlier stages produced.
    Cancellation is not converted into a result; it propagates after candidate cleanup.
    """

    scm: SourceControl
    analyzer: FailureAnalyzer
    synthesizer: FixSynthesizer
    candidates: CandidateValidator
    classifier: FailureClassifier = field(default_factory=FailureClassifier)
    scm_policy: ResiliencePolicy = field(default_factory=lambda: ResiliencePolicy.passthrough("scm"))
    audit: Optional[AuditLogger] = None
    parallel_validation: bool = False
    max_parallel_validations: int = 2

    def __post_init__(self) -> None:
        for name in ("scm", "analyzer", "synthesizer", "candidates"):
            if getattr(self, name) is None:
                raise ConfigurationError(f"AutofixPipeline requires {name}")

    def _audit(self, result: AutoFixResult, event_type: str, payload: Dict[str, Any]) -> None:
        if self.audit is not None:
            self.audit.write(result.id, event_type, {"run_id": result.run_id, **payload})

    def _enter(self, result: AutoFixResult, state: PipelineState) -> None:
        result.state = state
        result.transitions.append(StateTransition(state=state))
        logger.debug("run %s -> %s", result.run_id, state.value)
        self._audit(result, "pipeline.state", {"state": state.value})

    def _finish(
        self,
        result: AutoFixResult,
        state: PipelineState,
        *,
        reason: Optional[FailureReason] = None,
        detail: Optional[str] = None,
    ) -> AutoFixResult:
        result.reason = reason
        result.detail = detail
        self._enter(result, state)
        result.finished_at = utc_now()
        result.duration_s = round((result.finished_at - result.started_at).total_seconds(), 3)
        self._audit(
            result,
            "pipeline.finished",
            {
                "state": state.value,
                "reason": reason.value if reason else None,
                "detail": detail,
                "selected_fix": result.selected.fix.id if result.selected else None,
                "submission_url": result.submission.url if result.submission else None,
            },
        )
        if state is PipelineState.succeeded:
            logger.info("run %s succeeded: %s", result.run_id, result.submission.url if result.submission else "")
        else:
            logger.warning("run %s failed (%s): %s", result.run_id, reason.value if reason else "?", detail)
        return result

    def _new_result(self, event: FailureEvent) -> AutoFixResult:
        return AutoFixResult(id=uuid.uuid4().hex, run_id=event.run_id)

    async def run(self, event: FailureEvent) -> AutoFixResult:
        result = self._new_result(event)
        self._enter(result, PipelineState.detected)
        try:
            if event.logs is None:
                logs = await self.scm_policy.call(lambda: self.scm.get_run_logs(event.run_id))
                event = event.with_logs(logs)

            self._enter(result, PipelineState.classifying)
            classification = self.classifier.classify(event)
            result.classification = classification

            self._enter(result, PipelineState.analyzing)
            analysis = await self.analyzer.analyze(event, classification)
            result.analysis = analysis

            self._enter(result, PipelineState.synthesizing)
            fixes = await self.synthesizer.synthesize(analysis)
            if not fixes:
                return self._finish(result, PipelineState.failed, reason=FailureReason.no_valid_fix, detail="no candidate fixes synthesized")

            self._enter(result, PipelineState.validating)
            attempts = await self._validate_all(result, fixes)
            result.candidates = attempts
            if all(a.error is not None for a in attempts):
                return self._finish(
                    result,
                    PipelineState.failed,
                    reason=FailureReason.upstream_error,
                    detail=f"all {len(attempts)} candidates errored during validation",
                )

            self._enter(result, PipelineState.selecting)
            selected = select_best_fix(a.result for a in attempts if a.result is not None)
            if selected is None:
                return self._finish(result, PipelineState.failed, reason=FailureReason.no_valid_fix, detail="no candidate passed validation")
            result.selected = selected
            return await self._submit(result, analysis, selected)
        except PipefixError as e:
            return self._finish(result, PipelineState.failed, reason=FailureReason.upstream_error, detail=f"{type(e).__name__}: {e}")

    async def resubmit(self, previous: AutoFixResult) -> AutoFixResult:
        """Retry only the submission of an earlier run that failed with submission_error."""
        if previous.analysis is None or previous.selected is None:
            raise ValueError(f"result {previous.id} has nothing to resubmit")
        result = AutoFixResult(
            id=uuid.uuid4().hex,
            run_id=previous.run_id,
            classification=previous.classification,
            analysis=previous.analysis,
            candidates=list(previous.candidates),
            selected=previous.selected,
            resubmission=True,
        )
        self._enter(result, PipelineState.detected)
        return await self._submit(result, previous.analysis, previous.selected)

    async def _submit(self, result: AutoFixResult, analysis: FailureAnalysis, selected: FixValidationResult) -> AutoFixResult:
        self._enter(result, PipelineState.submitting)
        try:
            submission = await self.scm_policy.call(lambda: self.scm.submit_for_review(analysis, selected))
        except AuthenticationError as e:
            return self._finish(result, PipelineState.failed, reason=FailureReason.upstream_error, detail=f"AuthenticationError: {e}")
        except PipefixError as e:
            return self._finish(result, PipelineState.failed, reason=FailureReason.submission_error, detail=f"{type(e).__name__}: {e}")
        result.submission = submission
        self._audit(result, "submission.created", submission.model_dump(mode="json"))
        return self._finish(result, PipelineState.succeeded)

    async def _validate_one(self, result: AutoFixResult, fix: ProposedFix) -> CandidateAttempt:
        branch = self.candidates.branch_name(fix)
        started = time.monotonic()
        try:
            fvr = await self.candidates.validate(fix, branch=branch)
        except PipefixError as e:
            self._audit(result, "candidate.error", {"fix_id": fix.id, "branch": branch, "error": f"{type(e).__name__}: {e}"})
            logger.warning("candidate %s errored: %s", fix.id, e)
            return CandidateAttempt(fix=fix, branch=branch, error=f"{type(e).__name__}: {e}")
        self._audit(
            result,
            "candidate.validated",
            {
                "fix_id": fix.id,
                "branch": branch,
                "valid": fvr.valid,
                "success": fvr.validation.success,
                "coverage_percent": fvr.validation.coverage_percent,
                "elapsed_s": round(time.monotonic() - started, 3),
            },
        )
        return CandidateAttempt(fix=fix, branch=branch, result=fvr)

    async def _validate_all(self, result: AutoFixResult, fixes: List[ProposedFix]) -> List[CandidateAttempt]:
        if not self.parallel_validation or len(fixes) < 2:
            return [await self._validate_one(result, f) for f in fixes]
        sem = asyncio.Semaphore(max(1, int(self.max_parallel_validations)))

        async def _bounded(fix: ProposedFix) -> CandidateAttempt:
            async with sem:
                return await self._validate_one(result, fix)

        tasks = [asyncio.ensure_future(_bounded(f)) for f in fixes]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
