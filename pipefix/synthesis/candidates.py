from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from pipefix.models import FixValidationResult, ProposedFix
from pipefix.resilience.policy import ResiliencePolicy
from pipefix.sandbox.validator import SandboxValidator
from pipefix.scm.base import SourceControl

logger = logging.getLogger(__name__)

_UNSAFE_REF_CHARS = re.compile(r"[^A-Za-z0-9._/-]+")


def validation_branch_name(fix: ProposedFix, ts_ms: int) -> str:
    return _UNSAFE_REF_CHARS.sub("-", f"autofix-test-{fix.id}-{ts_ms}")


@dataclass
class CandidateValidator:
    """
    Validate one candidate on its own disposable branch.

    The branch is removed exactly once on every exit path (success, failure, error,
    cancellation); a failing cleanup is logged, never raised over the validation outcome.
    """

    scm: SourceControl
    validator: SandboxValidator
    min_coverage: float
    scm_policy: ResiliencePolicy = field(default_factory=lambda: ResiliencePolicy.passthrough("scm"))
    clock: Callable[[], float] = time.time

    def branch_name(self, fix: ProposedFix) -> str:
        return validation_branch_name(fix, int(self.clock() * 1000))

    async def validate(self, fix: ProposedFix, *, branch: Optional[str] = None) -> FixValidationResult:
        name = branch or self.branch_name(fix)
        disposable = await self.scm_policy.call(lambda: self.scm.create_disposable_branch(name, fix.changes))
        try:
            validation = await self.validator.validate(disposable.source_ref, disposable.name)
        finally:
            try:
                await disposable.cleanup()
            except Exception as e:  # noqa: BLE001
                logger.warning("cleanup of branch %s failed: %s", disposable.name, e)
        result = FixValidationResult.evaluate(fix, validation, min_coverage=self.min_coverage)
        logger.info(
            "candidate %s success=%s coverage=%.1f valid=%s",
            fix.id,
            validation.success,
            validation.coverage_percent,
            result.valid,
        )
        return result
