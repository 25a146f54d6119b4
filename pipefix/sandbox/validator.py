from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

from pipefix.models import ValidationResult
from pipefix.resilience.policy import ResiliencePolicy
from pipefix.sandbox.frameworks import FRAMEWORKS, Framework, detect_framework, marker_priority
from pipefix.sandbox.parsing import parse_coverage, parse_test_output
from pipefix.sandbox.provider import CommandResult, SandboxEnvironment, SandboxProvider

logger = logging.getLogger(__name__)

MAX_RAW_OUTPUT_CHARS = 30_000


def _section(label: str, argv: tuple, r: CommandResult) -> str:
    return f"== {label}: {' '.join(argv)} (exit={r.exit_code}, {r.duration_s:.1f}s) ==\n{r.output}"


@dataclass
class SandboxValidator:
    """
    detect -> build -> lint -> test -> coverage in one disposable environment.

    - build failure is fatal and short-circuits the remaining stages
    - lint failure is recorded only
    - success needs a test command that exits 0 with at least one passing test
    - no coverage command means coverage 0.0
    The environment is closed on every exit path; launch failures propagate as SandboxError.
    Whether the result is good enough (coverage threshold) is the caller's decision.
    """

    provider: SandboxProvider
    base_image: str = "ubuntu:22.04"
    frameworks: Mapping[str, Framework] = field(default_factory=lambda: dict(FRAMEWORKS))
    command_timeout_s: Optional[float] = None
    resilience: ResiliencePolicy = field(default_factory=lambda: ResiliencePolicy.passthrough("sandbox"))

    async def detect(self, env: SandboxEnvironment) -> Framework:
        present: List[str] = []
        for marker in marker_priority(self.frameworks):
            if await env.file_exists(marker):
                present.append(marker)
        return detect_framework(present, self.frameworks)

    async def validate(self, source_ref: str, branch: Optional[str]) -> ValidationResult:
        started = time.monotonic()
        env = await self.resilience.call(
            lambda: self.provider.start(base_image=self.base_image, source_ref=source_ref, branch=branch)
        )
        try:
            return await self._run_stages(env, started)
        finally:
            await env.close()

    async def _run_stages(self, env: SandboxEnvironment, started: float) -> ValidationResult:
        fw = await self.detect(env)
        for k, v in fw.env.items():
            env.set_env(k, v)
        logger.info("sandbox framework=%s", fw.name)

        chunks: List[str] = []

        def _result(**kw) -> ValidationResult:
            raw = "\n".join(chunks)[-MAX_RAW_OUTPUT_CHARS:]
            return ValidationResult(
                duration_s=round(time.monotonic() - started, 3),
                raw_output=raw,
                framework=fw.name,
                **kw,
            )

        if fw.build_cmd:
            r = await env.run(fw.build_cmd, timeout_s=self.command_timeout_s)
            chunks.append(_section("build", fw.build_cmd, r))
            if not r.ok:
                return _result(success=False, stage="build")

        lint_passed: Optional[bool] = None
        if fw.lint_cmd:
            r = await env.run(fw.lint_cmd, timeout_s=self.command_timeout_s)
            chunks.append(_section("lint", fw.lint_cmd, r))
            lint_passed = r.ok
            if not r.ok:
                logger.info("lint failed (non-fatal) exit=%d", r.exit_code)

        if not fw.test_cmd:
            chunks.append(f"== test: no test command for framework {fw.name} ==")
            return _result(success=False, stage="test", lint_passed=lint_passed)

        r = await env.run(fw.test_cmd, timeout_s=self.command_timeout_s)
        chunks.append(_section("test", fw.test_cmd, r))
        stats = parse_test_output(r.output)
        # A zero exit with no recognizable passing tests proves nothing.
        success = r.ok and stats.passed > 0
        stage = "test"

        coverage = 0.0
        if fw.coverage_cmd:
            r = await env.run(fw.coverage_cmd, timeout_s=self.command_timeout_s)
            chunks.append(_section("coverage", fw.coverage_cmd, r))
            coverage = parse_coverage(r.output)
            stage = "coverage"

        return _result(
            success=success,
            total_tests=stats.total,
            passed=stats.passed,
            failed=stats.failed,
            skipped=stats.skipped,
            coverage_percent=coverage,
            stage=stage,
            lint_passed=lint_passed,
        )
