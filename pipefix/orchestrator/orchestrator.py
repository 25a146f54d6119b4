from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from typing import Deque, Dict, List, Optional

from pipefix.errors import ConfigurationError, PipefixError
from pipefix.models import AutoFixResult, FailureEvent, FailureReason, OperationalMetrics, PipelineState, utc_now
from pipefix.orchestrator.pipeline import AutofixPipeline
from pipefix.orchestrator.registry import ProcessedRunRegistry
from pipefix.resilience.policy import ResiliencePolicy
from pipefix.scm.base import SourceControl
from pipefix.store.results import ResultStore
from pipefix.telemetry.audit import AuditLogger

logger = logging.getLogger(__name__)


class AutofixOrchestrator:
    """
    Polls the failing-run feed, admits each run at most once, and drives admitted runs
    through the pipeline on a bounded worker pool.

    - `run_cycle()` returns the scheduled tasks so callers can await them deterministically.
    - Runs that ended in submission_error keep their selected fix; while the run is still
      in the feed, later cycles retry only the submission.
    - `shutdown()` cancels in-flight work and waits for it (candidate cleanup still runs).
    - Only the last `results_history` results are kept in memory; the store keeps all of them.
    """

    def __init__(
        self,
        *,
        scm: SourceControl,
        pipeline: AutofixPipeline,
        registry: Optional[ProcessedRunRegistry] = None,
        store: Optional[ResultStore] = None,
        audit: Optional[AuditLogger] = None,
        scm_policy: Optional[ResiliencePolicy] = None,
        max_concurrent_fixes: int = 2,
        poll_interval_s: float = 30.0,
        max_runs_per_cycle: int = 5,
        results_history: int = 100,
    ) -> None:
        if scm is None:
            raise ConfigurationError("AutofixOrchestrator requires a source-control service")
        if pipeline is None:
            raise ConfigurationError("AutofixOrchestrator requires a pipeline")
        if int(max_concurrent_fixes) <= 0:
            raise ConfigurationError("max_concurrent_fixes must be > 0")
        self.scm = scm
        self.pipeline = pipeline
        self.registry = registry or ProcessedRunRegistry()
        self.store = store
        self.audit = audit
        self.scm_policy = scm_policy or ResiliencePolicy.passthrough("scm")
        self.max_concurrent_fixes = int(max_concurrent_fixes)
        self.poll_interval_s = float(poll_interval_s)
        self.max_runs_per_cycle = max(1, int(max_runs_per_cycle))

        self._sem = asyncio.Semaphore(self.max_concurrent_fixes)
        self._lock = threading.Lock()
        self._tasks: Dict[str, "asyncio.Task[AutoFixResult]"] = {}
        self._pending_resubmit: Dict[str, AutoFixResult] = {}
        self._results: Deque[AutoFixResult] = deque(maxlen=max(1, int(results_history)))

    # -------- scheduling --------

    @property
    def in_flight(self) -> int:
        with self._lock:
            return sum(1 for t in self._tasks.values() if not t.done())

    @property
    def results(self) -> List[AutoFixResult]:
        with self._lock:
            return list(self._results)

    def _spawn(self, run_id: str, coro) -> "asyncio.Task[AutoFixResult]":
        task = asyncio.ensure_future(coro)
        with self._lock:
            self._tasks[run_id] = task

        def _done(t: "asyncio.Task[AutoFixResult]") -> None:
            with self._lock:
                if self._tasks.get(run_id) is t:
                    del self._tasks[run_id]

        task.add_done_callback(_done)
        return task

    def submit(self, event: FailureEvent) -> Optional["asyncio.Task[AutoFixResult]"]:
        """Admit and schedule one run; None when the run was already admitted."""
        if not self.registry.try_admit(event.run_id):
            return None
        logger.info("admitted run %s (%s)", event.run_id, event.workflow_name)
        if self.audit is not None:
            self.audit.write(event.run_id, "run.admitted", {"run_id": event.run_id, "workflow": event.workflow_name})
        return self._spawn(event.run_id, self._work(event))

    def _resubmit(self, previous: AutoFixResult) -> Optional["asyncio.Task[AutoFixResult]"]:
        with self._lock:
            if previous.run_id in self._tasks or self._pending_resubmit.get(previous.run_id) is not previous:
                return None
            del self._pending_resubmit[previous.run_id]
        logger.info("retrying submission for run %s", previous.run_id)
        return self._spawn(previous.run_id, self._work_resubmit(previous))

    async def run_cycle(self) -> List["asyncio.Task[AutoFixResult]"]:
        events = await self.scm_policy.call(self.scm.get_failing_runs)
        scheduled: List["asyncio.Task[AutoFixResult]"] = []
        admitted = 0
        for ev in events:
            with self._lock:
                previous = self._pending_resubmit.get(ev.run_id)
            if previous is not None:
                t = self._resubmit(previous)
                if t is not None:
                    scheduled.append(t)
                continue
            if admitted >= self.max_runs_per_cycle:
                # Not admitted: it stays eligible for the next cycle.
                continue
            t = self.submit(ev)
            if t is not None:
                admitted += 1
                scheduled.append(t)
        return scheduled

    async def run(self, stop: asyncio.Event) -> None:
        """Poll every `poll_interval_s` until `stop` is set."""
        while not stop.is_set():
            try:
                await self.run_cycle()
            except PipefixError as e:
                logger.warning("polling cycle failed: %s", e)
            except Exception:
                # Malformed feed data ends this cycle only.
                logger.exception("polling cycle crashed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.poll_interval_s)
            except asyncio.TimeoutError:
                continue

    async def wait_idle(self) -> None:
        while True:
            with self._lock:
                pending = [t for t in self._tasks.values() if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self) -> None:
        with self._lock:
            pending = list(self._tasks.values())
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # -------- workers --------

    async def _work(self, event: FailureEvent) -> AutoFixResult:
        async with self._sem:
            try:
                result = await self.pipeline.run(event)
            except Exception as e:
                logger.exception("pipeline crashed for run %s", event.run_id)
                result = self._crashed(event.run_id, e)
        self._record(result)
        return result

    async def _work_resubmit(self, previous: AutoFixResult) -> AutoFixResult:
        async with self._sem:
            try:
                result = await self.pipeline.resubmit(previous)
            except Exception as e:
                logger.exception("resubmission crashed for run %s", previous.run_id)
                result = self._crashed(previous.run_id, e)
        self._record(result)
        return result

    def _crashed(self, run_id: str, e: Exception) -> AutoFixResult:
        now = utc_now()
        return AutoFixResult(
            id=f"crash-{run_id}-{int(now.timestamp())}",
            run_id=run_id,
            state=PipelineState.failed,
            reason=FailureReason.upstream_error,
            detail=f"{type(e).__name__}: {e}",
            started_at=now,
            finished_at=now,
        )

    def _record(self, result: AutoFixResult) -> None:
        with self._lock:
            self._results.append(result)
            if result.reason is FailureReason.submission_error and result.selected is not None:
                self._pending_resubmit[result.run_id] = result
        if self.store is not None:
            self.store.save(result)

    def metrics(self) -> OperationalMetrics:
        if self.store is not None:
            m = self.store.metrics()
        else:
            m = _metrics_from(self.results)
        return m.model_copy(update={"in_flight": self.in_flight, "admitted_runs": len(self.registry)})


def _metrics_from(results: List[AutoFixResult]) -> OperationalMetrics:
    by_reason: Dict[str, int] = {}
    by_type: Dict[str, int] = {}
    by_provider: Dict[str, int] = {}
    for r in results:
        if r.reason is not None:
            by_reason[r.reason.value] = by_reason.get(r.reason.value, 0) + 1
        if r.classification is not None:
            by_type[r.classification.type.value] = by_type.get(r.classification.type.value, 0) + 1
        if r.analysis is not None:
            by_provider[r.analysis.provider] = by_provider.get(r.analysis.provider, 0) + 1
    total = len(results)
    return OperationalMetrics(
        total_runs=total,
        succeeded=sum(1 for r in results if r.success),
        failed=sum(1 for r in results if r.state is PipelineState.failed),
        failures_by_reason=by_reason,
        average_duration_s=round(sum(r.duration_s for r in results) / total, 3) if total else 0.0,
        runs_by_failure_type=by_type,
        runs_by_provider=by_provider,
    )
