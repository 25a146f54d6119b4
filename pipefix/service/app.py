from __future__ import annotations

import asyncio
import html
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import HTMLResponse

from pipefix.errors import PipefixError
from pipefix.models import AutoFixResult, OperationalMetrics
from pipefix.orchestrator.orchestrator import AutofixOrchestrator
from pipefix.orchestrator.wiring import build_orchestrator
from pipefix.settings import Settings, load_settings

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(settings: Settings | None = None, orchestrator: AutofixOrchestrator | None = None) -> FastAPI:
    """
    App factory used by uvicorn and tests.

    Tests inject an orchestrator built from fakes; otherwise every collaborator is wired
    from settings here, so a missing credential fails at startup.
    """
    s = settings or load_settings()
    configure_logging(s.log_level)
    orch = orchestrator or build_orchestrator(s)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        stop = asyncio.Event()
        poller: Optional[asyncio.Task] = None
        if s.poller_enabled:
            logger.info("poller enabled (interval=%.1fs)", orch.poll_interval_s)
            poller = asyncio.ensure_future(orch.run(stop))
        try:
            yield
        finally:
            stop.set()
            if poller is not None:
                await asyncio.gather(poller, return_exceptions=True)
            await orch.shutdown()

    app = FastAPI(title="pipefix", version="0.1.0", lifespan=lifespan)
    app.state.settings = s
    app.state.orchestrator = orch

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "github_mode": s.github_mode,
            "sandbox_mode": s.sandbox_mode,
            "reasoning_provider": s.reasoning_provider.value,
            "poller_enabled": s.poller_enabled,
        }

    @app.get("/metrics", response_model=OperationalMetrics)
    def metrics() -> OperationalMetrics:
        return orch.metrics()

    @app.get("/results", response_model=List[AutoFixResult])
    def results(limit: int = 50) -> List[AutoFixResult]:
        if orch.store is not None:
            return orch.store.recent(limit=limit)
        return list(reversed(orch.results))[:limit]

    @app.get("/results/{result_id}", response_model=AutoFixResult)
    def result(result_id: str) -> AutoFixResult:
        found = orch.store.get(result_id) if orch.store is not None else None
        if found is None:
            found = next((r for r in orch.results if r.id == result_id), None)
        if found is None:
            raise HTTPException(status_code=404, detail="result not found")
        return found

    @app.post("/runs/{run_id}/autofix")
    async def trigger(run_id: str, wait: bool = False) -> Dict[str, Any]:
        """Manual trigger for one run. Already-admitted runs are rejected with 409."""
        try:
            event = await orch.scm_policy.call(lambda: orch.scm.get_run(run_id))
        except PipefixError as e:
            raise HTTPException(status_code=502, detail=f"{type(e).__name__}: {e}")
        task = orch.submit(event)
        if task is None:
            raise HTTPException(status_code=409, detail=f"run {run_id} was already processed")
        if not wait:
            return {"run_id": run_id, "scheduled": True}
        res = await task
        return {"run_id": run_id, "scheduled": True, "result": res.model_dump(mode="json")}

    @app.post("/poll")
    async def poll() -> Dict[str, Any]:
        try:
            tasks = await orch.run_cycle()
        except PipefixError as e:
            raise HTTPException(status_code=502, detail=f"{type(e).__name__}: {e}")
        return {"scheduled": len(tasks)}

    @app.get("/audit/recent")
    def audit_recent(n: int = 200) -> Dict[str, Any]:
        if orch.audit is None:
            return {"events": []}
        return {"events": orch.audit.tail(n)}

    @app.get("/mock/pr/{pr_number}", response_class=HTMLResponse)
    def mock_pr(pr_number: int) -> str:
        pr_dir = os.path.join(s.mock_github_dir, "prs")
        meta_path = os.path.join(pr_dir, f"{pr_number}.json")
        if not os.path.exists(meta_path):
            raise HTTPException(status_code=404, detail="mock PR not found")
        with open(meta_path, "r", encoding="utf-8") as f:
            meta = json.load(f)
        body_path = os.path.join(pr_dir, f"{pr_number}.md")
        body = ""
        if os.path.exists(body_path):
            with open(body_path, "r", encoding="utf-8", errors="replace") as f:
                body = f.read()
        return render_mock_pr_html(pr_number, meta, body)

    return app


def render_mock_pr_html(pr_number: int, meta: Dict[str, Any], body: str) -> str:
    title = html.escape(str(meta.get("title", "")))
    branch = html.escape(str(meta.get("branch", "")))
    repo = html.escape(str(meta.get("repo", "")))
    return f"""<!doctype html>
<html>
  <head>
    <meta charset="utf-8" />
    <title>Mock PR #{pr_number}</title>
    <style>
      body {{ font-family: ui-sans-serif, system-ui, -apple-system, Segoe UI, Roboto; margin: 16px; }}
      .pill {{ font-size: 12px; padding: 2px 8px; border-radius: 999px; background: #eee; }}
      pre {{ background: #0b1020; color: #e5e7eb; padding: 12px; border-radius: 8px; overflow: auto; white-space: pre-wrap; }}
    </style>
  </head>
  <body>
    <h2>#{pr_number} {title}</h2>
    <div><span class="pill">{repo}</span> <span class="pill">{branch}</span></div>
    <pre>{html.escape(body)}</pre>
  </body>
</html>
"""
