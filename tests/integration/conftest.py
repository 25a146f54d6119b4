from __future__ import annotations

import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List

import httpx
import pytest

from pipefix.settings import Settings, load_settings

CHECK_SCRIPT = """\
import sys

import config

if "--cov" in sys.argv:
    print("Name       Stmts   Miss  Cover")
    print(f"TOTAL         10      1    {config.COVERAGE}%")
    sys.exit(0)
if config.VALUE == 2:
    print("===== 1 passed in 0.01s =====")
    sys.exit(0)
print(f"expected VALUE == 2, got {config.VALUE}")
sys.exit(1)
"""

ANALYSIS = {
    "root_cause": "config.VALUE is wrong",
    "description": "The build check expects VALUE to be 2.",
    "affected_files": ["config.py"],
    "classification": {"type": "build", "severity": "high", "category": "systematic", "confidence": 0.9},
}


def _fix(description: str, content: str, confidence: float) -> Dict[str, Any]:
    return {
        "type": "configuration",
        "description": description,
        "changes": [{"file_path": "config.py", "operation": "modify", "new_content": content}],
        "confidence": confidence,
    }


FIXES = [
    _fix("VALUE=3", "VALUE = 3\nCOVERAGE = 90\n", 0.9),
    _fix("VALUE=2 with coverage", "VALUE = 2\nCOVERAGE = 90\n", 0.7),
    _fix("VALUE=2 without coverage", "VALUE = 2\nCOVERAGE = 50\n", 0.95),
]


@dataclass
class AutofixWorld:
    settings: Settings
    transport: httpx.MockTransport
    mock_dir: Path
    reasoning_calls: List[Dict[str, Any]]


def _reasoning_handler(calls: List[Dict[str, Any]]):
    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        calls.append(payload)
        if payload.get("tools"):
            message = {
                "content": None,
                "tool_calls": [
                    {
                        "id": "call_1",
                        "type": "function",
                        "function": {"name": "submit_fixes", "arguments": json.dumps({"fixes": FIXES})},
                    }
                ],
            }
        else:
            message = {"content": json.dumps(ANALYSIS)}
        return httpx.Response(200, json={"model": "gpt-test", "choices": [{"finish_reason": "stop", "message": message}]})

    return handler


@pytest.fixture()
def autofix_world(tmp_path: Path) -> AutofixWorld:
    """Mock source control over a tiny repo whose check script fails until VALUE == 2."""
    src = tmp_path / "src"
    src.mkdir()
    (src / "Makefile").write_text("all:\n\t@true\n", encoding="utf-8")
    (src / "check.py").write_text(CHECK_SCRIPT, encoding="utf-8")
    (src / "config.py").write_text("VALUE = 1\nCOVERAGE = 50\n", encoding="utf-8")

    mock_dir = tmp_path / "mock_github"
    (mock_dir / "runs").mkdir(parents=True)
    (mock_dir / "runs" / "run-42.json").write_text(
        json.dumps(
            {
                "run_id": "run-42",
                "workflow_name": "ci",
                "branch": "main",
                "commit_sha": "abc123",
                "logs": {
                    "raw_logs": "compiling\nerror: Build failed\n",
                    "error_lines": ["error: Build failed"],
                },
            }
        ),
        encoding="utf-8",
    )

    # YAML accepts JSON; argv lists keep the interpreter path intact.
    frameworks = tmp_path / "frameworks.yaml"
    frameworks.write_text(
        json.dumps(
            {
                "make": {
                    "build_cmd": "",
                    "lint_cmd": "",
                    "test_cmd": [sys.executable, "check.py"],
                    "coverage_cmd": [sys.executable, "check.py", "--cov"],
                }
            }
        ),
        encoding="utf-8",
    )

    settings = load_settings(
        github_mode="mock",
        mock_github_dir=str(mock_dir),
        local_repo_path=str(src),
        sandbox_mode="local",
        frameworks_path=str(frameworks),
        openai_api_key="sk-test-secret",
        rate_limit_capacity=0,
        retry_max_attempts=1,
        audit_log_path=str(tmp_path / "audit.jsonl"),
        results_db_path=str(tmp_path / "results.sqlite3"),
        sandbox_command_timeout_s=60.0,
    )
    calls: List[Dict[str, Any]] = []
    return AutofixWorld(
        settings=settings,
        transport=httpx.MockTransport(_reasoning_handler(calls)),
        mock_dir=mock_dir,
        reasoning_calls=calls,
    )
