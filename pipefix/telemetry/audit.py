from __future__ import annotations

import json
import os
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

REDACTED = "***"


def redact(value: Any, secrets: Iterable[str]) -> Any:
    """Replace every occurrence of a known secret value inside strings, lists and dicts."""
    secrets = [s for s in secrets if s]
    if not secrets:
        return value
    if isinstance(value, str):
        for s in secrets:
            value = value.replace(s, REDACTED)
        return value
    if isinstance(value, dict):
        return {k: redact(v, secrets) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact(v, secrets) for v in value]
    return value


class AuditLogger:
    """Append-only JSONL audit trail: one record per line (ts, correlation_id, actor, event_type, payload)."""

    def __init__(self, path: str, *, secrets: Optional[Iterable[str]] = None):
        self.path = path
        self._secrets: List[str] = [s for s in (secrets or []) if s]
        self._lock = threading.Lock()
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)

    def new_correlation_id(self) -> str:
        return uuid.uuid4().hex

    def write(
        self,
        correlation_id: str,
        event_type: str,
        payload: Dict[str, Any],
        *,
        actor: str = "pipefix",
        timestamp: Optional[str] = None,
    ) -> None:
        record = {
            "ts": timestamp or datetime.now(timezone.utc).isoformat(),
            "correlation_id": correlation_id,
            "actor": actor,
            "event_type": event_type,
            "payload": redact(payload, self._secrets),
        }
        line = json.dumps(record, ensure_ascii=False, default=str) + "\n"
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line)

    def tail(self, n: int = 200) -> List[Dict[str, Any]]:
        if not os.path.exists(self.path):
            return []
        with self._lock:
            with open(self.path, "r", encoding="utf-8") as f:
                lines = f.readlines()[-max(0, int(n)) :]
        out: List[Dict[str, Any]] = []
        for ln in lines:
            try:
                out.append(json.loads(ln))
            except ValueError:
                continue
        return out
