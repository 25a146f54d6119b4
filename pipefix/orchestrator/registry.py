from __future__ import annotations

import threading
from typing import Set


class ProcessedRunRegistry:
    """
    Run ids already accepted for processing. Append-only for the owner's lifetime;
    `try_admit` is the single atomic check-and-insert.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._seen: Set[str] = set()

    def try_admit(self, run_id: str) -> bool:
        with self._lock:
            if run_id in self._seen:
                return False
            self._seen.add(run_id)
            return True

    def __contains__(self, run_id: object) -> bool:
        with self._lock:
            return run_id in self._seen

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)
