from __future__ import annotations

from typing import Iterable, Optional

from pipefix.models import FixValidationResult


def select_best_fix(results: Iterable[FixValidationResult]) -> Optional[FixValidationResult]:
    """Highest-confidence valid result; first seen wins ties. None when nothing is valid."""
    best: Optional[FixValidationResult] = None
    for r in results:
        if not r.valid:
            continue
        if best is None or r.fix.confidence > best.fix.confidence:
            best = r
    return best
