from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from pipefix.classifier.rules import FailureClassifier
from pipefix.errors import AnalysisError
from pipefix.llm.gateway import Gateway
from pipefix.llm.types import ReasoningRequest
from pipefix.models import (
    ErrorPattern,
    FailureAnalysis,
    FailureCategory,
    FailureClassification,
    FailureEvent,
    FailureType,
    Severity,
)
from pipefix.analysis.prompts import ANALYSIS_SYSTEM_PROMPT, build_analysis_prompt, extract_json

logger = logging.getLogger(__name__)

# The rule-based result replaces a less sure model answer.
MODEL_CONFIDENCE_FLOOR = 0.6
CLASSIFIER_CONFIDENCE_FLOOR = 0.5

# Checked in order against unstructured model output.
_UNSTRUCTURED_KEYWORDS = (
    (FailureType.dependency, ("dependency", "dependencies", "package")),
    (FailureType.build, ("build", "compilation")),
    (FailureType.test, ("test",)),
    (FailureType.infrastructure, ("infrastructure", "network", "timeout")),
    (FailureType.security, ("security", "vulnerability")),
    (FailureType.configuration, ("configuration", "config")),
)


def _enum(cls, raw: Any, default):
    try:
        return cls(str(raw).strip().lower())
    except ValueError:
        return default


def _float(raw: Any, default: float) -> float:
    try:
        return max(0.0, min(1.0, float(raw)))
    except (TypeError, ValueError):
        return default


def _str_list(raw: Any) -> List[str]:
    if not isinstance(raw, list):
        return []
    return [str(x) for x in raw if isinstance(x, (str, int, float)) and str(x).strip()]


def classification_from(raw: Any) -> Optional[FailureClassification]:
    if not isinstance(raw, dict):
        return None
    return FailureClassification(
        type=_enum(FailureType, raw.get("type"), FailureType.code),
        severity=_enum(Severity, raw.get("severity"), Severity.medium),
        category=_enum(FailureCategory, raw.get("category"), FailureCategory.systematic),
        confidence=_float(raw.get("confidence"), 0.7),
        tags=_str_list(raw.get("tags")),
    )


def unstructured_classification(content: str) -> FailureClassification:
    lower = content.lower()
    ftype = FailureType.code
    for candidate, words in _UNSTRUCTURED_KEYWORDS:
        if any(w in lower for w in words):
            ftype = candidate
            break
    return FailureClassification(
        type=ftype,
        severity=Severity.medium,
        category=FailureCategory.systematic,
        confidence=0.5,
        tags=["unstructured"],
    )


def enhance_with_patterns(model: FailureClassification, pre: FailureClassification) -> FailureClassification:
    if model.confidence < MODEL_CONFIDENCE_FLOOR and pre.confidence > CLASSIFIER_CONFIDENCE_FLOOR:
        return pre.model_copy(update={"tags": sorted(set(pre.tags) | {"pattern-enhanced"})})
    return model


@dataclass
class FailureAnalyzer:
    """
    Classifier output + one reasoning round trip -> FailureAnalysis.

    JSON answers are parsed field by field; anything else falls back to keyword
    classification of the text. A confident rule match wins over an unsure model.
    """

    gateway: Gateway
    classifier: FailureClassifier = field(default_factory=FailureClassifier)
    clock: Callable[[], float] = time.time

    async def analyze(self, event: FailureEvent, classification: Optional[FailureClassification] = None) -> FailureAnalysis:
        started = time.monotonic()
        pre = classification or self.classifier.classify(event)
        req = ReasoningRequest(prompt=build_analysis_prompt(event, pre), system_message=ANALYSIS_SYSTEM_PROMPT)
        resp = await self.gateway.send(req)
        if not resp.content.strip():
            raise AnalysisError(f"empty analysis response from {resp.provider.value}")

        fields = self._parse(resp.content)
        model_cls = fields.pop("classification")
        analysis = FailureAnalysis(
            id=f"analysis-{event.run_id}-{int(self.clock())}",
            run_id=event.run_id,
            classification=enhance_with_patterns(model_cls, pre),
            provider=resp.provider.value,
            processing_time_s=round(time.monotonic() - started, 3),
            **fields,
        )
        logger.info(
            "analysis %s type=%s confidence=%.2f provider=%s",
            analysis.id,
            analysis.classification.type.value,
            analysis.classification.confidence,
            analysis.provider,
        )
        return analysis

    def _parse(self, content: str) -> Dict[str, Any]:
        parsed, _err = extract_json(content)
        if not isinstance(parsed, dict):
            return {
                "classification": unstructured_classification(content),
                "root_cause": "Analysis provided in description field",
                "description": content,
            }
        patterns: List[ErrorPattern] = []
        for p in parsed.get("error_patterns") or []:
            if isinstance(p, dict) and p.get("pattern"):
                patterns.append(
                    ErrorPattern(
                        pattern=str(p.get("pattern")),
                        description=str(p.get("description") or ""),
                        confidence=_float(p.get("confidence"), 0.5),
                        location=str(p.get("location") or ""),
                    )
                )
        cls = classification_from(parsed.get("classification")) or FailureClassification(
            type=FailureType.code,
            severity=Severity.medium,
            category=FailureCategory.systematic,
            confidence=0.0,
        )
        return {
            "classification": cls,
            "root_cause": str(parsed.get("root_cause") or "unknown"),
            "description": str(parsed.get("description") or ""),
            "affected_files": _str_list(parsed.get("affected_files")),
            "error_patterns": patterns,
        }
