from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from pipefix.models import FailureCategory, FailureClassification, FailureEvent, FailureType, Severity

logger = logging.getLogger(__name__)

# Per-rule scan window: the tail of the raw logs and of the joined error lines.
DEFAULT_MAX_SCAN_CHARS = 64 * 1024


@dataclass(frozen=True)
class ClassificationRule:
    name: str
    pattern: str
    type: FailureType
    severity: Severity
    category: FailureCategory
    confidence: float
    tags: Tuple[str, ...] = ()

    def compiled(self) -> "re.Pattern[str]":
        return re.compile(self.pattern, re.IGNORECASE | re.MULTILINE)


# Ordered most specific first; the first match wins.
DEFAULT_RULES: Tuple[ClassificationRule, ...] = (
    ClassificationRule(
        "security_vulnerability", r"security vulnerabilit(y|ies)",
        FailureType.security, Severity.critical, FailureCategory.systematic, 0.9, ("security", "vulnerability"),
    ),
    ClassificationRule(
        "config_file_not_found", r"config(uration)? file not found",
        FailureType.configuration, Severity.medium, FailureCategory.systematic, 0.8, ("configuration", "file", "missing"),
    ),
    ClassificationRule(
        "invalid_configuration", r"invalid configuration",
        FailureType.configuration, Severity.medium, FailureCategory.systematic, 0.8, ("configuration", "validation"),
    ),
    ClassificationRule(
        "insecure_dependency", r"insecure dependency",
        FailureType.security, Severity.high, FailureCategory.systematic, 0.8, ("security", "dependency"),
    ),
    ClassificationRule(
        "service_unavailable", r"service unavailable|\b503\b",
        FailureType.infrastructure, Severity.high, FailureCategory.environmental, 0.8, ("service", "availability", "infrastructure"),
    ),
    ClassificationRule(
        "connection_timeout", r"connection (timeout|timed out)",
        FailureType.infrastructure, Severity.high, FailureCategory.environmental, 0.8, ("network", "timeout", "infrastructure"),
    ),
    ClassificationRule(
        "memory_error", r"out of memory|\bOOMKilled\b|MemoryError",
        FailureType.infrastructure, Severity.critical, FailureCategory.environmental, 0.9, ("memory", "resource", "performance"),
    ),
    ClassificationRule(
        "docker_build_failure", r"docker build",
        FailureType.infrastructure, Severity.high, FailureCategory.environmental, 0.8, ("docker", "containerization", "build"),
    ),
    ClassificationRule(
        "npm_install_failure", r"npm (install|ERR!)",
        FailureType.dependency, Severity.high, FailureCategory.systematic, 0.8, ("npm", "dependency", "nodejs"),
    ),
    ClassificationRule(
        "python_dependency_failure", r"No matching distribution found|ModuleNotFoundError|ResolutionImpossible",
        FailureType.dependency, Severity.high, FailureCategory.systematic, 0.8, ("python", "dependency"),
    ),
    ClassificationRule(
        "build_failure", r"build failed|compilation (failed|error)",
        FailureType.build, Severity.high, FailureCategory.systematic, 0.8, ("build", "compilation"),
    ),
    ClassificationRule(
        "go_build_failure", r"go build",
        FailureType.build, Severity.high, FailureCategory.systematic, 0.8, ("go", "build", "compilation"),
    ),
    ClassificationRule(
        "test_failure", r"tests? failed|^--- FAIL|FAILED .+::",
        FailureType.test, Severity.medium, FailureCategory.systematic, 0.8, ("test", "failure"),
    ),
    ClassificationRule(
        "test_timeout", r"timeout|timed out",
        FailureType.test, Severity.medium, FailureCategory.transient, 0.7, ("timeout", "test", "performance"),
    ),
)


def _tail(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[-limit:]


@dataclass(frozen=True)
class FailureClassifier:
    """
    Deterministic, rule-based first pass over a failure event.

    Pure function of the event's logs: the same event always yields an identical classification.
    """

    rules: Tuple[ClassificationRule, ...] = DEFAULT_RULES
    max_scan_chars: int = DEFAULT_MAX_SCAN_CHARS
    _compiled: List["re.Pattern[str]"] = field(default_factory=list, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_compiled", [r.compiled() for r in self.rules])

    def scan_windows(self, event: FailureEvent) -> List[str]:
        if event.logs is None:
            return []
        limit = max(1, int(self.max_scan_chars))
        errors = _tail("\n".join(event.logs.error_lines), limit)
        raw = _tail(event.logs.raw_logs or "", limit)
        return [w for w in (errors, raw) if w]

    def match(self, windows: Iterable[str]) -> Optional[ClassificationRule]:
        texts = list(windows)
        for rule, rx in zip(self.rules, self._compiled):
            for text in texts:
                if rx.search(text) is not None:
                    return rule
        return None

    def classify(self, event: FailureEvent) -> FailureClassification:
        rule = self.match(self.scan_windows(event))
        if rule is None:
            return FailureClassification(
                type=FailureType.infrastructure,
                severity=Severity.medium,
                category=FailureCategory.systematic,
                confidence=0.3,
                tags=["unclassified"],
            )
        logger.debug("run %s matched rule %s", event.run_id, rule.name)
        return FailureClassification(
            type=rule.type,
            severity=rule.severity,
            category=rule.category,
            confidence=max(0.0, min(1.0, rule.confidence)),
            tags=list(rule.tags),
        )
