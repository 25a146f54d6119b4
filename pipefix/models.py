from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class FailureType(str, Enum):
    infrastructure = "infrastructure"
    code = "code"
    test = "test"
    dependency = "dependency"
    build = "build"
    deployment = "deployment"
    configuration = "configuration"
    security = "security"

    @property
    def display_name(self) -> str:
        return f"{self.value.capitalize()}Failure"


class Severity(str, Enum):
    critical = "critical"
    high = "high"
    medium = "medium"
    low = "low"


class FailureCategory(str, Enum):
    transient = "transient"
    systematic = "systematic"
    environmental = "environmental"
    flaky = "flaky"


class RunLogs(BaseModel):
    model_config = ConfigDict(frozen=True)

    raw_logs: str = ""
    job_logs: Dict[str, str] = Field(default_factory=dict)
    error_lines: List[str] = Field(default_factory=list)


class FailureEvent(BaseModel):
    """
    One failing CI run as reported by the source-control feed.
    Read-only to the pipeline; logs may be attached later via `with_logs`.
    """

    model_config = ConfigDict(frozen=True)

    run_id: str = Field(..., description="Stable id used for de-dupe.")
    workflow_name: str = ""
    trigger: str = Field(default="push", description="push, pull_request, workflow_dispatch, ...")
    branch: str = "main"
    commit_sha: str = ""
    created_at: datetime = Field(default_factory=utc_now)
    url: Optional[str] = None
    logs: Optional[RunLogs] = None

    def with_logs(self, logs: RunLogs) -> "FailureEvent":
        return self.model_copy(update={"logs": logs})


def _clamp_unit(v: float) -> float:
    return max(0.0, min(1.0, float(v)))


class FailureClassification(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: FailureType
    severity: Severity
    category: FailureCategory
    confidence: float = Field(ge=0.0, le=1.0)
    # Semantically a set; kept sorted so serialization is stable.
    tags: List[str] = Field(default_factory=list)

    @field_validator("tags")
    @classmethod
    def _sorted_unique(cls, v: List[str]) -> List[str]:
        return sorted(set(v))


class ErrorPattern(BaseModel):
    model_config = ConfigDict(frozen=True)

    pattern: str
    description: str = ""
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    location: str = ""


class FailureAnalysis(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    run_id: str
    classification: FailureClassification
    root_cause: str
    description: str = ""
    affected_files: List[str] = Field(default_factory=list)
    error_patterns: List[ErrorPattern] = Field(default_factory=list)
    provider: str = "unknown"
    created_at: datetime = Field(default_factory=utc_now)
    processing_time_s: float = 0.0


class FixType(str, Enum):
    code = "code"
    configuration = "configuration"
    dependency = "dependency"
    infrastructure = "infrastructure"
    workflow = "workflow"
    test = "test"
    security = "security"

    @property
    def requires_changes(self) -> bool:
        return self is not FixType.infrastructure


class ChangeOperation(str, Enum):
    add = "add"
    modify = "modify"
    delete = "delete"


class CodeChange(BaseModel):
    file_path: str
    operation: ChangeOperation = ChangeOperation.modify
    old_content: Optional[str] = None
    new_content: Optional[str] = None
    explanation: str = ""


class ProposedFix(BaseModel):
    id: str
    type: FixType = FixType.code
    description: str = ""
    rationale: str = ""
    changes: List[CodeChange] = Field(default_factory=list)
    commands: List[str] = Field(default_factory=list)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    risks: List[str] = Field(default_factory=list)
    benefits: List[str] = Field(default_factory=list)

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v: Any) -> float:
        return _clamp_unit(v)


class ValidationResult(BaseModel):
    success: bool
    total_tests: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    coverage_percent: float = Field(default=0.0, ge=0.0, le=100.0)
    duration_s: float = 0.0
    raw_output: str = ""
    framework: Optional[str] = None
    # Last stage that ran: build|lint|test|coverage
    stage: Optional[str] = None
    lint_passed: Optional[bool] = None


class FixValidationResult(BaseModel):
    fix: ProposedFix
    validation: ValidationResult
    valid: bool

    @classmethod
    def evaluate(cls, fix: ProposedFix, validation: ValidationResult, *, min_coverage: float) -> "FixValidationResult":
        valid = bool(validation.success) and validation.coverage_percent >= float(min_coverage)
        return cls(fix=fix, validation=validation, valid=valid)


class CandidateAttempt(BaseModel):
    fix: ProposedFix
    branch: Optional[str] = None
    result: Optional[FixValidationResult] = None
    error: Optional[str] = None


class SubmissionResult(BaseModel):
    mode: Literal["mock", "real", "local"]
    number: int
    title: str
    url: str
    branch: str


class PipelineState(str, Enum):
    idle = "idle"
    detected = "detected"
    classifying = "classifying"
    analyzing = "analyzing"
    synthesizing = "synthesizing"
    validating = "validating"
    selecting = "selecting"
    submitting = "submitting"
    succeeded = "succeeded"
    failed = "failed"

    @property
    def terminal(self) -> bool:
        return self in (PipelineState.succeeded, PipelineState.failed)


class FailureReason(str, Enum):
    no_valid_fix = "no_valid_fix"
    submission_error = "submission_error"
    upstream_error = "upstream_error"


class StateTransition(BaseModel):
    state: PipelineState
    at: datetime = Field(default_factory=utc_now)


class AutoFixResult(BaseModel):
    """
    Terminal record of one autofix attempt, persisted for audit and metrics.
    """

    id: str
    run_id: str
    state: PipelineState = PipelineState.idle
    reason: Optional[FailureReason] = None
    detail: Optional[str] = None

    classification: Optional[FailureClassification] = None
    analysis: Optional[FailureAnalysis] = None
    candidates: List[CandidateAttempt] = Field(default_factory=list)
    selected: Optional[FixValidationResult] = None
    submission: Optional[SubmissionResult] = None

    transitions: List[StateTransition] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    duration_s: float = 0.0
    resubmission: bool = False

    @property
    def success(self) -> bool:
        return self.state is PipelineState.succeeded


class OperationalMetrics(BaseModel):
    total_runs: int = 0
    succeeded: int = 0
    failed: int = 0
    failures_by_reason: Dict[str, int] = Field(default_factory=dict)
    average_duration_s: float = 0.0
    runs_by_failure_type: Dict[str, int] = Field(default_factory=dict)
    runs_by_provider: Dict[str, int] = Field(default_factory=dict)
    in_flight: int = 0
    admitted_runs: int = 0
