from __future__ import annotations

from typing import Type


class PipefixError(Exception):
    """Base class for every error raised by pipefix."""

    retryable: bool = False


class ConfigurationError(PipefixError):
    """A required setting or dependency is missing or invalid. Fatal at startup."""


class AuthenticationError(PipefixError):
    """A credential was rejected. Never retried."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UpstreamError(PipefixError):
    """An outbound call (source control, sandbox provisioning) failed."""

    def __init__(self, message: str, *, retryable: bool = False, status_code: int | None = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class AnalysisError(UpstreamError):
    """The reasoning gateway was unavailable or returned something unparsable."""


class ValidationError(PipefixError):
    """A sandbox stage could not be executed for one candidate."""


class SandboxError(ValidationError):
    """The disposable environment was unreachable or a command could not be launched."""

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class NoValidFixError(PipefixError):
    """Every candidate was exhausted without a valid result."""


class SubmissionError(PipefixError):
    """The review-submission collaborator failed."""


class CircuitOpenError(PipefixError):
    """The dependency's circuit breaker is open; the call was not attempted."""

    def __init__(self, name: str) -> None:
        super().__init__(f"circuit_open: {name}")
        self.name = name


class RateLimitExceededError(PipefixError):
    """The dependency's token bucket is empty; the call was not attempted."""

    def __init__(self, name: str) -> None:
        super().__init__(f"rate_limited: {name}")
        self.name = name


def is_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", False))


def error_for_status(
    status_code: int,
    body: str,
    *,
    source: str,
    error_cls: Type[UpstreamError] = UpstreamError,
) -> PipefixError:
    """
    Map an HTTP failure status to the taxonomy:
    401/403 -> AuthenticationError, >=500 and 429 -> retryable, other 4xx -> not retryable.
    """
    snippet = (body or "")[:1500]
    if status_code in (401, 403):
        return AuthenticationError(f"{source}_http_{status_code}: {snippet}", status_code=status_code)
    retryable = status_code >= 500 or status_code == 429
    return error_cls(f"{source}_http_{status_code}: {snippet}", retryable=retryable, status_code=status_code)
