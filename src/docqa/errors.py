"""Exception taxonomy for service, planning and tool failures."""

from __future__ import annotations


class DocQAError(Exception):
    """Base exception for the document QA core."""


class ServiceError(DocQAError):
    """An external capability (LLM, vector search) failed."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientServiceError(ServiceError):
    """5xx-class or rate-limit failure; safe to retry."""


class PermanentServiceError(ServiceError):
    """4xx/auth failure; retrying will not help."""


class ServiceTimeoutError(TransientServiceError):
    """An external call exceeded its timeout."""


class PlanParseError(DocQAError):
    """Planner or reasoning output could not be decoded into a plan."""

    def __init__(self, message: str, *, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw


class ToolExecutionError(DocQAError):
    """Raised inside tool handlers; converted to a failed ToolResult by the registry."""


def classify_status(status_code: int | None) -> type[ServiceError]:
    """Map an HTTP status code to the matching service error class."""
    if status_code is None:
        return TransientServiceError
    if status_code == 429 or status_code >= 500:
        return TransientServiceError
    return PermanentServiceError


def describe_error(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__
