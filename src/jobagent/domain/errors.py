# src/jobagent/domain/errors.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class JobAgentError(Exception):
    """
    Base domain error.

    The registry API maps these to HTTP responses consistently, and the agent's
    HTTP client maps error responses back to them by `code`.
    """
    message: str
    code: str = "JOB_AGENT_ERROR"
    details: Optional[dict[str, Any]] = None

    def __str__(self) -> str:
        return self.message


# -------------------------
# Registry / request errors
# -------------------------

@dataclass
class ValidationError(JobAgentError):
    code: str = "VALIDATION_ERROR"


@dataclass
class NotFoundError(JobAgentError):
    code: str = "NOT_FOUND"


@dataclass
class ConflictError(JobAgentError):
    code: str = "CONFLICT"


@dataclass
class AlreadyClaimedError(ConflictError):
    code: str = "ALREADY_CLAIMED"


# -------------------------
# Status transition errors
# -------------------------

@dataclass
class IllegalTransitionError(JobAgentError):
    code: str = "ILLEGAL_TRANSITION"


@dataclass
class StaleStatusError(JobAgentError):
    """
    The remote current status no longer matches what the caller expected.

    Another writer advanced the job. Never retried: the local view has diverged.
    `details["current"]` carries the remote status when known.
    """
    code: str = "STALE_STATUS"

    @property
    def current_status(self) -> Optional[str]:
        return (self.details or {}).get("current")


@dataclass
class TransportError(JobAgentError):
    """Network or service failure talking to the registry. Retryable by callers."""
    code: str = "TRANSPORT_ERROR"


# -------------------------
# Agent-internal errors
# -------------------------

@dataclass
class InvariantViolationError(JobAgentError):
    code: str = "INVARIANT_VIOLATION"


@dataclass
class LaunchError(JobAgentError):
    code: str = "LAUNCH_ERROR"


@dataclass
class ExecutionInterruptedError(JobAgentError):
    code: str = "EXECUTION_INTERRUPTED"


@dataclass
class JobSpecificationError(JobAgentError):
    code: str = "JOB_SPECIFICATION_ERROR"


@dataclass
class TransitionTableError(JobAgentError):
    code: str = "TRANSITION_TABLE_ERROR"


@dataclass
class AgentConfigurationError(JobAgentError):
    code: str = "AGENT_CONFIGURATION_ERROR"


@dataclass
class JobDirectoryError(JobAgentError):
    code: str = "JOB_DIRECTORY_ERROR"


_ERRORS_BY_CODE: dict[str, type[JobAgentError]] = {
    cls.code: cls
    for cls in (
        ValidationError,
        NotFoundError,
        ConflictError,
        AlreadyClaimedError,
        IllegalTransitionError,
        StaleStatusError,
        TransportError,
    )
}


def error_from_code(code: str, message: str, details: Optional[dict[str, Any]] = None) -> JobAgentError:
    """
    Rebuilds a domain error from an ErrorResponse payload.
    Unknown codes fall back to the base error.
    """
    cls = _ERRORS_BY_CODE.get(code)
    if cls is None:
        return JobAgentError(message, code=code, details=details)
    return cls(message, details=details)
