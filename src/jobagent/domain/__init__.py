"""
Domain layer for jobagent.

- states: JobStatus enum, legal transitions, final status messages
- models: Pydantic models shared by the registry API and the agent
- errors: domain-level exceptions
"""

from .states import (
    JOB_FAILED,
    JOB_FINISHED_SUCCESSFULLY,
    JOB_KILLED_BY_USER,
    TERMINAL_STATUSES,
    VALID_TRANSITIONS,
    JobStatus,
    final_status_message,
)
from .models import (
    AgentMetadata,
    Application,
    Cluster,
    Command,
    ErrorResponse,
    JobListResponse,
    JobRequest,
    JobSpecification,
    JobView,
    ResolvedJobSpecification,
    StatusChange,
    StatusChangeView,
)
from .errors import (
    AlreadyClaimedError,
    ConflictError,
    ExecutionInterruptedError,
    IllegalTransitionError,
    InvariantViolationError,
    JobAgentError,
    JobSpecificationError,
    LaunchError,
    NotFoundError,
    StaleStatusError,
    TransitionTableError,
    AgentConfigurationError,
    JobDirectoryError,
    TransportError,
    ValidationError,
)

__all__ = [
    "JobStatus",
    "TERMINAL_STATUSES",
    "VALID_TRANSITIONS",
    "JOB_FINISHED_SUCCESSFULLY",
    "JOB_FAILED",
    "JOB_KILLED_BY_USER",
    "final_status_message",
    "AgentMetadata",
    "Application",
    "Cluster",
    "Command",
    "JobRequest",
    "JobSpecification",
    "ResolvedJobSpecification",
    "StatusChange",
    "StatusChangeView",
    "JobView",
    "JobListResponse",
    "ErrorResponse",
    "JobAgentError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "AlreadyClaimedError",
    "IllegalTransitionError",
    "StaleStatusError",
    "TransportError",
    "InvariantViolationError",
    "LaunchError",
    "ExecutionInterruptedError",
    "JobSpecificationError",
    "TransitionTableError",
    "AgentConfigurationError",
    "JobDirectoryError",
]
