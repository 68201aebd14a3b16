# src/jobagent/domain/states.py
from __future__ import annotations

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Job statuses stored by the registry and tracked by the agent.

    Note:
      - A freshly submitted job has no status yet; claiming it sets CLAIMED.
      - INVALID is written by the registry only (a job that can never run).

    Lifecycle driven by the agent:
      CLAIMED -> INIT -> RESOLVED -> CONFIGURED -> READY -> RUNNING
      RUNNING -> SUCCEEDED | FAILED | KILLED
    Any non-final status may also move to FAILED or KILLED.
    """

    CLAIMED = "CLAIMED"
    INIT = "INIT"
    RESOLVED = "RESOLVED"
    CONFIGURED = "CONFIGURED"
    READY = "READY"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    KILLED = "KILLED"
    INVALID = "INVALID"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_finished(self) -> bool:
        # Terminal, or a dead end no transition leaves from.
        return not VALID_TRANSITIONS[self]

    def can_transition_to(self, new_status: JobStatus) -> bool:
        return new_status in VALID_TRANSITIONS[self]


TERMINAL_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.KILLED}
)

VALID_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.CLAIMED: frozenset({JobStatus.INIT, JobStatus.FAILED, JobStatus.KILLED, JobStatus.INVALID}),
    JobStatus.INIT: frozenset({JobStatus.RESOLVED, JobStatus.FAILED, JobStatus.KILLED, JobStatus.INVALID}),
    JobStatus.RESOLVED: frozenset({JobStatus.CONFIGURED, JobStatus.FAILED, JobStatus.KILLED}),
    JobStatus.CONFIGURED: frozenset({JobStatus.READY, JobStatus.FAILED, JobStatus.KILLED}),
    JobStatus.READY: frozenset({JobStatus.RUNNING, JobStatus.FAILED, JobStatus.KILLED}),
    JobStatus.RUNNING: frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.KILLED}),
    JobStatus.SUCCEEDED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.KILLED: frozenset(),
    JobStatus.INVALID: frozenset(),
}


# Observed by external consumers of the registry; do not reword.
JOB_FINISHED_SUCCESSFULLY = "job finished successfully"
JOB_FAILED = "job failed"
JOB_KILLED_BY_USER = "job killed by user"

_FINAL_STATUS_MESSAGES: dict[JobStatus, str] = {
    JobStatus.SUCCEEDED: JOB_FINISHED_SUCCESSFULLY,
    JobStatus.FAILED: JOB_FAILED,
    JobStatus.KILLED: JOB_KILLED_BY_USER,
}


def final_status_message(status: JobStatus) -> str:
    """
    Message reported alongside the status the job process finished with.

    Deliberately coarse: a process killed on timeout and one killed on request
    both report JOB_KILLED_BY_USER.
    """
    message = _FINAL_STATUS_MESSAGES.get(status)
    if message is None:
        return f"job process completed with final status {status.value}"
    return message
