# src/jobagent/agent/context.py
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from jobagent.domain.errors import InvariantViolationError
from jobagent.domain.models import JobSpecification, ResolvedJobSpecification
from jobagent.domain.states import JobStatus

if TYPE_CHECKING:
    from jobagent.config import Settings

    from .process import ProcessHandle


@dataclass
class ExecutionContext:
    """
    State of one job run, owned by the Driver and passed to every state action.

    Write-once rules are enforced here rather than left to the actions:
    - the claimed job id is set once
    - a terminal current status never changes again
    - the final status is set once, must be terminal, and equals the current status
    """
    requested_job_id: str

    settings: Optional[Settings] = None
    job_specification: Optional[JobSpecification] = None
    resolved_specification: Optional[ResolvedJobSpecification] = None
    job_directory: Optional[Path] = None
    process_handle: Optional[ProcessHandle] = None
    last_error: Optional[BaseException] = None

    _claimed_job_id: Optional[str] = field(default=None, init=False, repr=False)
    _current_status: Optional[JobStatus] = field(default=None, init=False, repr=False)
    _final_status: Optional[JobStatus] = field(default=None, init=False, repr=False)

    @property
    def claimed_job_id(self) -> Optional[str]:
        return self._claimed_job_id

    @claimed_job_id.setter
    def claimed_job_id(self, job_id: str) -> None:
        if self._claimed_job_id is not None and self._claimed_job_id != job_id:
            raise InvariantViolationError(
                f"Claimed job id already set to {self._claimed_job_id}",
                details={"claimed": self._claimed_job_id, "attempted": job_id},
            )
        self._claimed_job_id = job_id

    @property
    def current_status(self) -> Optional[JobStatus]:
        return self._current_status

    @current_status.setter
    def current_status(self, status: JobStatus) -> None:
        current = self._current_status
        if current is not None and current.is_finished and status != current:
            raise InvariantViolationError(
                f"Current status is {current} and can no longer change",
                details={"current": current.value, "attempted": status.value},
            )
        self._current_status = status

    @property
    def final_status(self) -> Optional[JobStatus]:
        return self._final_status

    @final_status.setter
    def final_status(self, status: JobStatus) -> None:
        if self._final_status is not None:
            raise InvariantViolationError(
                f"Final status already set to {self._final_status}",
                details={"final": self._final_status.value, "attempted": status.value},
            )
        if not status.is_terminal:
            raise InvariantViolationError(
                f"Final status must be terminal, got {status}",
                details={"attempted": status.value},
            )
        if status != self._current_status:
            raise InvariantViolationError(
                f"Final status {status} differs from current status {self._current_status}",
                details={"attempted": status.value},
            )
        self._final_status = status

    def record_error(self, error: BaseException) -> None:
        # First error wins: later failures are usually consequences of it.
        if self.last_error is None:
            self.last_error = error
