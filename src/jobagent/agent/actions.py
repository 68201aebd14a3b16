# src/jobagent/agent/actions.py
"""
One state action per lifecycle phase.

Every action runs the same way (see StateAction.run):
  pre-action validation -> execute -> post-action validation -> one Event
Failures come back as an ActionResult carrying the error; actions never
decide on ERROR handling themselves, the Driver does.
"""
from __future__ import annotations

import logging
import os
import shlex
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import ClassVar, Optional, TypeVar

from jobagent.config import Settings
from jobagent.domain.errors import (
    AgentConfigurationError,
    IllegalTransitionError,
    InvariantViolationError,
    JobAgentError,
    JobDirectoryError,
    JobSpecificationError,
    StaleStatusError,
    TransportError,
)
from jobagent.domain.models import AgentMetadata
from jobagent.domain.states import JobStatus, final_status_message
from jobagent.logging import get_logger

from .client import JobRegistry, ResourceCatalog, StatusTransitionClient
from .context import ExecutionContext
from .fsm import Event, State
from .process import ProcessSupervisor
from .resolver import job_directory_for, resolve_job_specification

_LOG = get_logger(__name__)

T = TypeVar("T")

ENV_FILE_NAME = "job.env"
SPEC_FILE_NAME = "spec.json"


@dataclass(frozen=True)
class ActionResult:
    """
    Outcome of one phase: the event to feed the transition table, and the
    typed failure when the phase did not complete.
    """
    event: Event
    error: Optional[JobAgentError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, event: Event) -> ActionResult:
        return cls(event=event)

    @classmethod
    def failure(cls, error: JobAgentError) -> ActionResult:
        return cls(event=Event.ERROR, error=error)


class StateAction(ABC):
    """
    Base class for phase handlers.

    Validation failures raise InvariantViolationError: they mean the Driver and
    transition table disagree with the context, never that the job failed.
    """

    state: ClassVar[State]

    def run(self, ctx: ExecutionContext) -> ActionResult:
        _LOG.info("Entering %s", self.state)
        try:
            self.pre_action_validation(ctx)
            event = self.execute(ctx)
            self.post_action_validation(ctx)
        except JobAgentError as e:
            _LOG.error("%s failed: [%s] %s", self.state, e.code, e)
            ctx.record_error(e)
            return ActionResult.failure(e)
        _LOG.debug("%s emitted %s", self.state, event)
        return ActionResult.success(event)

    @abstractmethod
    def pre_action_validation(self, ctx: ExecutionContext) -> None:
        ...

    @abstractmethod
    def execute(self, ctx: ExecutionContext) -> Event:
        ...

    @abstractmethod
    def post_action_validation(self, ctx: ExecutionContext) -> None:
        ...

    # -------------------------
    # Assertions
    # -------------------------

    def _assert_present(self, value: Optional[T], name: str) -> T:
        if value is None:
            raise InvariantViolationError(
                f"{self.state}: {name} is not set",
                details={"state": self.state.value, "field": name},
            )
        return value

    def _assert_claimed_job_id(self, ctx: ExecutionContext) -> str:
        return self._assert_present(ctx.claimed_job_id, "claimed job id")

    def _assert_current_status(self, ctx: ExecutionContext, expected: JobStatus) -> None:
        if ctx.current_status != expected:
            raise InvariantViolationError(
                f"{self.state}: expected current status {expected}, found {ctx.current_status}",
                details={
                    "state": self.state.value,
                    "expected": expected.value,
                    "current": ctx.current_status.value if ctx.current_status else None,
                },
            )

    def _assert_final_status_absent(self, ctx: ExecutionContext) -> None:
        if ctx.final_status is not None:
            raise InvariantViolationError(
                f"{self.state}: final status already set to {ctx.final_status}",
                details={"state": self.state.value, "final": ctx.final_status.value},
            )

    def _assert_final_status_present(self, ctx: ExecutionContext) -> JobStatus:
        final = ctx.final_status
        if final is None or not final.is_terminal or final != ctx.current_status:
            details = {"state": self.state.value, "final": final.value if final else None}
            if isinstance(ctx.last_error, JobAgentError):
                details["cause"] = ctx.last_error.code
            raise InvariantViolationError(
                f"{self.state}: no valid final status recorded",
                details=details,
            )
        return final


class _TransitioningAction(StateAction):
    """An action that moves the job to a new status through the StatusTransitionClient."""

    def __init__(self, transitions: StatusTransitionClient) -> None:
        self._transitions = transitions

    def _change_status(self, ctx: ExecutionContext, new_status: JobStatus, message: str) -> None:
        job_id = self._assert_claimed_job_id(ctx)
        current = self._assert_present(ctx.current_status, "current status")
        self._transitions.change_status(job_id, current, new_status, message)
        ctx.current_status = new_status


class ClaimJobAction(StateAction):
    state = State.CLAIM_JOB

    def __init__(self, registry: JobRegistry, agent: AgentMetadata) -> None:
        self._registry = registry
        self._agent = agent

    def pre_action_validation(self, ctx: ExecutionContext) -> None:
        if ctx.claimed_job_id is not None or ctx.current_status is not None:
            raise InvariantViolationError(
                f"{self.state}: job {ctx.claimed_job_id} already claimed",
                details={"state": self.state.value},
            )

    def execute(self, ctx: ExecutionContext) -> Event:
        job_id = ctx.requested_job_id
        _LOG.info("Claiming job %s as %s (pid %d)", job_id, self._agent.hostname, self._agent.pid)
        spec = self._registry.claim(job_id, self._agent)
        ctx.claimed_job_id = job_id
        ctx.current_status = JobStatus.CLAIMED
        ctx.job_specification = spec
        return Event.CLAIM_JOB_COMPLETE

    def post_action_validation(self, ctx: ExecutionContext) -> None:
        job_id = self._assert_claimed_job_id(ctx)
        spec = self._assert_present(ctx.job_specification, "job specification")
        if spec.id != job_id:
            raise InvariantViolationError(
                f"{self.state}: claimed {job_id} but received specification for {spec.id}",
                details={"claimed": job_id, "specification": spec.id},
            )
        self._assert_current_status(ctx, JobStatus.CLAIMED)


class ConfigureAgentAction(_TransitioningAction):
    state = State.CONFIGURE_AGENT

    def __init__(self, transitions: StatusTransitionClient, settings: Settings) -> None:
        super().__init__(transitions)
        self._settings = settings

    def pre_action_validation(self, ctx: ExecutionContext) -> None:
        self._assert_claimed_job_id(ctx)
        self._assert_current_status(ctx, JobStatus.CLAIMED)
        self._assert_final_status_absent(ctx)

    def execute(self, ctx: ExecutionContext) -> Event:
        jobs_dir = self._settings.jobs_dir
        try:
            jobs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise AgentConfigurationError(
                f"Cannot create jobs directory {jobs_dir}: {e}",
                details={"jobs_dir": str(jobs_dir)},
            ) from e
        if not os.access(jobs_dir, os.W_OK | os.X_OK):
            raise AgentConfigurationError(
                f"Jobs directory {jobs_dir} is not writable",
                details={"jobs_dir": str(jobs_dir)},
            )

        ctx.settings = self._settings
        self._change_status(ctx, JobStatus.INIT, "agent configured")
        return Event.CONFIGURE_AGENT_COMPLETE

    def post_action_validation(self, ctx: ExecutionContext) -> None:
        self._assert_present(ctx.settings, "agent settings")
        self._assert_current_status(ctx, JobStatus.INIT)


class ResolveJobSpecificationAction(_TransitioningAction):
    state = State.RESOLVE_JOB_SPECIFICATION

    def __init__(
        self,
        transitions: StatusTransitionClient,
        registry: JobRegistry,
        catalog: ResourceCatalog,
    ) -> None:
        super().__init__(transitions)
        self._registry = registry
        self._catalog = catalog

    def pre_action_validation(self, ctx: ExecutionContext) -> None:
        self._assert_claimed_job_id(ctx)
        self._assert_present(ctx.settings, "agent settings")
        self._assert_current_status(ctx, JobStatus.INIT)
        self._assert_final_status_absent(ctx)

    def execute(self, ctx: ExecutionContext) -> Event:
        job_id = self._assert_claimed_job_id(ctx)
        settings = self._assert_present(ctx.settings, "agent settings")

        spec = self._registry.get_job_specification(job_id)
        try:
            resolved = resolve_job_specification(spec, self._catalog, settings.jobs_dir)
        except JobSpecificationError as e:
            # The job itself can never run; say so before the agent gives up.
            self._change_status(ctx, JobStatus.INVALID, f"job specification cannot be resolved: {e}")
            raise

        ctx.job_specification = spec
        ctx.resolved_specification = resolved
        self._change_status(ctx, JobStatus.RESOLVED, "job specification resolved")
        return Event.RESOLVE_JOB_SPECIFICATION_COMPLETE

    def post_action_validation(self, ctx: ExecutionContext) -> None:
        self._assert_present(ctx.resolved_specification, "resolved specification")
        self._assert_current_status(ctx, JobStatus.RESOLVED)


class CreateJobDirectoryAction(_TransitioningAction):
    state = State.CREATE_JOB_DIRECTORY

    def pre_action_validation(self, ctx: ExecutionContext) -> None:
        self._assert_claimed_job_id(ctx)
        self._assert_present(ctx.settings, "agent settings")
        self._assert_present(ctx.resolved_specification, "resolved specification")
        self._assert_current_status(ctx, JobStatus.RESOLVED)
        self._assert_final_status_absent(ctx)

    def execute(self, ctx: ExecutionContext) -> Event:
        job_id = self._assert_claimed_job_id(ctx)
        settings = self._assert_present(ctx.settings, "agent settings")
        resolved = self._assert_present(ctx.resolved_specification, "resolved specification")

        job_dir = job_directory_for(settings.jobs_dir, job_id)
        try:
            job_dir.mkdir(parents=False, exist_ok=False)
            for app_id in resolved.application_ids:
                (job_dir / "applications" / app_id).mkdir(parents=True)
            (job_dir / "command" / resolved.command_id).mkdir(parents=True)
            (job_dir / "cluster" / resolved.cluster_id).mkdir(parents=True)
            (job_dir / "logs").mkdir()
        except FileExistsError as e:
            raise JobDirectoryError(
                f"Job directory {job_dir} already exists",
                details={"job_dir": str(job_dir)},
            ) from e
        except OSError as e:
            raise JobDirectoryError(
                f"Cannot create job directory {job_dir}: {e}",
                details={"job_dir": str(job_dir)},
            ) from e

        ctx.job_directory = job_dir
        _LOG.info("Created job directory %s", job_dir)
        self._change_status(ctx, JobStatus.CONFIGURED, "job directory created")
        return Event.CREATE_JOB_DIRECTORY_COMPLETE

    def post_action_validation(self, ctx: ExecutionContext) -> None:
        job_dir = self._assert_present(ctx.job_directory, "job directory")
        if not job_dir.is_dir():
            raise InvariantViolationError(
                f"{self.state}: job directory {job_dir} is missing",
                details={"job_dir": str(job_dir)},
            )
        self._assert_current_status(ctx, JobStatus.CONFIGURED)


class SetUpJobAction(_TransitioningAction):
    state = State.SETUP_JOB

    def pre_action_validation(self, ctx: ExecutionContext) -> None:
        self._assert_claimed_job_id(ctx)
        self._assert_present(ctx.job_directory, "job directory")
        self._assert_present(ctx.resolved_specification, "resolved specification")
        self._assert_current_status(ctx, JobStatus.CONFIGURED)
        self._assert_final_status_absent(ctx)

    def execute(self, ctx: ExecutionContext) -> Event:
        job_dir = self._assert_present(ctx.job_directory, "job directory")
        resolved = self._assert_present(ctx.resolved_specification, "resolved specification")

        env_lines = [
            f"export {name}={shlex.quote(value)}"
            for name, value in sorted(resolved.environment.items())
        ]
        try:
            (job_dir / ENV_FILE_NAME).write_text("\n".join(env_lines) + "\n", encoding="utf-8")
            (job_dir / SPEC_FILE_NAME).write_text(resolved.model_dump_json(indent=2), encoding="utf-8")
        except OSError as e:
            raise JobDirectoryError(
                f"Cannot write job files in {job_dir}: {e}",
                details={"job_dir": str(job_dir)},
            ) from e

        self._change_status(ctx, JobStatus.READY, "job set up")
        return Event.SETUP_JOB_COMPLETE

    def post_action_validation(self, ctx: ExecutionContext) -> None:
        job_dir = self._assert_present(ctx.job_directory, "job directory")
        for name in (ENV_FILE_NAME, SPEC_FILE_NAME):
            if not (job_dir / name).is_file():
                raise InvariantViolationError(
                    f"{self.state}: {name} was not written",
                    details={"file": str(job_dir / name)},
                )
        self._assert_current_status(ctx, JobStatus.READY)


class LaunchJobAction(_TransitioningAction):
    state = State.LAUNCH_JOB

    def __init__(self, transitions: StatusTransitionClient, supervisor: ProcessSupervisor) -> None:
        super().__init__(transitions)
        self._supervisor = supervisor

    def pre_action_validation(self, ctx: ExecutionContext) -> None:
        self._assert_claimed_job_id(ctx)
        self._assert_present(ctx.job_directory, "job directory")
        self._assert_present(ctx.resolved_specification, "resolved specification")
        self._assert_current_status(ctx, JobStatus.READY)
        self._assert_final_status_absent(ctx)
        if ctx.process_handle is not None:
            raise InvariantViolationError(
                f"{self.state}: job process already launched",
                details={"pid": ctx.process_handle.pid},
            )

    def execute(self, ctx: ExecutionContext) -> Event:
        job_dir = self._assert_present(ctx.job_directory, "job directory")
        resolved = self._assert_present(ctx.resolved_specification, "resolved specification")

        if self._supervisor.cancel_token.is_set():
            _LOG.info("Kill requested before launch; not starting the job process")
            self._change_status(ctx, JobStatus.KILLED, final_status_message(JobStatus.KILLED))
            ctx.final_status = JobStatus.KILLED
            return Event.LAUNCH_JOB_CANCELLED

        environment = {**os.environ, **resolved.environment}
        handle = self._supervisor.launch(
            resolved.command_line,
            environment,
            job_dir,
            timeout_s=resolved.timeout_s,
        )
        ctx.process_handle = handle
        self._change_status(ctx, JobStatus.RUNNING, f"job process launched (pid {handle.pid})")
        return Event.LAUNCH_JOB_COMPLETE

    def post_action_validation(self, ctx: ExecutionContext) -> None:
        if ctx.final_status is JobStatus.KILLED:
            if ctx.process_handle is not None:
                raise InvariantViolationError(
                    f"{self.state}: job process launched after a kill request",
                    details={"pid": ctx.process_handle.pid},
                )
            return
        self._assert_present(ctx.process_handle, "process handle")
        self._assert_current_status(ctx, JobStatus.RUNNING)


class MonitorJobAction(_TransitioningAction):
    """
    Waits for the job process and reports its final status.

    A failed status report leaves the final status unset, which post-action
    validation turns into an agent failure rather than a job failure.
    """

    state = State.MONITOR_JOB

    def __init__(self, transitions: StatusTransitionClient, supervisor: ProcessSupervisor) -> None:
        super().__init__(transitions)
        self._supervisor = supervisor

    def pre_action_validation(self, ctx: ExecutionContext) -> None:
        self._assert_claimed_job_id(ctx)
        self._assert_present(ctx.process_handle, "process handle")
        self._assert_current_status(ctx, JobStatus.RUNNING)
        self._assert_final_status_absent(ctx)

    def execute(self, ctx: ExecutionContext) -> Event:
        _LOG.info("Monitoring job...")
        final_status = self._supervisor.wait_for()
        _LOG.info("Job process completed with final status %s", final_status)

        message = final_status_message(final_status)
        try:
            self._change_status(ctx, final_status, message)
        except (StaleStatusError, TransportError, IllegalTransitionError) as e:
            _LOG.error("Failed to report final status %s: [%s] %s", final_status, e.code, e)
            ctx.record_error(e)
            return Event.MONITOR_JOB_COMPLETE

        ctx.final_status = final_status
        return Event.MONITOR_JOB_COMPLETE

    def post_action_validation(self, ctx: ExecutionContext) -> None:
        self._assert_final_status_present(ctx)


class CleanupJobAction(StateAction):
    state = State.CLEANUP_JOB

    def __init__(self, supervisor: ProcessSupervisor) -> None:
        self._supervisor = supervisor

    def pre_action_validation(self, ctx: ExecutionContext) -> None:
        self._assert_claimed_job_id(ctx)
        self._assert_final_status_present(ctx)

    def execute(self, ctx: ExecutionContext) -> Event:
        handle = self._supervisor.release()
        if handle is not None:
            _LOG.info("Released job process pid=%d (exit code %s)", handle.pid, handle.exit_code)
        ctx.process_handle = None

        settings = ctx.settings
        job_dir = ctx.job_directory
        if settings is not None and settings.cleanup_job_dir and job_dir is not None:
            try:
                shutil.rmtree(job_dir)
                _LOG.info("Deleted job directory %s", job_dir)
            except OSError:
                # The job outcome is already reported; a leftover directory is not worth failing for.
                _LOG.warning("Could not delete job directory %s", job_dir, exc_info=True)
        return Event.CLEANUP_JOB_COMPLETE

    def post_action_validation(self, ctx: ExecutionContext) -> None:
        if self._supervisor.handle is not None:
            raise InvariantViolationError(f"{self.state}: job process still tracked")


class ShutdownAction(StateAction):
    state = State.SHUTDOWN

    def pre_action_validation(self, ctx: ExecutionContext) -> None:
        self._assert_final_status_present(ctx)

    def execute(self, ctx: ExecutionContext) -> Event:
        _LOG.info("Job %s finished with status %s", ctx.claimed_job_id, ctx.final_status)
        for handler in logging.getLogger().handlers:
            handler.flush()
        return Event.SHUTDOWN_COMPLETE

    def post_action_validation(self, ctx: ExecutionContext) -> None:
        pass
