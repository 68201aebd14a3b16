# src/jobagent/agent/driver.py
from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from typing import Mapping, Optional

from jobagent import __version__
from jobagent.config import Settings
from jobagent.domain.errors import ExecutionInterruptedError, StaleStatusError, TransitionTableError
from jobagent.domain.models import AgentMetadata
from jobagent.domain.states import JobStatus
from jobagent.logging import get_logger

from .actions import (
    ClaimJobAction,
    CleanupJobAction,
    ConfigureAgentAction,
    CreateJobDirectoryAction,
    LaunchJobAction,
    MonitorJobAction,
    ResolveJobSpecificationAction,
    SetUpJobAction,
    ShutdownAction,
    StateAction,
)
from .client import JobRegistry, ResourceCatalog, StatusTransitionClient
from .context import ExecutionContext
from .fsm import INITIAL_STATE, Event, State, StateTransitionTable, default_transition_table
from .process import ProcessSupervisor

_LOG = get_logger(__name__)


@dataclass(frozen=True)
class RunResult:
    """
    What the Driver hands back once it reaches DONE or ERROR.
    """
    final_state: State
    current_status: Optional[JobStatus]
    final_status: Optional[JobStatus]
    error: Optional[BaseException] = None
    unhandled_transition: Optional[tuple[State, Event]] = None
    visited_states: tuple[State, ...] = field(default_factory=tuple)

    @property
    def done(self) -> bool:
        return self.final_state is State.DONE


class StateMachineDriver:
    """
    Runs one job's state machine to DONE or ERROR.

    Loop:
      state := CLAIM_JOB
      while state not in {DONE, ERROR}:
          event := actions[state].run(context)
          state := table[(state, event)]

    This loop is the only place failures become the ERROR state: action
    failures arrive as ActionResult errors, anything unexpected is caught
    around the dispatch, and an unconfigured (state, event) pair is recorded.
    On ERROR the job process is killed and, when it is still safe to do so,
    the job is reported FAILED once on a best-effort basis.
    """

    def __init__(
        self,
        context: ExecutionContext,
        actions: Mapping[State, StateAction],
        transitions: StateTransitionTable,
        status_client: StatusTransitionClient,
        *,
        supervisor: Optional[ProcessSupervisor] = None,
    ) -> None:
        missing = [s for s in State if not s.is_final and s not in actions]
        if missing:
            raise ValueError(f"No action bound to state(s): {', '.join(missing)}")

        self._context = context
        self._actions = dict(actions)
        self._transitions = transitions
        self._status_client = status_client
        self._supervisor = supervisor

        self._error: Optional[BaseException] = None
        self._unhandled_transition: Optional[tuple[State, Event]] = None
        self._visited: list[State] = []

    @property
    def context(self) -> ExecutionContext:
        return self._context

    def run(self) -> RunResult:
        state = INITIAL_STATE
        while not state.is_final:
            self._visited.append(state)
            event = self._dispatch(state)
            state = self._next_state(state, event)

        self._visited.append(state)
        if state is State.ERROR:
            self._handle_error()
        else:
            _LOG.info("Agent finished: job %s is %s", self._context.claimed_job_id, self._context.final_status)

        return RunResult(
            final_state=state,
            current_status=self._context.current_status,
            final_status=self._context.final_status,
            error=self._error,
            unhandled_transition=self._unhandled_transition,
            visited_states=tuple(self._visited),
        )

    def _dispatch(self, state: State) -> Event:
        action = self._actions[state]
        try:
            result = action.run(self._context)
        except KeyboardInterrupt as e:
            _LOG.error("Interrupted in %s", state)
            interrupted = ExecutionInterruptedError(
                f"Interrupted in {state}",
                details={"state": state.value},
            )
            interrupted.__cause__ = e
            self._fail(interrupted)
            return Event.ERROR
        except Exception as e:
            _LOG.exception("Unexpected error in %s", state)
            self._fail(e)
            return Event.ERROR

        if not result.ok and result.error is not None:
            self._fail(result.error)
        return result.event

    def _next_state(self, state: State, event: Event) -> State:
        try:
            return self._transitions.next_state(state, event)
        except TransitionTableError as e:
            _LOG.error("No transition for (%s, %s); aborting", state, event)
            self._unhandled_transition = (state, event)
            self._fail(e)
            return State.ERROR

    def _fail(self, error: BaseException) -> None:
        self._context.record_error(error)
        if self._error is None:
            self._error = error

    def _handle_error(self) -> None:
        ctx = self._context
        _LOG.error("Agent aborted with error: %r", self._error)

        if self._supervisor is not None:
            try:
                exit_code = self._supervisor.terminate()
            except Exception:
                _LOG.exception("Failed to kill the job process")
            else:
                if exit_code is not None:
                    _LOG.info("Job process terminated with code %d", exit_code)

        job_id = ctx.claimed_job_id
        current = ctx.current_status
        if job_id is None or ctx.final_status is not None or current is None:
            return
        if not current.can_transition_to(JobStatus.FAILED):
            _LOG.info("Job %s is %s; not reporting FAILED", job_id, current)
            return
        if self._lost_status_race():
            _LOG.warning("Job %s was advanced by another writer; not reporting FAILED", job_id)
            return

        message = f"job failed due to agent error: {_describe(self._error)}"
        try:
            self._status_client.change_status(job_id, current, JobStatus.FAILED, message)
        except Exception:
            _LOG.exception("Best-effort FAILED update for job %s did not succeed", job_id)
            return
        ctx.current_status = JobStatus.FAILED
        ctx.final_status = JobStatus.FAILED

    def _lost_status_race(self) -> bool:
        candidates = (self._error, self._context.last_error, getattr(self._error, "__cause__", None))
        return any(isinstance(e, StaleStatusError) for e in candidates)


def _describe(error: Optional[BaseException]) -> str:
    if error is None:
        return "unknown"
    code = getattr(error, "code", None)
    return f"[{code}] {error}" if code else repr(error)


def default_agent_metadata() -> AgentMetadata:
    return AgentMetadata(hostname=socket.gethostname(), version=__version__, pid=os.getpid())


def build_actions(
    *,
    settings: Settings,
    registry: JobRegistry,
    catalog: ResourceCatalog,
    status_client: StatusTransitionClient,
    supervisor: ProcessSupervisor,
    agent: AgentMetadata,
) -> dict[State, StateAction]:
    return {
        State.CLAIM_JOB: ClaimJobAction(registry, agent),
        State.CONFIGURE_AGENT: ConfigureAgentAction(status_client, settings),
        State.RESOLVE_JOB_SPECIFICATION: ResolveJobSpecificationAction(status_client, registry, catalog),
        State.CREATE_JOB_DIRECTORY: CreateJobDirectoryAction(status_client),
        State.SETUP_JOB: SetUpJobAction(status_client),
        State.LAUNCH_JOB: LaunchJobAction(status_client, supervisor),
        State.MONITOR_JOB: MonitorJobAction(status_client, supervisor),
        State.CLEANUP_JOB: CleanupJobAction(supervisor),
        State.SHUTDOWN: ShutdownAction(),
    }


def create_driver(
    job_id: str,
    *,
    settings: Settings,
    registry: JobRegistry,
    catalog: ResourceCatalog,
    supervisor: Optional[ProcessSupervisor] = None,
    agent: Optional[AgentMetadata] = None,
    transitions: Optional[StateTransitionTable] = None,
) -> StateMachineDriver:
    """
    Wires a Driver for one job with the default lifecycle.
    """
    supervisor = supervisor or ProcessSupervisor(
        poll_interval_s=settings.wait_poll_s,
        kill_grace_s=settings.kill_grace_s,
    )
    status_client = StatusTransitionClient(registry)
    actions = build_actions(
        settings=settings,
        registry=registry,
        catalog=catalog,
        status_client=status_client,
        supervisor=supervisor,
        agent=agent or default_agent_metadata(),
    )
    return StateMachineDriver(
        ExecutionContext(requested_job_id=job_id),
        actions,
        transitions or default_transition_table(),
        status_client,
        supervisor=supervisor,
    )
