# src/jobagent/agent/fsm.py
from __future__ import annotations

from enum import StrEnum
from types import MappingProxyType
from typing import Iterable, Iterator, Mapping

from jobagent.domain.errors import TransitionTableError


class State(StrEnum):
    """
    Agent lifecycle phases, plus the DONE and ERROR pseudo-states.
    """

    CLAIM_JOB = "CLAIM_JOB"
    CONFIGURE_AGENT = "CONFIGURE_AGENT"
    RESOLVE_JOB_SPECIFICATION = "RESOLVE_JOB_SPECIFICATION"
    CREATE_JOB_DIRECTORY = "CREATE_JOB_DIRECTORY"
    SETUP_JOB = "SETUP_JOB"
    LAUNCH_JOB = "LAUNCH_JOB"
    MONITOR_JOB = "MONITOR_JOB"
    CLEANUP_JOB = "CLEANUP_JOB"
    SHUTDOWN = "SHUTDOWN"
    DONE = "DONE"
    ERROR = "ERROR"

    @property
    def is_final(self) -> bool:
        return self in (State.DONE, State.ERROR)


class Event(StrEnum):
    CLAIM_JOB_COMPLETE = "CLAIM_JOB_COMPLETE"
    CONFIGURE_AGENT_COMPLETE = "CONFIGURE_AGENT_COMPLETE"
    RESOLVE_JOB_SPECIFICATION_COMPLETE = "RESOLVE_JOB_SPECIFICATION_COMPLETE"
    CREATE_JOB_DIRECTORY_COMPLETE = "CREATE_JOB_DIRECTORY_COMPLETE"
    SETUP_JOB_COMPLETE = "SETUP_JOB_COMPLETE"
    LAUNCH_JOB_COMPLETE = "LAUNCH_JOB_COMPLETE"
    LAUNCH_JOB_CANCELLED = "LAUNCH_JOB_CANCELLED"
    MONITOR_JOB_COMPLETE = "MONITOR_JOB_COMPLETE"
    CLEANUP_JOB_COMPLETE = "CLEANUP_JOB_COMPLETE"
    SHUTDOWN_COMPLETE = "SHUTDOWN_COMPLETE"
    ERROR = "ERROR"


INITIAL_STATE = State.CLAIM_JOB

# The happy path: each phase's completion event leads to the next phase.
LIFECYCLE: tuple[tuple[State, Event, State], ...] = (
    (State.CLAIM_JOB, Event.CLAIM_JOB_COMPLETE, State.CONFIGURE_AGENT),
    (State.CONFIGURE_AGENT, Event.CONFIGURE_AGENT_COMPLETE, State.RESOLVE_JOB_SPECIFICATION),
    (State.RESOLVE_JOB_SPECIFICATION, Event.RESOLVE_JOB_SPECIFICATION_COMPLETE, State.CREATE_JOB_DIRECTORY),
    (State.CREATE_JOB_DIRECTORY, Event.CREATE_JOB_DIRECTORY_COMPLETE, State.SETUP_JOB),
    (State.SETUP_JOB, Event.SETUP_JOB_COMPLETE, State.LAUNCH_JOB),
    (State.LAUNCH_JOB, Event.LAUNCH_JOB_COMPLETE, State.MONITOR_JOB),
    (State.MONITOR_JOB, Event.MONITOR_JOB_COMPLETE, State.CLEANUP_JOB),
    (State.CLEANUP_JOB, Event.CLEANUP_JOB_COMPLETE, State.SHUTDOWN),
    (State.SHUTDOWN, Event.SHUTDOWN_COMPLETE, State.DONE),
)

# Cancellation requested before the job process was spawned: nothing to monitor.
CANCELLATION: tuple[tuple[State, Event, State], ...] = (
    (State.LAUNCH_JOB, Event.LAUNCH_JOB_CANCELLED, State.CLEANUP_JOB),
)


class StateTransitionTable(Mapping[tuple[State, Event], State]):
    """
    Immutable (state, event) -> next state mapping.

    Looking up a pair that is not configured raises TransitionTableError.
    DONE and ERROR have no outgoing transitions.
    """

    def __init__(self, transitions: Iterable[tuple[State, Event, State]]) -> None:
        table: dict[tuple[State, Event], State] = {}
        for state, event, next_state in transitions:
            if state.is_final:
                raise ValueError(f"{state} is final and cannot have outgoing transitions")
            key = (state, event)
            if key in table and table[key] != next_state:
                raise ValueError(f"Conflicting transitions for {state} on {event}")
            table[key] = next_state
        self._table = MappingProxyType(table)

    def next_state(self, state: State, event: Event) -> State:
        try:
            return self._table[(state, event)]
        except KeyError:
            raise TransitionTableError(
                f"No transition configured for state {state} on event {event}",
                details={"state": state.value, "event": event.value},
            ) from None

    def __getitem__(self, key: tuple[State, Event]) -> State:
        return self._table[key]

    def __iter__(self) -> Iterator[tuple[State, Event]]:
        return iter(self._table)

    def __len__(self) -> int:
        return len(self._table)


def default_transition_table() -> StateTransitionTable:
    """
    The lifecycle, cancellation before launch, and (phase, ERROR) -> ERROR
    for every phase.
    """
    error_transitions = [
        (state, Event.ERROR, State.ERROR) for state in State if not state.is_final
    ]
    return StateTransitionTable([*LIFECYCLE, *CANCELLATION, *error_transitions])
