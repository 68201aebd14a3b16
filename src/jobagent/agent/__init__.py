# src/jobagent/agent/__init__.py
"""
The per-job agent.

- process: ProcessSupervisor (launch / wait_for / kill of the job process)
- context: ExecutionContext shared by the state actions
- client: registry + catalog clients, StatusTransitionClient, retry wrapper
- actions: one state action per lifecycle phase
- fsm: states, events and the transition table
- driver: StateMachineDriver and its wiring
"""

from .context import ExecutionContext
from .driver import RunResult, StateMachineDriver, create_driver
from .fsm import Event, State, StateTransitionTable, default_transition_table
from .process import ProcessHandle, ProcessSupervisor

__all__ = [
    "ExecutionContext",
    "ProcessHandle",
    "ProcessSupervisor",
    "State",
    "Event",
    "StateTransitionTable",
    "default_transition_table",
    "StateMachineDriver",
    "RunResult",
    "create_driver",
]
