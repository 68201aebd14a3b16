# src/jobagent/agent/process.py
from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Sequence

from jobagent.domain.errors import (
    ExecutionInterruptedError,
    InvariantViolationError,
    LaunchError,
)
from jobagent.domain.states import JobStatus
from jobagent.logging import get_logger

_LOG = get_logger(__name__)


@dataclass
class ProcessHandle:
    """
    The launched job process. Only the ProcessSupervisor mutates it.
    """
    process: subprocess.Popen = field(repr=False)
    command: list[str]
    working_directory: Path
    stdout_path: Path
    stderr_path: Path
    started_at: float
    exit_code: Optional[int] = None

    @property
    def pid(self) -> int:
        return self.process.pid


class ProcessSupervisor:
    """
    Owns the job's child process: launch, blocking wait, kill.

    Concurrency:
    - wait_for() runs on the Driver's thread.
    - kill() may be called from any thread (signal handlers, tests); it is idempotent
      and synchronises with wait_for() through `_lock` and the cancellation event.
    - A kill sends SIGTERM to the process group, escalated to SIGKILL once
      `kill_grace_s` has passed, so wait_for() returns within a bounded delay.
    """

    def __init__(
        self,
        *,
        poll_interval_s: float = 0.1,
        kill_grace_s: float = 5.0,
        cancel_token: Optional[threading.Event] = None,
    ) -> None:
        if poll_interval_s <= 0:
            raise ValueError("poll_interval_s must be > 0")
        if kill_grace_s < 0:
            raise ValueError("kill_grace_s must be >= 0")

        self._poll_interval_s = poll_interval_s
        self._kill_grace_s = kill_grace_s

        # External cancellation request; observed by wait_for() on every poll.
        self._cancel_token = cancel_token or threading.Event()

        self._lock = threading.Lock()
        self._handle: Optional[ProcessHandle] = None
        self._deadline: Optional[float] = None
        self._kill_requested_at: Optional[float] = None
        self._kill_escalated = False

    @property
    def cancel_token(self) -> threading.Event:
        return self._cancel_token

    @property
    def handle(self) -> Optional[ProcessHandle]:
        return self._handle

    def launch(
        self,
        command: Sequence[str],
        environment: Mapping[str, str],
        working_directory: Path,
        *,
        stdout_path: Optional[Path] = None,
        stderr_path: Optional[Path] = None,
        timeout_s: Optional[float] = None,
    ) -> ProcessHandle:
        """
        Starts the job process in its own session (process group).

        stdout/stderr go to files (default: `stdout` and `stderr` in the working
        directory); stdin is closed. `environment` replaces the inherited one.
        """
        if not command:
            raise LaunchError("Cannot launch an empty command")

        stdout_path = stdout_path or working_directory / "stdout"
        stderr_path = stderr_path or working_directory / "stderr"

        with self._lock:
            if self._handle is not None:
                raise LaunchError(
                    "A job process was already launched",
                    details={"pid": self._handle.pid},
                )
            try:
                with open(stdout_path, "wb") as out, open(stderr_path, "wb") as err:
                    process = subprocess.Popen(
                        list(command),
                        cwd=str(working_directory),
                        env=dict(environment),
                        stdin=subprocess.DEVNULL,
                        stdout=out,
                        stderr=err,
                        start_new_session=True,
                    )
            except OSError as e:
                raise LaunchError(
                    f"Cannot launch {command[0]!r}: {e.strerror or e}",
                    details={"command": list(command), "errno": e.errno},
                ) from e

            self._handle = ProcessHandle(
                process=process,
                command=list(command),
                working_directory=working_directory,
                stdout_path=stdout_path,
                stderr_path=stderr_path,
                started_at=time.monotonic(),
            )
            self._deadline = time.monotonic() + timeout_s if timeout_s else None

        _LOG.info("Launched job process pid=%d: %s", process.pid, " ".join(command))
        return self._handle

    def wait_for(self) -> JobStatus:
        """
        Blocks until the job process exits and maps the outcome to a job status.

        - exit code 0 -> SUCCEEDED
        - non-zero exit code -> FAILED
        - exited after a kill (explicit, cancel token, or timeout) -> KILLED

        Raises ExecutionInterruptedError if the waiting thread is interrupted.
        """
        handle = self._handle
        if handle is None:
            raise InvariantViolationError("wait_for() called before a job process was launched")

        try:
            while True:
                try:
                    exit_code = handle.process.wait(timeout=self._poll_interval_s)
                    break
                except subprocess.TimeoutExpired:
                    pass
                self._on_poll()
        except KeyboardInterrupt as e:
            raise ExecutionInterruptedError(
                "Interrupted while waiting for job process completion",
                details={"pid": handle.pid},
            ) from e

        with self._lock:
            handle.exit_code = exit_code
            killed = self._kill_requested_at is not None

        if killed:
            status = JobStatus.KILLED
        elif exit_code == 0:
            status = JobStatus.SUCCEEDED
        else:
            status = JobStatus.FAILED

        _LOG.info("Job process pid=%d exited with code %d -> %s", handle.pid, exit_code, status)
        return status

    def kill(self) -> None:
        """
        Requests termination of the job process group.

        No-op before launch, after exit, and on repeated calls.
        """
        with self._lock:
            handle = self._handle
            if handle is None or handle.exit_code is not None:
                return
            if self._kill_requested_at is not None:
                return
            if handle.process.poll() is not None:
                return
            self._kill_requested_at = time.monotonic()
            self._cancel_token.set()
            _LOG.info("Killing job process group pid=%d", handle.pid)
            self._signal_group(handle, signal.SIGTERM)

    def terminate(self) -> Optional[int]:
        """
        Kills the job process group and blocks until the process is gone.

        SIGTERM first; SIGKILL once `kill_grace_s` has passed. Returns the exit
        code, or None when nothing was launched.
        """
        handle = self._handle
        if handle is None:
            return None

        self.kill()
        try:
            exit_code = handle.process.wait(timeout=self._kill_grace_s)
        except subprocess.TimeoutExpired:
            with self._lock:
                self._kill_escalated = True
            _LOG.warning("Job process pid=%d ignored SIGTERM; sending SIGKILL", handle.pid)
            self._signal_group(handle, signal.SIGKILL)
            exit_code = handle.process.wait()

        with self._lock:
            handle.exit_code = exit_code
        return exit_code

    def release(self) -> Optional[ProcessHandle]:
        """
        Forgets the finished process; later kill() calls become no-ops.
        Returns the released handle, if any.
        """
        with self._lock:
            handle = self._handle
            if handle is not None and handle.exit_code is None:
                raise InvariantViolationError(
                    "Cannot release a job process that has not exited",
                    details={"pid": handle.pid},
                )
            self._handle = None
            self._deadline = None
        return handle

    def _on_poll(self) -> None:
        if self._kill_requested_at is None:
            if self._cancel_token.is_set():
                _LOG.info("Cancellation requested")
                self.kill()
            elif self._deadline is not None and time.monotonic() >= self._deadline:
                _LOG.warning("Job process exceeded its timeout")
                self.kill()
            return

        with self._lock:
            handle = self._handle
            due = time.monotonic() - self._kill_requested_at >= self._kill_grace_s
            if handle is None or self._kill_escalated or not due:
                return
            self._kill_escalated = True
            _LOG.warning("Job process pid=%d ignored SIGTERM; sending SIGKILL", handle.pid)
            self._signal_group(handle, signal.SIGKILL)

    @staticmethod
    def _signal_group(handle: ProcessHandle, sig: signal.Signals) -> None:
        try:
            os.killpg(handle.pid, sig)
        except ProcessLookupError:
            # Group already gone; wait_for() will collect the exit code.
            pass
