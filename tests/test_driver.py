# tests/test_driver.py
import signal
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from jobagent.agent.client import HttpRegistryClient, RetryingJobRegistry, StatusTransitionClient
from jobagent.agent.context import ExecutionContext
from jobagent.agent.driver import StateMachineDriver, create_driver
from jobagent.agent.fsm import State, default_transition_table
from jobagent.agent.process import ProcessSupervisor
from jobagent.config import load_settings
from jobagent.domain.errors import (
    AlreadyClaimedError,
    ExecutionInterruptedError,
    JobSpecificationError,
    LaunchError,
    StaleStatusError,
    TransportError,
)
from jobagent.domain.models import Command
from jobagent.domain.states import JobStatus
from jobagent.main import EXIT_USAGE, main

from conftest import (
    AGENT,
    FakeRegistry,
    job_payload,
    kill_when_running,
    make_spec,
    seed_catalog,
    wait_until,
)

LIFECYCLE_STATES = (
    State.CLAIM_JOB,
    State.CONFIGURE_AGENT,
    State.RESOLVE_JOB_SPECIFICATION,
    State.CREATE_JOB_DIRECTORY,
    State.SETUP_JOB,
    State.LAUNCH_JOB,
    State.MONITOR_JOB,
    State.CLEANUP_JOB,
    State.SHUTDOWN,
    State.DONE,
)

STATUS_PATH = [
    (None, "CLAIMED"),
    ("CLAIMED", "INIT"),
    ("INIT", "RESOLVED"),
    ("RESOLVED", "CONFIGURED"),
    ("CONFIGURED", "READY"),
    ("READY", "RUNNING"),
]


def _http_driver(client: TestClient, settings, job_id: str, supervisor=None) -> StateMachineDriver:
    http = HttpRegistryClient(client=client)
    registry = RetryingJobRegistry(http, max_attempts=settings.max_attempts, backoff_s=0)
    return create_driver(
        job_id,
        settings=settings,
        registry=registry,
        catalog=http,
        supervisor=supervisor,
        agent=AGENT,
    )


def _fake_driver(registry: FakeRegistry, settings) -> StateMachineDriver:
    return create_driver(registry.spec.id, settings=settings, registry=registry, catalog=registry, agent=AGENT)


def _history(client: TestClient, job_id: str) -> list:
    return [(h["from_status"], h["to_status"]) for h in client.get(f"/jobs/{job_id}/status-history").json()]


# -------------------------
# End to end against the registry API
# -------------------------

def test_successful_job_runs_every_phase(client: TestClient, settings):
    seed_catalog(client)
    script = "import os; print(os.environ['FROM_COMMAND'], os.environ['SHARED'], os.environ['JOB_ID'])"
    client.post("/jobs", json=job_payload("job-ok", script))

    result = _http_driver(client, settings, "job-ok").run()

    assert result.done, result.error
    assert result.final_status is JobStatus.SUCCEEDED
    assert result.visited_states == LIFECYCLE_STATES

    job = client.get("/jobs/job-ok").json()
    assert job["status"] == "SUCCEEDED"
    assert job["status_message"] == "job finished successfully"
    assert _history(client, "job-ok") == [*STATUS_PATH, ("RUNNING", "SUCCEEDED")]

    job_dir = settings.jobs_dir / "job-ok"
    assert (job_dir / "job.env").is_file()
    assert (job_dir / "spec.json").is_file()
    assert (job_dir / "stdout").read_text().split() == ["command", "application", "job-ok"]


def test_failing_job_is_reported_failed(client: TestClient, settings):
    seed_catalog(client)
    client.post("/jobs", json=job_payload("job-exit-137", "import sys; sys.exit(137)"))

    result = _http_driver(client, settings, "job-exit-137").run()

    assert result.done
    assert result.final_status is JobStatus.FAILED
    job = client.get("/jobs/job-exit-137").json()
    assert job["status"] == "FAILED"
    assert job["status_message"] == "job failed"
    assert _history(client, "job-exit-137")[-1] == ("RUNNING", "FAILED")


def test_killed_job_is_reported_killed(client: TestClient, settings):
    seed_catalog(client)
    client.post("/jobs", json=job_payload("job-kill", "import time; time.sleep(60)"))
    supervisor = ProcessSupervisor(poll_interval_s=settings.wait_poll_s, kill_grace_s=settings.kill_grace_s)
    driver = _http_driver(client, settings, "job-kill", supervisor=supervisor)

    kill_when_running(supervisor, delay_s=0.2)
    result = driver.run()

    assert result.done
    assert result.final_status is JobStatus.KILLED
    job = client.get("/jobs/job-kill").json()
    assert job["status"] == "KILLED"
    assert job["status_message"] == "job killed by user"
    assert _history(client, "job-kill")[-1] == ("RUNNING", "KILLED")


def test_job_timeout_ends_killed(client: TestClient, settings):
    seed_catalog(client)
    client.post("/jobs", json=job_payload("job-timeout", "import time; time.sleep(60)", timeout_s=1))

    result = _http_driver(client, settings, "job-timeout").run()

    assert result.final_status is JobStatus.KILLED


def test_second_agent_cannot_claim(client: TestClient, settings):
    seed_catalog(client)
    client.post("/jobs", json=job_payload("job-twice", "pass"))
    assert _http_driver(client, settings, "job-twice").run().done

    result = _http_driver(client, settings, "job-twice").run()

    assert result.final_state is State.ERROR
    assert isinstance(result.error, AlreadyClaimedError)
    assert result.visited_states == (State.CLAIM_JOB, State.ERROR)
    assert client.get("/jobs/job-twice").json()["status"] == "SUCCEEDED"


def test_cleanup_removes_job_directory_when_enabled(client: TestClient, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("JOBAGENT_CLEANUP_JOB_DIR", "true")
    settings = load_settings()
    seed_catalog(client)
    client.post("/jobs", json=job_payload("job-clean", "pass"))

    assert _http_driver(client, settings, "job-clean").run().done
    assert not (settings.jobs_dir / "job-clean").exists()


# -------------------------
# Error handling
# -------------------------

def test_stale_final_status_ends_in_error_without_further_updates(fake_registry: FakeRegistry, settings):
    fake_registry.failures[JobStatus.SUCCEEDED] = StaleStatusError(
        "job was killed elsewhere", details={"current": "KILLED"}
    )

    result = _fake_driver(fake_registry, settings).run()

    assert result.final_state is State.ERROR
    assert result.visited_states[-2:] == (State.MONITOR_JOB, State.ERROR)
    assert result.final_status is None
    assert result.current_status is JobStatus.RUNNING
    assert fake_registry.calls[-1][:2] == (JobStatus.RUNNING, JobStatus.SUCCEEDED)
    assert all(new is not JobStatus.FAILED for _, new, _ in fake_registry.calls)


def test_launch_failure_reports_failed_once(fake_registry: FakeRegistry, settings, tmp_path: Path):
    fake_registry.commands["python"] = Command(id="python", name="Missing", executable=[str(tmp_path / "missing")])

    result = _fake_driver(fake_registry, settings).run()

    assert result.final_state is State.ERROR
    assert isinstance(result.error, LaunchError)
    assert result.final_status is JobStatus.FAILED
    assert fake_registry.status is JobStatus.FAILED
    assert fake_registry.message.startswith("job failed due to agent error: [LAUNCH_ERROR]")
    assert [new for _, new, _ in fake_registry.calls].count(JobStatus.FAILED) == 1


def test_failed_best_effort_update_is_swallowed(fake_registry: FakeRegistry, settings, tmp_path: Path):
    fake_registry.commands["python"] = Command(id="python", name="Missing", executable=[str(tmp_path / "missing")])
    fake_registry.failures[JobStatus.FAILED] = TransportError("registry down")

    result = _fake_driver(fake_registry, settings).run()

    assert result.final_state is State.ERROR
    assert isinstance(result.error, LaunchError)
    assert result.final_status is None
    assert fake_registry.status is JobStatus.READY


def test_unresolvable_job_ends_invalid(fake_registry: FakeRegistry, settings):
    del fake_registry.applications["tools"]

    result = _fake_driver(fake_registry, settings).run()

    assert result.final_state is State.ERROR
    assert isinstance(result.error, JobSpecificationError)
    assert fake_registry.status is JobStatus.INVALID
    assert result.current_status is JobStatus.INVALID
    assert all(new is not JobStatus.FAILED for _, new, _ in fake_registry.calls)


def test_unexpected_exception_is_contained(fake_registry: FakeRegistry, settings, monkeypatch: pytest.MonkeyPatch):
    def _boom(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(fake_registry, "get_job_specification", _boom)

    result = _fake_driver(fake_registry, settings).run()

    assert result.final_state is State.ERROR
    assert isinstance(result.error, RuntimeError)
    assert fake_registry.status is JobStatus.FAILED
    assert "RuntimeError('boom')" in fake_registry.message


def test_agent_error_while_running_kills_a_job_that_ignores_sigterm(settings, monkeypatch: pytest.MonkeyPatch):
    script = (
        "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); "
        "print('ready', flush=True); time.sleep(60)"
    )
    registry = FakeRegistry(make_spec(script=script))
    stdout = settings.jobs_dir / "job-1" / "stdout"
    change_status = registry.change_status

    def _lose_running_report(job_id, expected, new, message):
        if new is JobStatus.RUNNING:
            # Only fail once the job has started ignoring SIGTERM
            assert wait_until(lambda: stdout.exists() and "ready" in stdout.read_text())
            raise TransportError("registry unreachable")
        change_status(job_id, expected, new, message)

    monkeypatch.setattr(registry, "change_status", _lose_running_report)
    supervisor = ProcessSupervisor(poll_interval_s=0.02, kill_grace_s=0.5)
    driver = create_driver(
        registry.spec.id,
        settings=settings,
        registry=registry,
        catalog=registry,
        supervisor=supervisor,
        agent=AGENT,
    )

    result = driver.run()

    assert result.final_state is State.ERROR
    assert isinstance(result.error, TransportError)
    handle = supervisor.handle
    assert handle is not None
    assert handle.process.poll() == -signal.SIGKILL
    assert handle.exit_code == -signal.SIGKILL
    assert registry.status is JobStatus.FAILED


def test_interrupt_outside_the_wait_is_contained(fake_registry: FakeRegistry, settings, monkeypatch: pytest.MonkeyPatch):
    def _interrupted(job_id):
        raise KeyboardInterrupt

    monkeypatch.setattr(fake_registry, "get_job_specification", _interrupted)

    result = _fake_driver(fake_registry, settings).run()

    assert result.final_state is State.ERROR
    assert isinstance(result.error, ExecutionInterruptedError)
    assert isinstance(result.error.__cause__, KeyboardInterrupt)
    assert result.visited_states == (
        State.CLAIM_JOB,
        State.CONFIGURE_AGENT,
        State.RESOLVE_JOB_SPECIFICATION,
        State.ERROR,
    )
    assert fake_registry.status is JobStatus.FAILED
    assert "[EXECUTION_INTERRUPTED]" in fake_registry.message


def test_kill_requested_before_launch_never_starts_the_job(fake_registry: FakeRegistry, settings):
    supervisor = ProcessSupervisor(poll_interval_s=0.02, kill_grace_s=0.5)
    supervisor.cancel_token.set()
    driver = create_driver(
        fake_registry.spec.id,
        settings=settings,
        registry=fake_registry,
        catalog=fake_registry,
        supervisor=supervisor,
        agent=AGENT,
    )

    result = driver.run()

    assert result.done, result.error
    assert result.final_status is JobStatus.KILLED
    assert State.MONITOR_JOB not in result.visited_states
    assert result.visited_states[-4:] == (State.LAUNCH_JOB, State.CLEANUP_JOB, State.SHUTDOWN, State.DONE)
    assert fake_registry.changes[-1] == (JobStatus.READY, JobStatus.KILLED, "job killed by user")
    assert supervisor.handle is None
    assert not (settings.jobs_dir / "job-1" / "stdout").exists()


def test_driver_requires_an_action_for_every_phase(fake_registry: FakeRegistry):
    with pytest.raises(ValueError):
        StateMachineDriver(
            ExecutionContext(requested_job_id="job-1"),
            {},
            default_transition_table(),
            StatusTransitionClient(fake_registry),
        )


def test_main_without_job_id_is_a_usage_error(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture):
    monkeypatch.delenv("JOBAGENT_JOB_ID", raising=False)
    assert main([]) == EXIT_USAGE
    assert "usage" in capsys.readouterr().err

