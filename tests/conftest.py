# tests/conftest.py
import importlib
import itertools
import sys
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

import pytest
from fastapi.testclient import TestClient

from jobagent.agent.client import JobRegistry, ResourceCatalog
from jobagent.config import Settings, load_settings
from jobagent.domain.errors import (
    AlreadyClaimedError,
    JobAgentError,
    NotFoundError,
    StaleStatusError,
)
from jobagent.domain.models import (
    AgentMetadata,
    Application,
    Cluster,
    Command,
    JobSpecification,
)
from jobagent.domain.states import JobStatus

_counter = itertools.count(1)

DEFAULT_ENV = {
    "JOBAGENT_LOG_LEVEL": "warning",
    "JOBAGENT_WAIT_POLL_MS": "20",
    "JOBAGENT_KILL_GRACE_MS": "1000",
    "JOBAGENT_MAX_ATTEMPTS": "3",
    "JOBAGENT_RETRY_BACKOFF_MS": "0",
}

PYTHON_COMMAND = Command(id="python", name="Python", executable=[sys.executable, "-c"], environment={"FROM_COMMAND": "command"})
LOCAL_CLUSTER = Cluster(id="local", name="Local host", environment={"FROM_CLUSTER": "cluster", "SHARED": "cluster"})
TOOLS_APPLICATION = Application(id="tools", name="Tools", environment={"FROM_APPLICATION": "application", "SHARED": "application"})

AGENT = AgentMetadata(hostname="test-host", version="0.1.0", pid=4242)


def _apply_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, overrides: Optional[dict[str, str]] = None) -> None:
    monkeypatch.setenv("JOBAGENT_JOBS_DIR", str(tmp_path / "jobs"))
    for k, v in DEFAULT_ENV.items():
        monkeypatch.setenv(k, v)
    if overrides:
        for k, v in overrides.items():
            monkeypatch.setenv(k, v)


@contextmanager
def _client_ctx(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, *, overrides: Optional[dict[str, str]] = None) -> Iterator[TestClient]:
    n = next(_counter)
    monkeypatch.setenv("JOBAGENT_DB_PATH", str(tmp_path / f"jobs_{n}.db"))
    _apply_env(monkeypatch, tmp_path, overrides)

    # Import after env is set; reload to avoid cross-test state
    app_mod = importlib.import_module("jobagent.api.app")
    importlib.reload(app_mod)

    with TestClient(app_mod.app) as client:
        yield client


@pytest.fixture()
def client(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[TestClient]:
    """
    Registry test client with a fresh sqlite db per test.
    """
    with _client_ctx(monkeypatch, tmp_path) as c:
        yield c


@pytest.fixture()
def settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Settings:
    """
    Agent settings with a per-test jobs dir and fast polling.
    """
    _apply_env(monkeypatch, tmp_path)
    return load_settings()


def seed_catalog(client: TestClient) -> None:
    for path, resource in (
        ("/commands", PYTHON_COMMAND),
        ("/clusters", LOCAL_CLUSTER),
        ("/applications", TOOLS_APPLICATION),
    ):
        r = client.post(path, json=resource.model_dump())
        assert r.status_code == 201, r.text


def job_payload(job_id: str, script: str, **extra) -> dict:
    payload = {
        "id": job_id,
        "name": f"job {job_id}",
        "user": "alice",
        "command_id": PYTHON_COMMAND.id,
        "cluster_id": LOCAL_CLUSTER.id,
        "application_ids": [TOOLS_APPLICATION.id],
        "command_args": [script],
    }
    payload.update(extra)
    return payload


def make_spec(job_id: str = "job-1", script: str = "pass", **extra) -> JobSpecification:
    return JobSpecification.model_validate(job_payload(job_id, script, **extra))


def wait_until(fn: Callable[[], bool], timeout_s: float = 5.0, poll_s: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if fn():
            return True
        time.sleep(poll_s)
    return False


def kill_when_running(supervisor, delay_s: float = 0.2) -> threading.Thread:
    """
    Calls supervisor.kill() from another thread once the job process is up.
    """

    def _run() -> None:
        if wait_until(lambda: supervisor.handle is not None, timeout_s=10.0):
            time.sleep(delay_s)
            supervisor.kill()

    t = threading.Thread(target=_run, name="test-killer", daemon=True)
    t.start()
    return t


class FakeRegistry(JobRegistry, ResourceCatalog):
    """
    In-memory registry + catalog with failure injection.

    `failures` maps a requested new status to the error raised when an agent
    asks for it (once). Every change_status call is recorded in `calls`;
    applied ones in `changes`.
    """

    def __init__(self, spec: JobSpecification) -> None:
        self.spec = spec
        self.status: Optional[JobStatus] = None
        self.message: Optional[str] = None
        self.calls: list[tuple[JobStatus, JobStatus, str]] = []
        self.changes: list[tuple[JobStatus, JobStatus, str]] = []
        self.failures: dict[JobStatus, JobAgentError] = {}
        self.commands = {PYTHON_COMMAND.id: PYTHON_COMMAND}
        self.clusters = {LOCAL_CLUSTER.id: LOCAL_CLUSTER}
        self.applications = {TOOLS_APPLICATION.id: TOOLS_APPLICATION}

    def claim(self, job_id: str, agent: AgentMetadata) -> JobSpecification:
        if job_id != self.spec.id:
            raise NotFoundError(f"Job not found: {job_id}")
        if self.status is not None:
            raise AlreadyClaimedError(f"Job {job_id} already claimed")
        self.status = JobStatus.CLAIMED
        return self.spec

    def change_status(self, job_id: str, expected: JobStatus, new: JobStatus, message: str) -> None:
        self.calls.append((expected, new, message))
        error = self.failures.pop(new, None)
        if error is not None:
            raise error
        if self.status != expected:
            raise StaleStatusError(
                f"Job {job_id} is {self.status}",
                details={"current": self.status.value if self.status else None},
            )
        self.status = new
        self.message = message
        self.changes.append((expected, new, message))

    def get_job_specification(self, job_id: str) -> JobSpecification:
        if job_id != self.spec.id:
            raise NotFoundError(f"Job not found: {job_id}")
        return self.spec

    def get_command(self, command_id: str) -> Command:
        return self._lookup(self.commands, "command", command_id)

    def get_cluster(self, cluster_id: str) -> Cluster:
        return self._lookup(self.clusters, "cluster", cluster_id)

    def get_application(self, application_id: str) -> Application:
        return self._lookup(self.applications, "application", application_id)

    @staticmethod
    def _lookup(items: dict, kind: str, resource_id: str):
        if resource_id not in items:
            raise NotFoundError(f"{kind} not found: {resource_id}", details={"kind": kind, "id": resource_id})
        return items[resource_id]


@pytest.fixture()
def fake_registry() -> FakeRegistry:
    return FakeRegistry(make_spec())
