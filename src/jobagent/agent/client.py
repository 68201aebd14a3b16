# src/jobagent/agent/client.py
"""
Agent-side access to the job registry.

- JobRegistry / ResourceCatalog: what the state actions need from the server
- HttpRegistryClient: both, over the registry's HTTP API
- RetryingJobRegistry: bounded backoff on TransportError, layered above the core
- StatusTransitionClient: validated, optimistic status changes
"""
from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional, TypeVar

import httpx
from pydantic import ValidationError as PydanticValidationError

from jobagent.domain.errors import (
    IllegalTransitionError,
    JobAgentError,
    StaleStatusError,
    TransportError,
    ValidationError,
    error_from_code,
)
from jobagent.domain.models import (
    AgentMetadata,
    Application,
    Cluster,
    Command,
    ErrorResponse,
    JobSpecification,
    StatusChange,
)
from jobagent.domain.states import JobStatus
from jobagent.logging import get_logger

_LOG = get_logger(__name__)

T = TypeVar("T")


class JobRegistry(ABC):
    """The job registry operations the agent consumes."""

    @abstractmethod
    def claim(self, job_id: str, agent: AgentMetadata) -> JobSpecification:
        ...

    @abstractmethod
    def change_status(self, job_id: str, expected: JobStatus, new: JobStatus, message: str) -> None:
        """
        Compare-and-set the remote status.

        Raises StaleStatusError if the remote status is not `expected`,
        TransportError on network/service failure.
        """
        ...

    @abstractmethod
    def get_job_specification(self, job_id: str) -> JobSpecification:
        ...


class ResourceCatalog(ABC):
    """Read access to the catalog resources a job specification references."""

    @abstractmethod
    def get_command(self, command_id: str) -> Command:
        ...

    @abstractmethod
    def get_cluster(self, cluster_id: str) -> Cluster:
        ...

    @abstractmethod
    def get_application(self, application_id: str) -> Application:
        ...


class HttpRegistryClient(JobRegistry, ResourceCatalog):
    """
    JobRegistry and ResourceCatalog over the registry HTTP API.

    Error mapping:
    - connection failures, timeouts and 5xx responses -> TransportError
    - ErrorResponse bodies -> the domain error named by their `code`
    - request validation failures (422) -> ValidationError

    Pass `client` to reuse an existing httpx.Client (e.g. FastAPI's TestClient);
    otherwise one is created for `base_url` and closed by close().
    """

    def __init__(
        self,
        base_url: str = "",
        *,
        timeout_s: float = 10.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if client is None and not base_url:
            raise ValueError("base_url is required when no client is given")
        self._owns_client = client is None
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout_s, trust_env=False)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> HttpRegistryClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # -------------------------
    # JobRegistry
    # -------------------------

    def claim(self, job_id: str, agent: AgentMetadata) -> JobSpecification:
        body = self._request("POST", f"/jobs/{job_id}/claim", json=agent.model_dump())
        return JobSpecification.model_validate(body)

    def change_status(self, job_id: str, expected: JobStatus, new: JobStatus, message: str) -> None:
        change = StatusChange(expected_status=expected, new_status=new, message=message)
        self._request("PUT", f"/jobs/{job_id}/status", json=change.model_dump(mode="json"))

    def get_job_specification(self, job_id: str) -> JobSpecification:
        body = self._request("GET", f"/jobs/{job_id}/specification")
        return JobSpecification.model_validate(body)

    # -------------------------
    # ResourceCatalog
    # -------------------------

    def get_command(self, command_id: str) -> Command:
        return Command.model_validate(self._request("GET", f"/commands/{command_id}"))

    def get_cluster(self, cluster_id: str) -> Cluster:
        return Cluster.model_validate(self._request("GET", f"/clusters/{cluster_id}"))

    def get_application(self, application_id: str) -> Application:
        return Application.model_validate(self._request("GET", f"/applications/{application_id}"))

    def _request(self, method: str, path: str, *, json: Optional[dict[str, Any]] = None) -> Any:
        try:
            response = self._client.request(method, path, json=json)
        except httpx.TransportError as e:
            raise TransportError(
                f"{method} {path} failed: {e}",
                details={"method": method, "path": path},
            ) from e

        if response.status_code >= 500:
            raise TransportError(
                f"{method} {path} returned {response.status_code}",
                details={"method": method, "path": path, "status": response.status_code},
            )

        if response.is_error:
            raise self._error_from_response(method, path, response)

        try:
            return response.json()
        except ValueError as e:
            raise TransportError(
                f"{method} {path} returned a non-JSON body",
                details={"method": method, "path": path},
            ) from e

    @staticmethod
    def _error_from_response(method: str, path: str, response: httpx.Response) -> JobAgentError:
        if response.status_code == 422:
            return ValidationError(
                f"{method} {path} rejected the request",
                details={"status": 422, "body": response.text},
            )
        try:
            body = ErrorResponse.model_validate(response.json())
        except (ValueError, PydanticValidationError):
            return JobAgentError(
                f"{method} {path} returned {response.status_code}",
                code=f"HTTP_{response.status_code}",
                details={"body": response.text},
            )
        return error_from_code(body.code, body.error, body.details)


class RetryingJobRegistry(JobRegistry):
    """
    Retries TransportError with exponential backoff, up to `max_attempts` calls.

    Nothing else is retried. A StaleStatusError that follows a failed
    change_status attempt and reports the requested status as current means the
    earlier attempt was applied; it is treated as success.
    """

    def __init__(
        self,
        delegate: JobRegistry,
        *,
        max_attempts: int = 3,
        backoff_s: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        self._delegate = delegate
        self._max_attempts = max_attempts
        self._backoff_s = backoff_s
        self._sleep = sleep

    def claim(self, job_id: str, agent: AgentMetadata) -> JobSpecification:
        return self._with_retries("claim", lambda: self._delegate.claim(job_id, agent))

    def get_job_specification(self, job_id: str) -> JobSpecification:
        return self._with_retries(
            "get_job_specification", lambda: self._delegate.get_job_specification(job_id)
        )

    def change_status(self, job_id: str, expected: JobStatus, new: JobStatus, message: str) -> None:
        attempted = False

        def _change() -> None:
            nonlocal attempted
            try:
                self._delegate.change_status(job_id, expected, new, message)
            except StaleStatusError as e:
                if attempted and e.current_status == new.value:
                    _LOG.info("Status %s for job %s was applied by an earlier attempt", new, job_id)
                    return
                raise
            except TransportError:
                attempted = True
                raise

        self._with_retries("change_status", _change)

    def _with_retries(self, operation: str, call: Callable[[], T]) -> T:
        attempt = 1
        while True:
            try:
                return call()
            except TransportError as e:
                if attempt >= self._max_attempts:
                    _LOG.error("%s failed after %d attempt(s): %s", operation, attempt, e)
                    raise
                delay = self._backoff_s * (2 ** (attempt - 1))
                _LOG.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                    operation,
                    attempt,
                    self._max_attempts,
                    e,
                    delay,
                )
                self._sleep(delay)
                attempt += 1


class StatusTransitionClient:
    """
    Persists job status transitions.

    Transitions outside VALID_TRANSITIONS are rejected locally with
    IllegalTransitionError; the rest are compare-and-set on the registry.
    No retries here: StaleStatusError and TransportError reach the caller.
    """

    def __init__(self, registry: JobRegistry) -> None:
        self._registry = registry

    def change_status(self, job_id: str, expected: JobStatus, new: JobStatus, message: str) -> None:
        if not expected.can_transition_to(new):
            raise IllegalTransitionError(
                f"Illegal transition {expected} -> {new}",
                details={"job_id": job_id, "from": expected.value, "to": new.value},
            )
        self._registry.change_status(job_id, expected, new, message)
        _LOG.info("Job %s: %s -> %s (%s)", job_id, expected, new, message)
