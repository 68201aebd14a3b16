# src/jobagent/api/routes.py
from __future__ import annotations

import time
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from jobagent.domain.errors import (
    ConflictError,
    IllegalTransitionError,
    JobAgentError,
    NotFoundError,
    StaleStatusError,
    ValidationError,
)
from jobagent.domain.models import (
    AgentMetadata,
    Application,
    Cluster,
    Command,
    ErrorResponse,
    JobListResponse,
    JobRequest,
    JobSpecification,
    JobView,
    StatusChange,
    StatusChangeView,
)
from jobagent.domain.states import JobStatus
from jobagent.logging import get_logger
from jobagent.storage import JobRepo, ResourceRepo

from .deps import get_job_repo, get_resource_repo

_LOG = get_logger(__name__)
router = APIRouter()

# Checked in order; subclasses (e.g. AlreadyClaimedError) inherit their parent's status.
_HTTP_STATUS: tuple[tuple[type[JobAgentError], int], ...] = (
    (NotFoundError, 404),
    (ConflictError, 409),
    (StaleStatusError, 409),
    (IllegalTransitionError, 400),
    (ValidationError, 400),
)


def now_ms() -> int:
    return int(time.time() * 1000)


def _error_response(err: JobAgentError) -> JSONResponse:
    http_status = next((code for cls, code in _HTTP_STATUS if isinstance(err, cls)), 400)
    payload = ErrorResponse(
        error=err.message,
        code=err.code,
        details=err.details or {},
    ).model_dump()
    return JSONResponse(status_code=http_status, content=payload)


@router.get("/healthz")
def healthz() -> dict:
    return {"ok": True}


# -------------------------
# Jobs
# -------------------------

@router.post("/jobs", response_model=JobView, status_code=201)
def submit_job(
    job: JobRequest,
    repo: JobRepo = Depends(get_job_repo),
):
    """
    Submit a job.

    Jobs referencing unknown catalog resources are accepted but stored INVALID.
    """
    try:
        return repo.create_job(job, now_ms=now_ms())
    except JobAgentError as e:
        return _error_response(e)


@router.get("/jobs", response_model=JobListResponse)
def list_jobs(
    limit: int = Query(default=200, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    status: Optional[JobStatus] = Query(default=None),
    repo: JobRepo = Depends(get_job_repo),
):
    jobs, total = repo.list_jobs(limit=limit, offset=offset, status=status)
    return JobListResponse(jobs=jobs, total=total)


@router.get("/jobs/{job_id}", response_model=JobView)
def get_job(
    job_id: str,
    repo: JobRepo = Depends(get_job_repo),
):
    try:
        return repo.get_job(job_id)
    except JobAgentError as e:
        return _error_response(e)


@router.get("/jobs/{job_id}/specification", response_model=JobSpecification)
def get_job_specification(
    job_id: str,
    repo: JobRepo = Depends(get_job_repo),
):
    try:
        return repo.get_specification(job_id)
    except JobAgentError as e:
        return _error_response(e)


@router.post("/jobs/{job_id}/claim", response_model=JobSpecification)
def claim_job(
    job_id: str,
    agent: AgentMetadata,
    repo: JobRepo = Depends(get_job_repo),
):
    try:
        return repo.claim_job(job_id, agent, now_ms=now_ms())
    except JobAgentError as e:
        return _error_response(e)


@router.put("/jobs/{job_id}/status", response_model=JobView)
def change_job_status(
    job_id: str,
    change: StatusChange,
    repo: JobRepo = Depends(get_job_repo),
):
    """
    Optimistic status update; 409 STALE_STATUS carries the current status in details.
    """
    try:
        view = repo.change_status(job_id, change, now_ms=now_ms())
    except StaleStatusError as e:
        _LOG.warning("Rejected stale status change for job %s: %s", job_id, e)
        return _error_response(e)
    except JobAgentError as e:
        return _error_response(e)
    _LOG.info("Job %s: %s -> %s (%s)", job_id, change.expected_status, change.new_status, change.message)
    return view


@router.get("/jobs/{job_id}/status-history", response_model=list[StatusChangeView])
def get_job_status_history(
    job_id: str,
    repo: JobRepo = Depends(get_job_repo),
):
    try:
        return repo.list_status_changes(job_id)
    except JobAgentError as e:
        return _error_response(e)


# -------------------------
# Resource catalog
# -------------------------

def _create_resource(repo: ResourceRepo, kind: str, resource: BaseModel):
    try:
        repo.create(kind, resource, now_ms=now_ms())
    except JobAgentError as e:
        return _error_response(e)
    return resource


def _get_resource(repo: ResourceRepo, kind: str, resource_id: str, model: type[BaseModel]):
    try:
        return repo.get(kind, resource_id, model)
    except JobAgentError as e:
        return _error_response(e)


@router.post("/applications", response_model=Application, status_code=201)
def create_application(application: Application, repo: ResourceRepo = Depends(get_resource_repo)):
    return _create_resource(repo, "application", application)


@router.get("/applications/{application_id}", response_model=Application)
def get_application(application_id: str, repo: ResourceRepo = Depends(get_resource_repo)):
    return _get_resource(repo, "application", application_id, Application)


@router.post("/commands", response_model=Command, status_code=201)
def create_command(command: Command, repo: ResourceRepo = Depends(get_resource_repo)):
    return _create_resource(repo, "command", command)


@router.get("/commands/{command_id}", response_model=Command)
def get_command(command_id: str, repo: ResourceRepo = Depends(get_resource_repo)):
    return _get_resource(repo, "command", command_id, Command)


@router.post("/clusters", response_model=Cluster, status_code=201)
def create_cluster(cluster: Cluster, repo: ResourceRepo = Depends(get_resource_repo)):
    return _create_resource(repo, "cluster", cluster)


@router.get("/clusters/{cluster_id}", response_model=Cluster)
def get_cluster(cluster_id: str, repo: ResourceRepo = Depends(get_resource_repo)):
    return _get_resource(repo, "cluster", cluster_id, Cluster)
