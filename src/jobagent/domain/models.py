from __future__ import annotations

from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .states import JobStatus


ResourceId = Annotated[str, Field(min_length=1, max_length=256, pattern=r"^[A-Za-z0-9._-]+$")]
EnvName = Annotated[str, Field(min_length=1, max_length=256, pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")]


# -------------------------
# Resource catalog
# -------------------------

class Application(BaseModel):
    """
    An application a job needs on the host (e.g. a language runtime or client libraries).
    Contributes environment variables to the job.
    """
    model_config = ConfigDict(extra="forbid")

    id: ResourceId
    name: Annotated[str, Field(min_length=1, max_length=256)]
    environment: dict[EnvName, str] = Field(default_factory=dict)


class Command(BaseModel):
    """
    The executable a job runs. The job's own arguments are appended to `executable`.
    """
    model_config = ConfigDict(extra="forbid")

    id: ResourceId
    name: Annotated[str, Field(min_length=1, max_length=256)]
    executable: list[Annotated[str, Field(min_length=1)]] = Field(min_length=1)
    environment: dict[EnvName, str] = Field(default_factory=dict)


class Cluster(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: ResourceId
    name: Annotated[str, Field(min_length=1, max_length=256)]
    environment: dict[EnvName, str] = Field(default_factory=dict)


# -------------------------
# Jobs
# -------------------------

class JobSpecification(BaseModel):
    """
    What to run: the job as submitted, referencing catalog resources by id.
    Returned to the agent on claim and on specification lookups.
    """
    model_config = ConfigDict(extra="forbid")

    id: ResourceId
    name: Annotated[str, Field(min_length=1, max_length=256)]
    user: Annotated[str, Field(min_length=1, max_length=256)]
    command_id: ResourceId
    cluster_id: ResourceId
    application_ids: list[ResourceId] = Field(default_factory=list)
    command_args: list[str] = Field(default_factory=list)
    environment: dict[EnvName, str] = Field(default_factory=dict)
    timeout_s: Optional[Annotated[int, Field(gt=0, le=7 * 86_400)]] = None

    @field_validator("application_ids")
    @classmethod
    def _validate_application_ids(cls, ids: list[str]) -> list[str]:
        if len(ids) != len(set(ids)):
            raise ValueError("application_ids must not contain duplicates")
        return ids


class JobRequest(JobSpecification):
    """
    API input model for submitting a job.
    """


class ResolvedJobSpecification(BaseModel):
    """
    A job specification with every catalog reference resolved into the concrete
    command line and environment the job process is launched with.
    """
    model_config = ConfigDict(extra="forbid", frozen=True)

    job_id: str
    job_name: str
    user: str
    command_id: str
    cluster_id: str
    application_ids: list[str]
    command_line: list[str] = Field(min_length=1)
    environment: dict[str, str]
    timeout_s: Optional[int] = None


class AgentMetadata(BaseModel):
    """
    Identifies the agent claiming a job.
    """
    model_config = ConfigDict(extra="forbid")

    hostname: Annotated[str, Field(min_length=1, max_length=256)]
    version: Annotated[str, Field(min_length=1, max_length=64)]
    pid: Annotated[int, Field(gt=0)]


class StatusChange(BaseModel):
    """
    Optimistic status update: applied only if the job is still in `expected_status`.
    """
    model_config = ConfigDict(extra="forbid")

    expected_status: JobStatus
    new_status: JobStatus
    message: Annotated[str, Field(min_length=1, max_length=1024)]


class StatusChangeView(BaseModel):
    model_config = ConfigDict(extra="forbid")

    job_id: str
    from_status: Optional[JobStatus] = None
    to_status: JobStatus
    message: str
    changed_at: int


class JobView(BaseModel):
    """
    API output model for a single job.
    """
    model_config = ConfigDict(extra="forbid")

    id: str
    name: str
    user: str
    command_id: str
    cluster_id: str

    # None until an agent claims the job
    status: Optional[JobStatus] = None
    status_message: Optional[str] = None

    agent_hostname: Optional[str] = None
    agent_version: Optional[str] = None
    agent_pid: Optional[int] = None

    created_at: int
    updated_at: int
    claimed_at: Optional[int] = None
    finished_at: Optional[int] = None


class JobListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    jobs: list[JobView]
    total: int


class ErrorResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    error: str
    code: str
    details: dict = Field(default_factory=dict)
