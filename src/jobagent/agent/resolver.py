# src/jobagent/agent/resolver.py
from __future__ import annotations

from pathlib import Path

from jobagent.domain.errors import JobSpecificationError, NotFoundError
from jobagent.domain.models import JobSpecification, ResolvedJobSpecification

from .client import ResourceCatalog


def job_directory_for(jobs_dir: Path, job_id: str) -> Path:
    return jobs_dir.resolve() / job_id


def resolve_job_specification(
    spec: JobSpecification,
    catalog: ResourceCatalog,
    jobs_dir: Path,
) -> ResolvedJobSpecification:
    """
    Turns catalog references into the command line and environment to launch.

    Environment layering, later wins:
      cluster -> applications (in order) -> command -> job -> agent-provided
    The agent-provided variables (JOB_ID, JOB_DIR, ...) cannot be overridden.

    Raises JobSpecificationError if a referenced resource does not exist.
    """
    try:
        command = catalog.get_command(spec.command_id)
        cluster = catalog.get_cluster(spec.cluster_id)
        applications = [catalog.get_application(a) for a in spec.application_ids]
    except NotFoundError as e:
        raise JobSpecificationError(
            f"Job {spec.id} references a missing resource: {e}",
            details={"job_id": spec.id, **(e.details or {})},
        ) from e

    environment: dict[str, str] = {}
    environment.update(cluster.environment)
    for app in applications:
        environment.update(app.environment)
    environment.update(command.environment)
    environment.update(spec.environment)
    environment.update(
        {
            "JOB_ID": spec.id,
            "JOB_NAME": spec.name,
            "JOB_USER": spec.user,
            "JOB_DIR": str(job_directory_for(jobs_dir, spec.id)),
            "COMMAND_ID": command.id,
            "CLUSTER_ID": cluster.id,
            "APPLICATION_IDS": ",".join(spec.application_ids),
        }
    )

    return ResolvedJobSpecification(
        job_id=spec.id,
        job_name=spec.name,
        user=spec.user,
        command_id=command.id,
        cluster_id=cluster.id,
        application_ids=list(spec.application_ids),
        command_line=[*command.executable, *spec.command_args],
        environment=environment,
        timeout_s=spec.timeout_s,
    )
