# src/jobagent/storage/repo.py
from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Optional, Sequence, TypeVar

from pydantic import BaseModel

from jobagent.domain.errors import (
    AlreadyClaimedError,
    ConflictError,
    IllegalTransitionError,
    NotFoundError,
    StaleStatusError,
)
from jobagent.domain.models import (
    AgentMetadata,
    Application,
    Cluster,
    Command,
    JobRequest,
    JobSpecification,
    JobView,
    StatusChange,
    StatusChangeView,
)
from jobagent.domain.states import JobStatus
from jobagent.logging import get_logger

from .db import immediate_transaction

_LOG = get_logger(__name__)

ResourceT = TypeVar("ResourceT", bound=BaseModel)

RESOURCE_KINDS: dict[str, type[BaseModel]] = {
    "application": Application,
    "command": Command,
    "cluster": Cluster,
}

_JOB_COLUMNS = """
    id, name, username, command_id, cluster_id, status, status_message,
    agent_hostname, agent_version, agent_pid,
    created_at, updated_at, claimed_at, finished_at
"""


def _job_view(row: sqlite3.Row) -> JobView:
    return JobView(
        id=row["id"],
        name=row["name"],
        user=row["username"],
        command_id=row["command_id"],
        cluster_id=row["cluster_id"],
        status=JobStatus(row["status"]) if row["status"] is not None else None,
        status_message=row["status_message"],
        agent_hostname=row["agent_hostname"],
        agent_version=row["agent_version"],
        agent_pid=row["agent_pid"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        claimed_at=row["claimed_at"],
        finished_at=row["finished_at"],
    )


@dataclass
class JobRepo:
    """
    Repository encapsulating all SQL access to jobs and their status history.

    Important invariants:
    - Claiming is atomic: only an unclaimed job (status IS NULL) can be claimed, once.
    - Status changes are compare-and-set on the current status inside BEGIN IMMEDIATE,
      and only transitions listed in VALID_TRANSITIONS are accepted.
    - Every applied status change appends exactly one job_status_changes row.
    """
    conn: sqlite3.Connection

    # -------------------------
    # Read operations
    # -------------------------

    def get_job(self, job_id: str) -> JobView:
        row = self.conn.execute(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?;", (job_id,)).fetchone()
        if not row:
            raise NotFoundError(f"Job not found: {job_id}", details={"id": job_id})
        return _job_view(row)

    def list_jobs(
        self,
        limit: int = 200,
        offset: int = 0,
        status: Optional[JobStatus] = None,
    ) -> tuple[list[JobView], int]:
        where = ""
        params: tuple = ()
        if status is not None:
            where = "WHERE status = ?"
            params = (status.value,)

        total = self.conn.execute(f"SELECT COUNT(*) AS c FROM jobs {where};", params).fetchone()["c"]
        rows = self.conn.execute(
            f"""
            SELECT {_JOB_COLUMNS}
            FROM jobs
            {where}
            ORDER BY created_at ASC, id ASC
            LIMIT ? OFFSET ?;
            """,
            (*params, limit, offset),
        ).fetchall()
        return [_job_view(r) for r in rows], int(total)

    def get_specification(self, job_id: str) -> JobSpecification:
        row = self.conn.execute("SELECT spec_json FROM jobs WHERE id = ?;", (job_id,)).fetchone()
        if not row:
            raise NotFoundError(f"Job not found: {job_id}", details={"id": job_id})
        return JobSpecification.model_validate_json(row["spec_json"])

    def list_status_changes(self, job_id: str) -> list[StatusChangeView]:
        # Raises NotFoundError for unknown jobs rather than returning an empty history.
        self.get_job(job_id)
        rows = self.conn.execute(
            """
            SELECT job_id, from_status, to_status, message, changed_at
            FROM job_status_changes
            WHERE job_id = ?
            ORDER BY seq ASC;
            """,
            (job_id,),
        ).fetchall()
        return [
            StatusChangeView(
                job_id=r["job_id"],
                from_status=JobStatus(r["from_status"]) if r["from_status"] is not None else None,
                to_status=JobStatus(r["to_status"]),
                message=r["message"],
                changed_at=r["changed_at"],
            )
            for r in rows
        ]

    # -------------------------
    # Write operations
    # -------------------------

    def create_job(self, job: JobRequest, now_ms: int) -> JobView:
        """
        Inserts a submitted job.

        Behavior:
        - Reject if id exists
        - If the command, cluster or any application is missing from the catalog,
          the job is stored as INVALID: it can never be claimed
        - Otherwise the job is stored unclaimed (status NULL)
        """
        spec = JobSpecification.model_validate(job.model_dump())

        with immediate_transaction(self.conn):
            if self.conn.execute("SELECT 1 FROM jobs WHERE id = ?;", (job.id,)).fetchone():
                raise ConflictError(f"Job already exists: {job.id}", details={"id": job.id})

            resources = ResourceRepo(self.conn)
            missing = [f"command:{c}" for c in resources.missing_ids("command", [job.command_id])]
            missing += [f"cluster:{c}" for c in resources.missing_ids("cluster", [job.cluster_id])]
            missing += [f"application:{a}" for a in resources.missing_ids("application", job.application_ids)]

            status: Optional[JobStatus] = None
            message: Optional[str] = None
            finished_at: Optional[int] = None
            if missing:
                status = JobStatus.INVALID
                message = "unresolvable resources: " + ", ".join(missing)
                finished_at = now_ms

            self.conn.execute(
                """
                INSERT INTO jobs(
                  id, name, username, command_id, cluster_id, spec_json,
                  status, status_message, created_at, updated_at, finished_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    job.id,
                    job.name,
                    job.user,
                    job.command_id,
                    job.cluster_id,
                    spec.model_dump_json(),
                    status.value if status else None,
                    message,
                    now_ms,
                    now_ms,
                    finished_at,
                ),
            )
            if status is not None:
                self._record_change(job.id, None, status, message or "", now_ms)

        if missing:
            _LOG.info("Job %s submitted as INVALID (%s)", job.id, message)
        return self.get_job(job.id)

    def claim_job(self, job_id: str, agent: AgentMetadata, now_ms: int) -> JobSpecification:
        """
        Atomically claims an unclaimed job for `agent` and marks it CLAIMED.

        Returns the job specification the agent should run.
        """
        with immediate_transaction(self.conn):
            row = self.conn.execute("SELECT status, spec_json FROM jobs WHERE id = ?;", (job_id,)).fetchone()
            if not row:
                raise NotFoundError(f"Job not found: {job_id}", details={"id": job_id})
            if row["status"] is not None:
                raise AlreadyClaimedError(
                    f"Job {job_id} cannot be claimed in status {row['status']}",
                    details={"id": job_id, "status": row["status"]},
                )

            message = f"job claimed by {agent.hostname}"
            self.conn.execute(
                """
                UPDATE jobs
                SET status = ?,
                    status_message = ?,
                    agent_hostname = ?,
                    agent_version = ?,
                    agent_pid = ?,
                    claimed_at = ?,
                    updated_at = ?
                WHERE id = ?
                  AND status IS NULL;
                """,
                (
                    JobStatus.CLAIMED.value,
                    message,
                    agent.hostname,
                    agent.version,
                    agent.pid,
                    now_ms,
                    now_ms,
                    job_id,
                ),
            )
            self._record_change(job_id, None, JobStatus.CLAIMED, message, now_ms)

        _LOG.info("Job %s claimed by %s (pid %d)", job_id, agent.hostname, agent.pid)
        return JobSpecification.model_validate_json(row["spec_json"])

    def change_status(self, job_id: str, change: StatusChange, now_ms: int) -> JobView:
        """
        Compare-and-set: moves the job from `expected_status` to `new_status`.

        Raises:
        - IllegalTransitionError if the pair is not a legal transition
        - NotFoundError if the job does not exist
        - StaleStatusError if the job is no longer in `expected_status`
        """
        if not change.expected_status.can_transition_to(change.new_status):
            raise IllegalTransitionError(
                f"Illegal transition {change.expected_status} -> {change.new_status}",
                details={"from": change.expected_status.value, "to": change.new_status.value},
            )

        finished_at = now_ms if change.new_status.is_finished else None

        with immediate_transaction(self.conn):
            updated = self.conn.execute(
                """
                UPDATE jobs
                SET status = ?,
                    status_message = ?,
                    updated_at = ?,
                    finished_at = COALESCE(finished_at, ?)
                WHERE id = ?
                  AND status = ?;
                """,
                (
                    change.new_status.value,
                    change.message,
                    now_ms,
                    finished_at,
                    job_id,
                    change.expected_status.value,
                ),
            ).rowcount

            if updated == 0:
                row = self.conn.execute("SELECT status FROM jobs WHERE id = ?;", (job_id,)).fetchone()
                if not row:
                    raise NotFoundError(f"Job not found: {job_id}", details={"id": job_id})
                raise StaleStatusError(
                    f"Job {job_id} is {row['status']}, expected {change.expected_status}",
                    details={
                        "id": job_id,
                        "expected": change.expected_status.value,
                        "current": row["status"],
                    },
                )

            self._record_change(job_id, change.expected_status, change.new_status, change.message, now_ms)

        return self.get_job(job_id)

    def _record_change(
        self,
        job_id: str,
        from_status: Optional[JobStatus],
        to_status: JobStatus,
        message: str,
        now_ms: int,
    ) -> None:
        self.conn.execute(
            """
            INSERT INTO job_status_changes(job_id, from_status, to_status, message, changed_at)
            VALUES (?, ?, ?, ?, ?);
            """,
            (job_id, from_status.value if from_status else None, to_status.value, message, now_ms),
        )


@dataclass
class ResourceRepo:
    """
    Create/fetch access to the resource catalog (applications, commands, clusters).
    """
    conn: sqlite3.Connection

    def create(self, kind: str, resource: BaseModel, now_ms: int) -> None:
        resource_id = getattr(resource, "id")
        with immediate_transaction(self.conn):
            if self.conn.execute(
                "SELECT 1 FROM resources WHERE kind = ? AND id = ?;", (kind, resource_id)
            ).fetchone():
                raise ConflictError(
                    f"{kind.capitalize()} already exists: {resource_id}",
                    details={"kind": kind, "id": resource_id},
                )
            self.conn.execute(
                "INSERT INTO resources(kind, id, body_json, created_at) VALUES (?, ?, ?, ?);",
                (kind, resource_id, resource.model_dump_json(), now_ms),
            )

    def get(self, kind: str, resource_id: str, model: type[ResourceT]) -> ResourceT:
        row = self.conn.execute(
            "SELECT body_json FROM resources WHERE kind = ? AND id = ?;", (kind, resource_id)
        ).fetchone()
        if not row:
            raise NotFoundError(
                f"{kind.capitalize()} not found: {resource_id}",
                details={"kind": kind, "id": resource_id},
            )
        return model.model_validate_json(row["body_json"])

    def missing_ids(self, kind: str, ids: Sequence[str]) -> list[str]:
        if not ids:
            return []
        rows = self.conn.execute(
            f"""
            SELECT id
            FROM resources
            WHERE kind = ?
              AND id IN ({",".join("?" for _ in ids)});
            """,
            (kind, *ids),
        ).fetchall()
        found = {r["id"] for r in rows}
        return [i for i in ids if i not in found]
