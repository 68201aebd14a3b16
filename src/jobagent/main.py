from __future__ import annotations

import os
import signal
import sys
from types import FrameType
from typing import Optional, Sequence

from jobagent.config import load_settings
from jobagent.logging import configure_logging, get_logger

EXIT_JOB_SUCCEEDED = 0
EXIT_JOB_UNSUCCESSFUL = 1
EXIT_AGENT_ERROR = 2
EXIT_USAGE = 64


def _install_kill_handlers(supervisor) -> None:
    """
    SIGTERM/SIGHUP set the supervisor's cancel token. Before launch the job is
    never started; once running, wait_for() kills it on its next poll. Either
    way the run ends KILLED. SIGINT keeps its default; the Driver turns the
    resulting KeyboardInterrupt into an agent error.

    The handler runs on the Driver's thread, so it must not take the supervisor lock.
    """

    def _handler(signum: int, frame: Optional[FrameType]) -> None:
        supervisor.cancel_token.set()

    for sig in (signal.SIGTERM, signal.SIGHUP):
        signal.signal(sig, _handler)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Agent entrypoint: runs exactly one job.

      jobagent-agent <job_id>
      python -m jobagent.main <job_id>

    The job id may also come from JOBAGENT_JOB_ID.
    Exit codes: 0 job succeeded, 1 job failed or was killed, 2 agent error.
    """
    args = list(sys.argv[1:] if argv is None else argv)
    job_id = args[0] if args else os.getenv("JOBAGENT_JOB_ID", "").strip()
    if not job_id:
        print("usage: jobagent-agent <job_id>", file=sys.stderr)
        return EXIT_USAGE

    settings = load_settings()
    configure_logging(settings.log_level, job_id=job_id)
    log = get_logger(__name__)

    # Import here so config/logging are set before the agent modules log anything.
    from jobagent.agent.client import HttpRegistryClient, RetryingJobRegistry
    from jobagent.agent.driver import create_driver
    from jobagent.agent.process import ProcessSupervisor
    from jobagent.domain.states import JobStatus

    supervisor = ProcessSupervisor(
        poll_interval_s=settings.wait_poll_s,
        kill_grace_s=settings.kill_grace_s,
    )
    _install_kill_handlers(supervisor)

    with HttpRegistryClient(settings.registry_url, timeout_s=settings.request_timeout_s) as http:
        registry = RetryingJobRegistry(
            http,
            max_attempts=settings.max_attempts,
            backoff_s=settings.retry_backoff_s,
        )
        driver = create_driver(
            job_id,
            settings=settings,
            registry=registry,
            catalog=http,
            supervisor=supervisor,
        )
        log.info("Starting agent for job %s (registry %s)", job_id, settings.registry_url)
        result = driver.run()

    if not result.done:
        log.error("Agent error: %s", result.error)
        return EXIT_AGENT_ERROR
    if result.final_status is JobStatus.SUCCEEDED:
        return EXIT_JOB_SUCCEEDED
    return EXIT_JOB_UNSUCCESSFUL


def serve() -> int:
    """
    Job registry entrypoint.

    Recommended dev command:
      uvicorn jobagent.api.app:app --reload
    """
    settings = load_settings()
    configure_logging(settings.log_level)
    log = get_logger(__name__)

    settings.db_path.parent.mkdir(parents=True, exist_ok=True)
    log.info("Starting job registry with DB path: %s", settings.db_path)

    import uvicorn

    uvicorn.run(
        "jobagent.api.app:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
        reload=False,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
