from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _get_env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ValueError(f"Environment variable {name} must be an int, got: {raw!r}") from e
    return value


def _get_env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Environment variable {name} must be a boolean, got: {raw!r}")


@dataclass(frozen=True)
class Settings:
    # Registry database
    db_path: Path

    # Registry server (used by jobagent.main when starting uvicorn programmatically)
    host: str
    port: int
    log_level: str

    # Agent -> registry
    registry_url: str
    request_timeout_ms: int
    max_attempts: int
    retry_backoff_ms: int

    # Agent execution
    jobs_dir: Path
    wait_poll_ms: int
    kill_grace_ms: int
    cleanup_job_dir: bool

    @property
    def request_timeout_s(self) -> float:
        return self.request_timeout_ms / 1000.0

    @property
    def retry_backoff_s(self) -> float:
        return self.retry_backoff_ms / 1000.0

    @property
    def wait_poll_s(self) -> float:
        return self.wait_poll_ms / 1000.0

    @property
    def kill_grace_s(self) -> float:
        return self.kill_grace_ms / 1000.0


def load_settings() -> Settings:
    """
    Loads settings from env vars with sane defaults.

    Env vars:
      - JOBAGENT_DB_PATH (default: ./var/jobs.db)
      - JOBAGENT_HOST (default: 127.0.0.1)
      - JOBAGENT_PORT (default: 8000)
      - JOBAGENT_LOG_LEVEL (default: info)
      - JOBAGENT_REGISTRY_URL (default: http://127.0.0.1:8000)
      - JOBAGENT_REQUEST_TIMEOUT_MS (default: 10000)
      - JOBAGENT_MAX_ATTEMPTS (default: 3)
      - JOBAGENT_RETRY_BACKOFF_MS (default: 500)
      - JOBAGENT_JOBS_DIR (default: ./var/jobs)
      - JOBAGENT_WAIT_POLL_MS (default: 100)
      - JOBAGENT_KILL_GRACE_MS (default: 5000)
      - JOBAGENT_CLEANUP_JOB_DIR (default: false)
    """
    db_path = Path(_get_env_str("JOBAGENT_DB_PATH", "./var/jobs.db")).expanduser()

    host = _get_env_str("JOBAGENT_HOST", "127.0.0.1")
    port = _get_env_int("JOBAGENT_PORT", 8000)
    if not (1 <= port <= 65535):
        raise ValueError("JOBAGENT_PORT must be between 1 and 65535")

    log_level = _get_env_str("JOBAGENT_LOG_LEVEL", "info").lower()

    registry_url = _get_env_str("JOBAGENT_REGISTRY_URL", "http://127.0.0.1:8000").rstrip("/")
    if not registry_url.startswith(("http://", "https://")):
        raise ValueError("JOBAGENT_REGISTRY_URL must be an http(s) URL")

    request_timeout_ms = _get_env_int("JOBAGENT_REQUEST_TIMEOUT_MS", 10_000)
    if request_timeout_ms <= 0:
        raise ValueError("JOBAGENT_REQUEST_TIMEOUT_MS must be > 0")

    max_attempts = _get_env_int("JOBAGENT_MAX_ATTEMPTS", 3)
    if max_attempts <= 0:
        raise ValueError("JOBAGENT_MAX_ATTEMPTS must be > 0")

    retry_backoff_ms = _get_env_int("JOBAGENT_RETRY_BACKOFF_MS", 500)
    if retry_backoff_ms < 0:
        raise ValueError("JOBAGENT_RETRY_BACKOFF_MS must be >= 0")

    jobs_dir = Path(_get_env_str("JOBAGENT_JOBS_DIR", "./var/jobs")).expanduser()

    wait_poll_ms = _get_env_int("JOBAGENT_WAIT_POLL_MS", 100)
    if wait_poll_ms <= 0:
        raise ValueError("JOBAGENT_WAIT_POLL_MS must be > 0")

    kill_grace_ms = _get_env_int("JOBAGENT_KILL_GRACE_MS", 5_000)
    if kill_grace_ms < 0:
        raise ValueError("JOBAGENT_KILL_GRACE_MS must be >= 0")

    cleanup_job_dir = _get_env_bool("JOBAGENT_CLEANUP_JOB_DIR", False)

    return Settings(
        db_path=db_path,
        host=host,
        port=port,
        log_level=log_level,
        registry_url=registry_url,
        request_timeout_ms=request_timeout_ms,
        max_attempts=max_attempts,
        retry_backoff_ms=retry_backoff_ms,
        jobs_dir=jobs_dir,
        wait_poll_ms=wait_poll_ms,
        kill_grace_ms=kill_grace_ms,
        cleanup_job_dir=cleanup_job_dir,
    )
