from __future__ import annotations

import logging
import sys
from typing import Optional


class _JobIdFilter(logging.Filter):
    """
    Stamps every record with the id of the job this agent process runs,
    so interleaved agent logs on a host can be told apart.
    """

    def __init__(self, job_id: str) -> None:
        super().__init__()
        self.job_id = job_id

    def filter(self, record: logging.LogRecord) -> bool:
        record.job_id = self.job_id
        return True


def configure_logging(log_level: str = "info", *, job_id: Optional[str] = None) -> None:
    """
    Configures root logging for the registry service or an agent process.

    - logs to stdout
    - consistent format; agent processes add the job id
    - avoids double handlers on reload
    """
    level = _parse_level(log_level)

    root = logging.getLogger()
    root.setLevel(level)

    # Avoid duplicate handlers (common with reload / repeated init)
    if any(isinstance(h, logging.StreamHandler) for h in root.handlers):
        for h in list(root.handlers):
            root.removeHandler(h)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)

    if job_id:
        fmt = "%(asctime)s %(levelname)s %(name)s [job=%(job_id)s] - %(message)s"
        handler.addFilter(_JobIdFilter(job_id))
    else:
        fmt = "%(asctime)s %(levelname)s %(name)s - %(message)s"

    handler.setFormatter(logging.Formatter(fmt=fmt, datefmt="%Y-%m-%dT%H:%M:%S%z"))
    root.addHandler(handler)

    logging.getLogger("uvicorn.access").setLevel(max(level, logging.INFO))
    logging.getLogger("uvicorn.error").setLevel(level)
    # Request lines from the registry client are noise at INFO.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name if name else "jobagent")


def _parse_level(log_level: str) -> int:
    mapping = {
        "critical": logging.CRITICAL,
        "error": logging.ERROR,
        "warning": logging.WARNING,
        "warn": logging.WARNING,
        "info": logging.INFO,
        "debug": logging.DEBUG,
        "trace": logging.DEBUG,  # Python stdlib has no TRACE; map to DEBUG.
    }
    return mapping.get(log_level.lower().strip(), logging.INFO)
