# src/jobagent/api/deps.py
from __future__ import annotations

import sqlite3
from typing import Generator

from fastapi import Depends, Request

from jobagent.config import Settings
from jobagent.storage import JobRepo, ResourceRepo, SQLiteDB


def get_settings(request: Request) -> Settings:
    """
    Per-request access to settings stored on app.state during startup.
    """
    return request.app.state.settings  # type: ignore[attr-defined]


def get_db(request: Request) -> SQLiteDB:
    return request.app.state.db  # type: ignore[attr-defined]


def get_conn(
    db: SQLiteDB = Depends(get_db),
) -> Generator[sqlite3.Connection, None, None]:
    """
    Provides a per-request SQLite connection.
    """
    conn = db.connect()
    try:
        yield conn
    finally:
        conn.close()


def get_job_repo(
    conn: sqlite3.Connection = Depends(get_conn),
) -> JobRepo:
    return JobRepo(conn)


def get_resource_repo(
    conn: sqlite3.Connection = Depends(get_conn),
) -> ResourceRepo:
    return ResourceRepo(conn)
