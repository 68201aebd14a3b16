# src/jobagent/api/app.py
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from jobagent import __version__
from jobagent.config import load_settings
from jobagent.logging import configure_logging, get_logger
from jobagent.storage import SQLiteDB, apply_migrations

from .routes import router

_LOG = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Lifespan handler for the job registry.

    Responsible for:
    - loading settings
    - configuring logging
    - running DB migrations
    """
    settings = load_settings()
    configure_logging(settings.log_level)

    db = SQLiteDB(settings.db_path)

    # Run migrations once at startup (idempotent)
    conn = db.connect()
    try:
        apply_migrations(conn)
    finally:
        conn.close()

    app.state.settings = settings
    app.state.db = db

    _LOG.info("Job registry ready (db=%s).", settings.db_path)
    try:
        yield
    finally:
        _LOG.info("Job registry shut down.")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Job Registry",
        version=__version__,
        lifespan=lifespan,
    )
    app.include_router(router)
    return app


app = create_app()
