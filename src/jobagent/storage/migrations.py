# src/jobagent/storage/migrations.py
from __future__ import annotations

import re
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from jobagent.logging import get_logger

_LOG = get_logger(__name__)


_MIGRATION_RE = re.compile(r"^(?P<version>\d+)_.*\.sql$")

# Schema files ship inside the package so the registry can start from any cwd.
DEFAULT_MIGRATIONS_DIR = Path(__file__).resolve().parent / "sql"


@dataclass(frozen=True)
class Migration:
    version: int
    filename: str
    path: Path


def apply_migrations(conn: sqlite3.Connection, migrations_dir: Optional[Path] = None) -> int:
    """
    Applies SQL migrations in ascending numeric order and returns how many ran.

    Applied versions are recorded in schema_migrations, so each version runs once.
    Two files with the same version number are rejected with ValueError.

    Expected migration filenames:
      001_init.sql
      002_status_history.sql
      ...
    """
    migrations_dir = (migrations_dir or DEFAULT_MIGRATIONS_DIR).resolve()
    if not migrations_dir.exists():
        raise FileNotFoundError(f"Migrations dir not found: {migrations_dir}")

    _ensure_migrations_table(conn)

    applied = _get_applied_versions(conn)
    to_apply = [m for m in _load_migrations(migrations_dir) if m.version not in applied]
    if not to_apply:
        _LOG.debug("No pending migrations.")
        return 0

    _LOG.info("Applying %d migration(s)...", len(to_apply))
    for m in to_apply:
        sql = m.path.read_text(encoding="utf-8")
        _LOG.info("Applying migration %03d (%s)", m.version, m.filename)
        conn.executescript(sql)
        conn.execute(
            "INSERT INTO schema_migrations(version, filename, applied_at) VALUES (?, ?, strftime('%s','now')*1000);",
            (m.version, m.filename),
        )
    return len(to_apply)


def _ensure_migrations_table(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations(
          version INTEGER PRIMARY KEY,
          filename TEXT NOT NULL,
          applied_at INTEGER NOT NULL
        );
        """
    )


def _get_applied_versions(conn: sqlite3.Connection) -> set[int]:
    rows = conn.execute("SELECT version FROM schema_migrations ORDER BY version;").fetchall()
    return {int(r["version"]) for r in rows}


def _load_migrations(migrations_dir: Path) -> list[Migration]:
    by_version: dict[int, Migration] = {}
    for path in migrations_dir.glob("*.sql"):
        m = _MIGRATION_RE.match(path.name)
        if not m:
            continue
        version = int(m.group("version"))
        if version in by_version:
            raise ValueError(
                f"Duplicate migration version {version:03d}: "
                f"{by_version[version].filename} and {path.name}"
            )
        by_version[version] = Migration(version=version, filename=path.name, path=path)

    return [by_version[v] for v in sorted(by_version)]
