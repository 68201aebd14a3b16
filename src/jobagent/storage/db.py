# src/jobagent/storage/db.py
from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator


@dataclass(frozen=True)
class SQLiteDB:
    """
    SQLite connection factory for the job registry.

    Notes:
    - Use one connection per thread (per request in the API).
    - Apply pragmas on each connection.
    - WAL mode lets status reads proceed while an agent's status update commits.
    """
    db_path: Path
    timeout_s: float = 5.0

    def connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.timeout_s,
            isolation_level=None,          # transactions are managed explicitly
            check_same_thread=False,       # FastAPI may resolve deps and run handlers on different threads
        )
        conn.row_factory = sqlite3.Row
        self._apply_pragmas(conn)
        return conn

    def _apply_pragmas(self, conn: sqlite3.Connection) -> None:
        cur = conn.cursor()
        cur.execute("PRAGMA journal_mode=WAL;")
        cur.execute("PRAGMA foreign_keys=ON;")
        # Reduce spurious 'database is locked'
        cur.execute("PRAGMA busy_timeout=5000;")
        cur.execute("PRAGMA synchronous=NORMAL;")
        cur.close()


@contextmanager
def immediate_transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """
    Runs the block in a transaction that takes the RESERVED lock up front.

    Compare-and-set status updates rely on this: the read of the current status
    and the guarded UPDATE cannot interleave with another writer.
    Rolls back on any exception and re-raises it.
    """
    conn.execute("BEGIN IMMEDIATE;")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK;")
        raise
    conn.execute("COMMIT;")
