# src/jobagent/storage/__init__.py
"""
Storage layer for the job registry (SQLite).

- db: connection factory + pragmas + transaction helper
- migrations: lightweight SQL migrations runner
- repo: transactional data access for jobs and the resource catalog
"""

from .db import SQLiteDB
from .migrations import apply_migrations
from .repo import RESOURCE_KINDS, JobRepo, ResourceRepo

__all__ = ["SQLiteDB", "apply_migrations", "JobRepo", "ResourceRepo", "RESOURCE_KINDS"]
