# src/jobagent/api/__init__.py
"""
Job registry API (FastAPI).

- app: FastAPI instance + lifecycle hooks
- routes: jobs, status changes and resource catalog endpoints
- deps: dependency injection helpers
"""

from .app import app, create_app

__all__ = ["app", "create_app"]
