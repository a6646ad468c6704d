"""Web application package for transloom."""

from typing import Optional

from flask import Flask


def create_app(orchestrator=None, db_path: Optional[str] = None) -> Flask:
    """
    Application factory for the HTTP API.

    Pass an existing Orchestrator, or a database path to build one from the
    configuration stored in that database.
    """
    from .app import build_app  # Import here to avoid circular imports

    if orchestrator is None:
        from transloom.config import get_db_path
        from transloom.core.store import JobStore
        from transloom.translation.orchestrator import Orchestrator

        orchestrator = Orchestrator.from_store(JobStore(db_path or get_db_path()))

    return build_app(orchestrator)


__all__ = ["create_app"]
