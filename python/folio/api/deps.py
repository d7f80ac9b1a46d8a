"""FastAPI dependencies for route handlers.

Common dependencies: database sessions, the object store and the
process-wide job runner.
"""

from fastapi import Request

from folio.db.session import get_db, get_session_factory
from folio.jobs import JobRunner, get_job_runner
from folio.storage import ObjectStoreBase, get_object_store

__all__ = ["get_db", "get_session_factory", "get_store", "get_runner"]


def get_store() -> ObjectStoreBase:
    """Get the configured object store.

    Raises:
        StorageUnavailableError: If storage is not configured (503).
    """
    return get_object_store()


def get_runner(request: Request) -> JobRunner:
    """Get the job runner owned by the app lifespan.

    Falls back to the process-wide runner when the app was not started
    through its lifespan.
    """
    runner = getattr(request.app.state, "job_runner", None)
    return runner if runner is not None else get_job_runner()
