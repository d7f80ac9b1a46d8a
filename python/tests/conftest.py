"""Pytest configuration and fixtures for Folio tests.

Test isolation strategy:
- Every test gets its own SQLite file database with the schema created from
  the ORM metadata (background jobs open their own connections, so an
  in-memory database would not be shared)
- Object storage is an in-memory FakeObjectStore
- Each test gets its own JobRunner, shut down (and drained) afterwards
- API tests override the db, store and runner dependencies
"""

import os
import sys
from collections.abc import Generator
from pathlib import Path

# Add repo root to sys.path for importing top-level packages (e.g., apps)
_repo_root = Path(__file__).parent.parent.parent
if str(_repo_root) not in sys.path:
    sys.path.insert(0, str(_repo_root))

# Settings are loaded lazily; these defaults keep imports side-effect free
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("FOLIO_ENV", "test")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from folio.api.deps import get_db, get_runner, get_store
from folio.app import add_request_id_middleware, create_app
from folio.config import clear_settings_cache
from folio.db.engine import create_db_engine
from folio.db.models import Base
from folio.db.session import create_session_factory
from folio.jobs import JobRunner
from folio.storage import FakeObjectStore
from tests.helpers import create_test_manga


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch) -> Generator[None, None, None]:
    """Give every test freshly loaded settings without admin or storage config."""
    monkeypatch.delenv("FOLIO_ADMIN_SECRET", raising=False)
    monkeypatch.setenv("FOLIO_ENV", "test")
    monkeypatch.setenv("S3_CHAPTER_PREFIX", "chapters")
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def engine(tmp_path) -> Generator[Engine, None, None]:
    """Create a per-test SQLite database with the full schema."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'folio.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker[Session]:
    """Session factory bound to the per-test database."""
    return create_session_factory(engine)


@pytest.fixture
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Provide a database session for direct service calls.

    Background jobs write through their own sessions; call
    db_session.expire_all() before reading rows a job has changed.
    """
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def store() -> FakeObjectStore:
    """In-memory versioned object store."""
    return FakeObjectStore()


@pytest.fixture
def runner() -> Generator[JobRunner, None, None]:
    """Job runner for the test; waits for outstanding jobs on teardown."""
    runner = JobRunner(max_workers=2, retention_s=3600, registry_max=100)
    yield runner
    runner.shutdown(wait=True)


@pytest.fixture
def manga_id(db_session: Session) -> int:
    """A persisted manga that drafts and chapters can belong to."""
    return create_test_manga(db_session)


@pytest.fixture
def app(session_factory, store, runner):
    """FastAPI app wired to the per-test database, store and runner.

    The admin guard is skipped; auth tests build their own app.
    """
    app = create_app(skip_auth_middleware=True)
    add_request_id_middleware(app, log_requests=False)

    def override_get_db() -> Generator[Session, None, None]:
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_runner] = lambda: runner
    return app


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    """Provide a FastAPI test client without the admin guard."""
    with TestClient(app) as client:
        yield client
