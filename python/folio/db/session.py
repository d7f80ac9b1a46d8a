"""Sessions for requests and background jobs, plus the commit/rollback helper."""

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from folio.db.engine import get_engine

_SessionLocal: sessionmaker[Session] | None = None


def create_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    # Rows stay readable after commit; state transitions re-read explicitly
    return sessionmaker(
        bind=engine or get_engine(),
        autoflush=False,
        expire_on_commit=False,
    )


def get_session_factory() -> sessionmaker[Session]:
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = create_session_factory()
    return _SessionLocal


def session_factory_for(db: Session) -> sessionmaker[Session]:
    """Factory on the same engine as `db`, for jobs that outlive the request."""
    return create_session_factory(db.get_bind())


def get_db() -> Generator[Session, None, None]:
    """Request-scoped session dependency."""
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(db: Session) -> Generator[None, None, None]:
    """Commit the block's writes, or roll them all back if it raises."""
    try:
        yield
        db.commit()
    except Exception:
        db.rollback()
        raise
