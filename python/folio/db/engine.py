"""Database engine.

Postgres (psycopg 3) in deployments; SQLite files for local runs and tests.
Processing and delete jobs use the engine from worker threads.
"""

from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from folio.config import get_settings


def create_db_engine(database_url: str | None = None) -> Engine:
    """Build an engine for `database_url`, or for DATABASE_URL when omitted."""
    url = database_url or get_settings().database_url

    # Job threads share SQLite connections with the request thread
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, pool_pre_ping=True, connect_args=connect_args)


@lru_cache
def get_engine() -> Engine:
    return create_db_engine()
