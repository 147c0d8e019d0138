"""Database engine for the API and the worker.

PostgreSQL (psycopg v3) is the deployed backend. SQLite is accepted for
local runs and tests: connections may be used from FastAPI's threadpool,
and an in-memory database is pinned to one connection so every session
sees the same schema.
"""

from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.pool import StaticPool

from relay.config import get_settings

IN_MEMORY_DATABASES = (None, "", ":memory:")


def create_db_engine(database_url: str | None = None) -> Engine:
    """Create an engine for database_url (settings.database_url if None)."""
    if database_url is None:
        database_url = get_settings().database_url

    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        options: dict = {"connect_args": {"check_same_thread": False}}
        if url.database in IN_MEMORY_DATABASES:
            options["poolclass"] = StaticPool
        return create_engine(url, **options)

    return create_engine(url, pool_pre_ping=True, echo=False)


@lru_cache
def get_engine() -> Engine:
    return create_db_engine()
