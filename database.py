"""Database engine and session helpers.

SQLite is used for local development and tests, PostgreSQL (through
psycopg2) in production.  Both go through the same SQLModel metadata.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from config import DATABASE_URL


def build_engine(url: Optional[str] = None, echo: bool = False) -> Engine:
    """Create an engine for ``url`` (defaults to ``DATABASE_URL``)."""
    url = url or DATABASE_URL
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every session sees an empty database.
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=echo, **kwargs)
    return create_engine(url, echo=echo, pool_pre_ping=True)


def init_db(engine: Engine) -> None:
    """Create tables if they do not exist."""
    # Import for the side effect of registering the tables on the metadata.
    import models  # noqa: F401

    SQLModel.metadata.create_all(engine)


@contextmanager
def get_session(engine: Engine) -> Iterator[Session]:
    with Session(engine, expire_on_commit=False) as session:
        yield session
