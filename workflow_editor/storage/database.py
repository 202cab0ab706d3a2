"""Database engine and session construction for document storage."""

from typing import Any, Dict, Optional
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def is_memory_database(database_url: str) -> bool:
    return database_url.startswith("sqlite") and (":memory:" in database_url or database_url.rstrip("/") == "sqlite:")


def create_database_engine(
    database_url: str,
    echo: bool = False,
    connect_args: Optional[Dict[str, Any]] = None
) -> Engine:
    """
    Create an engine for ``database_url``.

    An in-memory SQLite database exists per connection, so it is served
    through a single shared connection (``StaticPool``). Server databases
    get ``pool_pre_ping`` so that dropped connections are replaced before use.
    """
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, **(connect_args or {})}
        if is_memory_database(database_url):
            return create_engine(database_url, echo=echo, connect_args=connect_args, poolclass=StaticPool)
        return create_engine(database_url, echo=echo, connect_args=connect_args)
    return create_engine(database_url, echo=echo, connect_args=connect_args or {}, pool_pre_ping=True)


def get_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def create_tables(engine: Engine) -> None:
    """Create the document tables if they do not exist."""
    from . import models  # noqa: F401  registers tables on Base.metadata
    Base.metadata.create_all(bind=engine)
