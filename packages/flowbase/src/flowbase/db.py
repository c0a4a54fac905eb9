"""
SQLAlchemy engine construction for the flow store.

Sessions are created by the store itself (see flows_core.persistence.repo),
so this module only knows how to turn a DATABASE_URL into an Engine.
"""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool


def build_engine(database_url: str) -> Engine:
    """
    Create a SQLAlchemy engine for a URL.

    In-memory SQLite needs a single shared connection so every session sees
    the same database.
    """
    if database_url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url == "sqlite://":
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=False, **kwargs)
    return create_engine(database_url, pool_pre_ping=True, echo=False)
