"""Database package: async engine/session management and ORM models."""

from .connection import (
    close_database,
    create_tables,
    get_session,
    init_database,
    init_sqlalchemy_engine,
)


__all__ = [
    "close_database",
    "create_tables",
    "get_session",
    "init_database",
    "init_sqlalchemy_engine",
]
