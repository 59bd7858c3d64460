"""
Dialect checks for code that must behave differently on PostgreSQL and SQLite.
"""

from __future__ import annotations

from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session


def get_dialect_name(session: Session, default: str = "sqlite") -> str:
    """
    Name of the dialect the session is bound to.

    Falls back to ``default`` when no bind can be resolved.
    """
    try:
        bind = session.get_bind()
    except SQLAlchemyError:
        bind = getattr(inspect(session, raiseerr=False), "bind", None)
    dialect = getattr(bind, "dialect", None)
    return getattr(dialect, "name", None) or default


def supports_row_locks(session: Session) -> bool:
    """SELECT ... FOR UPDATE only matters on PostgreSQL."""
    return get_dialect_name(session) == "postgresql"
