"""
Database engine, session factory, and metadata shared across the application.
"""

from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from classbook.core.config import settings

logger = logging.getLogger(__name__)


def build_engine(url: str | None = None, **overrides: Any) -> Engine:
    """Create an engine with pool settings appropriate for the URL's dialect."""
    database_url = url or settings.database_url
    if database_url.lower().startswith("sqlite"):
        kwargs: dict[str, Any] = {
            "connect_args": {"check_same_thread": False},
            "future": True,
        }
        if ":memory:" in database_url or database_url.rstrip("/").endswith("sqlite:"):
            kwargs["poolclass"] = StaticPool
    else:
        kwargs = {
            "poolclass": QueuePool,
            "pool_size": settings.db_pool_size,
            "max_overflow": settings.db_max_overflow,
            "pool_timeout": settings.db_pool_timeout,
            "pool_recycle": 300,
            "pool_pre_ping": True,
            "future": True,
            "connect_args": {"connect_timeout": 5, "application_name": "classbook"},
        }
    kwargs.update(overrides)
    built = create_engine(database_url, **kwargs)
    _attach_pool_listeners(built)
    return built


def _attach_pool_listeners(target: Engine) -> None:
    @event.listens_for(target, "connect")
    def receive_connect(dbapi_connection: Any, connection_record: Any) -> None:
        connection_record.info["connect_time"] = datetime.now()
        logger.debug("Database connection established")

    @event.listens_for(target, "checkout")
    def receive_checkout(
        dbapi_connection: Any, connection_record: Any, connection_proxy: Any
    ) -> None:
        logger.debug("Connection checked out from pool")


engine: Engine = build_engine()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Get database session with proper cleanup."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def create_all(bind: Engine | None = None) -> None:
    """Create every ledger table on the given engine."""
    import classbook.models  # noqa: F401 - populate metadata

    Base.metadata.create_all(bind=bind or engine)
    logger.info("Ledger tables created")


__all__ = ["Base", "SessionLocal", "build_engine", "create_all", "engine", "get_db"]
