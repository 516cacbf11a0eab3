"""
Database engine and session management for the anomaly store.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from src.core.exceptions import PersistenceError

from .orm import Base

logger = logging.getLogger(__name__)

_IN_MEMORY_URLS = {"sqlite://", "sqlite:///:memory:"}


class Database:
    """
    Owns the SQLAlchemy engine and hands out transactional sessions.

    SQLite in-memory databases use a single shared connection (StaticPool) so
    every session sees the same data. The write lock serializes writers across
    threads; readers do not take it.
    """

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        kwargs: dict = {"echo": echo}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if url in _IN_MEMORY_URLS:
                kwargs["poolclass"] = StaticPool
        self.engine = create_engine(url, **kwargs)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        self.write_lock = threading.RLock()

    def create_all(self) -> None:
        """Create missing tables and indexes."""
        Base.metadata.create_all(self.engine)
        logger.debug("Anomaly store schema ready at %s", self.engine.url.render_as_string(hide_password=True))

    @contextmanager
    def session(self) -> Iterator[Session]:
        """
        Transactional session scope: commit on success, rollback on error.

        SQLAlchemy errors other than those the caller handles inside the scope
        are re-raised as PersistenceError.
        """
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise PersistenceError(f"Anomaly store operation failed: {exc}") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()
