"""Engine and session management.

Sessions are synchronous SQLAlchemy sessions; async callers reach them
through ``asyncio.to_thread`` in the repository.
"""

import logging
from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from cnab_ingest.models import Base

logger = logging.getLogger(__name__)


class Database:
    """Owns one engine and its session factory."""

    def __init__(self, url: str, echo: bool = False, pool_pre_ping: bool = True):
        self.url = url
        connect_args = {}
        if url.startswith("sqlite"):
            # Sessions are opened from worker threads
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = 30

        self.engine: Engine = create_engine(
            url,
            echo=echo,
            pool_pre_ping=pool_pre_ping,
            connect_args=connect_args,
        )
        if url.startswith("sqlite"):
            event.listen(self.engine, "connect", _sqlite_pragmas)

        self.session_factory: sessionmaker[Session] = sessionmaker(
            bind=self.engine, expire_on_commit=False
        )
        logger.info(
            "Database engine initialized",
            extra={"operation": "init_engine", "database": self.engine.url.render_as_string(hide_password=True)},
        )

    def create_tables(self) -> None:
        Base.metadata.create_all(self.engine)

    def drop_tables(self) -> None:
        Base.metadata.drop_all(self.engine)

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Provide a transactional scope around a series of operations.

        Commits on success, rolls back on any exception and re-raises.
        One scope is one atomic unit: nothing from a failed scope is visible.
        """
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()


def _sqlite_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()
