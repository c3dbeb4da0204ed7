"""Database bootstrap helpers shared by all services."""

from contextlib import contextmanager

from sqlalchemy import JSON, create_engine, event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import DisconnectionError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from nunaa.common.config import settings
from nunaa.common.errors import StorageUnavailable


# JSONB on postgres, plain JSON elsewhere (sqlite in development/tests).
JSONPayload = JSON().with_variant(JSONB(), "postgresql")


def make_engine(url: str, **kwargs):
    """Create an engine; sqlite connections serialize writers with BEGIN IMMEDIATE."""

    engine = create_engine(url, pool_pre_ping=True, **kwargs)
    if engine.dialect.name == "sqlite":

        @event.listens_for(engine, "connect")
        def _sqlite_connect(dbapi_connection, connection_record):
            # Let SQLAlchemy emit BEGIN itself instead of pysqlite.
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


# Single SQLAlchemy engine per process.
engine = make_engine(settings.database_url)
# `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass


@contextmanager
def unit_of_work(session_factory):
    """Yield a session inside one transaction: commit on success, roll back on error.

    Lost connections, lock timeouts and pool exhaustion surface as
    `StorageUnavailable`; domain errors propagate unchanged after rollback.
    """

    try:
        with session_factory() as db, db.begin():
            yield db
    except (OperationalError, DisconnectionError, PoolTimeoutError) as exc:
        raise StorageUnavailable("storage unavailable, retry later", reason=exc.__class__.__name__) from exc
